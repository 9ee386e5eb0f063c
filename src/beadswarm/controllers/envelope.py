"""Result envelopes returned by every ``assign`` subcommand."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from beadswarm.errors import BeadswarmError, ErrorCode

COMMAND = "assign"


def rfc3339_now() -> str:
    return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


@dataclass(slots=True)
class EnvelopeError:
    code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_exception(cls, exc: BaseException) -> EnvelopeError:
        if isinstance(exc, BeadswarmError):
            return cls(code=str(exc.code), message=str(exc), details=dict(exc.details))
        return cls(code=str(ErrorCode.INTERNAL_ERROR), message=f"{type(exc).__name__}: {exc}")


@dataclass(slots=True)
class Envelope:
    subcommand: str
    session: str
    success: bool = True
    data: dict[str, Any] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    error: EnvelopeError | None = None
    timestamp: str = field(default_factory=rfc3339_now)
    command: str = COMMAND

    def warn(self, message: str) -> None:
        if message and message not in self.warnings:
            self.warnings.append(message)

    def fail(
        self,
        code: ErrorCode | str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> Envelope:
        self.success = False
        self.error = EnvelopeError(code=str(code), message=message, details=dict(details or {}))
        return self

    def fail_with(self, exc: BaseException) -> Envelope:
        self.success = False
        self.error = EnvelopeError.from_exception(exc)
        return self

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "command": self.command,
            "subcommand": self.subcommand,
            "session": self.session,
            "timestamp": self.timestamp,
            "success": self.success,
            "data": self.data,
            "warnings": list(self.warnings),
        }
        if self.error is not None:
            out["error"] = {
                "code": self.error.code,
                "message": self.error.message,
                "details": self.error.details,
            }
        return out

    def to_json(self, *, indent: int | None = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, default=str)
