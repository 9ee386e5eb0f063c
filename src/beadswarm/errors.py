"""Beadswarm error hierarchy."""

from __future__ import annotations

from enum import StrEnum
from typing import Any


class ErrorCode(StrEnum):
    """Closed set of error codes surfaced in result envelopes."""

    INVALID_ARGS = "INVALID_ARGS"
    STORE_ERROR = "STORE_ERROR"
    TMUX_ERROR = "TMUX_ERROR"
    PANE_NOT_FOUND = "PANE_NOT_FOUND"
    NOT_AGENT_PANE = "NOT_AGENT_PANE"
    PANE_BUSY = "PANE_BUSY"
    BLOCKED = "BLOCKED"
    NOT_ASSIGNED = "NOT_ASSIGNED"
    ALREADY_ASSIGNED = "ALREADY_ASSIGNED"
    ALREADY_COMPLETED = "ALREADY_COMPLETED"
    TARGET_BUSY = "TARGET_BUSY"
    NO_IDLE_AGENT = "NO_IDLE_AGENT"
    SEND_ERROR = "SEND_ERROR"
    REASSIGN_ERROR = "REASSIGN_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class BeadswarmError(Exception):
    """Base error for all engine exceptions."""

    def __init__(
        self,
        message: str,
        *,
        code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        retryable: bool = False,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.retryable = retryable
        self.details: dict[str, Any] = details or {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}({str(self)!r}, code={self.code!r})"


class InvalidArgsError(BeadswarmError):
    """Caller supplied inconsistent or missing arguments."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(message, code=ErrorCode.INVALID_ARGS, **kwargs)


class StoreError(BeadswarmError):
    """Reading or writing the assignment store failed."""

    def __init__(self, operation: str, path: str, cause: BaseException | str) -> None:
        super().__init__(
            f"store {operation} failed for {path}: {cause}",
            code=ErrorCode.STORE_ERROR,
            details={"operation": operation, "path": path},
        )
        self.operation = operation
        self.path = path
        self.cause = cause


class InvalidTransitionError(BeadswarmError):
    """Assignment status change not allowed by the transition table."""

    def __init__(self, bead_id: str, from_status: str, to_status: str) -> None:
        super().__init__(
            f"invalid transition for {bead_id}: {from_status} -> {to_status}",
            code=ErrorCode.STORE_ERROR,
            details={"bead_id": bead_id, "from": from_status, "to": to_status},
        )
        self.bead_id = bead_id
        self.from_status = from_status
        self.to_status = to_status


class AssignmentConflictError(BeadswarmError):
    """An active assignment already holds the bead or the pane.

    ``reason`` is ``already_assigned`` or ``pane_occupied``.
    """

    def __init__(self, reason: str, message: str, **kwargs: Any) -> None:
        code = ErrorCode.ALREADY_ASSIGNED if reason == "already_assigned" else ErrorCode.PANE_BUSY
        super().__init__(message, code=code, **kwargs)
        self.reason = reason


class NotAssignedError(BeadswarmError):
    """No assignment exists for the bead."""

    def __init__(self, bead_id: str) -> None:
        super().__init__(
            f"bead {bead_id} is not assigned",
            code=ErrorCode.NOT_ASSIGNED,
            details={"bead_id": bead_id},
        )
        self.bead_id = bead_id


class TmuxError(BeadswarmError):
    """tmux is missing, the session is absent, or a tmux command failed."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(message, code=ErrorCode.TMUX_ERROR, **kwargs)


class SendError(BeadswarmError):
    """Keystroke injection into a pane failed."""

    def __init__(self, message: str, **kwargs: Any) -> None:
        super().__init__(message, code=ErrorCode.SEND_ERROR, **kwargs)


class ProviderError(BeadswarmError):
    """The work prioritizer failed or returned garbage."""

    def __init__(self, message: str, *, retryable: bool = True, **kwargs: Any) -> None:
        super().__init__(message, code=ErrorCode.INTERNAL_ERROR, retryable=retryable, **kwargs)


class BrokerError(BeadswarmError):
    """The reservation broker rejected a call."""

    def __init__(self, message: str, *, retryable: bool = False, **kwargs: Any) -> None:
        super().__init__(message, code=ErrorCode.INTERNAL_ERROR, retryable=retryable, **kwargs)


class BrokerUnavailableError(BrokerError):
    """The reservation broker could not be reached."""

    def __init__(self, message: str, *, retryable: bool = True, **kwargs: Any) -> None:
        super().__init__(message, retryable=retryable, **kwargs)
