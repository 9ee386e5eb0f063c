"""Async tmux client built on ``asyncio.create_subprocess_exec``."""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass
from typing import Protocol

from beadswarm.errors import SendError, TmuxError

logger = logging.getLogger(__name__)

_PANE_FORMAT = "#{pane_id}\t#{pane_index}\t#{pane_title}"


@dataclass(slots=True)
class PaneInfo:
    pane_id: str
    pane_index: int
    title: str


class Multiplexer(Protocol):
    async def has_session(self, session: str) -> bool: ...

    async def list_panes(self, session: str) -> list[PaneInfo]: ...

    async def capture_tail(self, pane_id: str, lines: int) -> str: ...

    async def send_keys(self, pane_id: str, text: str, *, enter: bool = True) -> None: ...

    async def set_title(self, pane_id: str, title: str) -> None: ...


class TmuxClient:
    """Thin wrapper around the tmux CLI with per-call timeouts."""

    def __init__(self, binary: str = "tmux", timeout: float = 30.0) -> None:
        self._binary = binary
        self._timeout = timeout

    def is_installed(self) -> bool:
        return shutil.which(self._binary) is not None

    async def _run(self, *args: str) -> tuple[int, str, str]:
        if not self.is_installed():
            raise TmuxError(f"{self._binary} is not installed")
        proc = await asyncio.create_subprocess_exec(
            self._binary,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            out, err = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise TmuxError(f"tmux {args[0]} timed out after {self._timeout}s") from exc
        return (
            proc.returncode or 0,
            (out or b"").decode("utf-8", errors="replace"),
            (err or b"").decode("utf-8", errors="replace"),
        )

    async def _check(self, *args: str) -> str:
        code, out, err = await self._run(*args)
        if code != 0:
            raise TmuxError(
                f"tmux {args[0]} exited {code}: {err.strip()}",
                details={"args": list(args)},
            )
        return out

    async def has_session(self, session: str) -> bool:
        code, _, _ = await self._run("has-session", "-t", session)
        return code == 0

    async def list_sessions(self) -> list[str]:
        code, out, _ = await self._run("list-sessions", "-F", "#{session_name}")
        if code != 0:
            return []
        return [line.strip() for line in out.splitlines() if line.strip()]

    async def list_panes(self, session: str) -> list[PaneInfo]:
        if not await self.has_session(session):
            raise TmuxError(f"session {session!r} not found", details={"session": session})
        out = await self._check("list-panes", "-s", "-t", session, "-F", _PANE_FORMAT)
        panes: list[PaneInfo] = []
        for line in out.splitlines():
            parts = line.split("\t", 2)
            if len(parts) < 2:
                continue
            try:
                index = int(parts[1])
            except ValueError:
                logger.debug("Skipping pane line with bad index: %r", line)
                continue
            panes.append(PaneInfo(pane_id=parts[0], pane_index=index, title=parts[2] if len(parts) > 2 else ""))
        return panes

    async def capture_tail(self, pane_id: str, lines: int) -> str:
        return await self._check("capture-pane", "-p", "-t", pane_id, "-S", f"-{max(1, lines)}")

    async def send_keys(self, pane_id: str, text: str, *, enter: bool = True) -> None:
        try:
            await self._check("send-keys", "-t", pane_id, "-l", text)
            if enter:
                await self._check("send-keys", "-t", pane_id, "Enter")
        except TmuxError as exc:
            raise SendError(str(exc), details={"pane_id": pane_id}) from exc

    async def set_title(self, pane_id: str, title: str) -> None:
        await self._check("select-pane", "-t", pane_id, "-T", title)
