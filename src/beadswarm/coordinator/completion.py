"""Completion detector: turns pane scrollback into completion events.

Each poll looks at every active assignment:

* ``assigned`` moves to ``working`` the first time the pane is seen busy.
* A failure marker, an ``error`` pane state, or an idle pane showing an
  error marker yields a failed event.
* An idle pane yields a completed event when it shows a success marker, a
  done phrase naming the bead, or has stayed idle for ``idle_threshold``
  since it was last seen active.

Markers are only read from output written after the bead's prompt, so a
marker left by the pane's previous bead never counts. Output already
waiting at the first poll does count.

Events are deduplicated per ``(bead_id, is_failed)`` within
``dedup_window`` and delivered on a bounded queue.
"""

from __future__ import annotations

import asyncio
import hashlib
import time
from collections.abc import Callable
from dataclasses import dataclass

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from beadswarm.config.schema import CompletionConfig
from beadswarm.errors import TmuxError
from beadswarm.observer.panes import PaneObserver
from beadswarm.protocol.models import (
    AgentState,
    Assignment,
    AssignmentStatus,
    CompletionEvent,
    parse_iso,
    utc_now,
    utc_now_iso,
)
from beadswarm.store.assignments import AssignmentStore
from beadswarm.utilities.logger import get_logger

log = get_logger(__name__)

DONE_WORDS: tuple[str, ...] = ("done", "complete", "completed", "closed", "finished")

PROMPT_NEEDLE_CHARS = 40
MIN_PROMPT_NEEDLE = 8


@dataclass(slots=True)
class _Track:
    baseline: str
    last_active_at: float
    saw_activity: bool = False
    changed: bool = False


def _digest(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8", errors="replace")).hexdigest()


def output_since_prompt(tail: str, prompt: str) -> str | None:
    """Return the part of *tail* written after *prompt* was echoed.

    ``None`` when the prompt is too short to recognise. A prompt that has
    scrolled out of *tail* means everything visible is newer than it.
    """
    needle = next((line.strip() for line in prompt.splitlines() if line.strip()), "")[:PROMPT_NEEDLE_CHARS]
    if len(needle) < MIN_PROMPT_NEEDLE:
        return None
    lines = tail.splitlines()
    for i in range(len(lines) - 1, -1, -1):
        if needle in lines[i]:
            # Skip the wrapped remainder of the echoed prompt.
            j = i + 1
            while j < len(lines) and lines[j].strip() and lines[j].strip() in prompt:
                j += 1
            return "\n".join(lines[j:])
    return tail


def _has_output(text: str) -> bool:
    # The last non-blank line is the agent's own prompt.
    return sum(1 for line in text.splitlines() if line.strip()) > 1


def find_marker(tail: str, markers: list[str]) -> str:
    """Return the first line of *tail* containing any marker (case-insensitive)."""
    lowered_markers = [m.lower() for m in markers if m]
    for line in tail.splitlines():
        lowered = line.lower()
        if any(m in lowered for m in lowered_markers):
            return line.strip()
    return ""


def mentions_done(tail: str, bead_id: str) -> bool:
    needle = bead_id.lower()
    for line in tail.splitlines():
        lowered = line.lower()
        if needle in lowered and any(word in lowered for word in DONE_WORDS):
            return True
    return False


class CompletionDetector:
    def __init__(
        self,
        session: str,
        observer: PaneObserver,
        store: AssignmentStore,
        config: CompletionConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        queue_size: int = 10,
    ) -> None:
        self._session = session
        self._observer = observer
        self._store = store
        self._config = config or CompletionConfig()
        self._clock = clock
        self.events: asyncio.Queue[CompletionEvent] = asyncio.Queue(maxsize=queue_size)
        self._tracks: dict[str, _Track] = {}
        self._recent: dict[tuple[str, bool], float] = {}

    @property
    def config(self) -> CompletionConfig:
        return self._config

    async def _capture(self, pane_id: str) -> str:
        attempts = self._config.max_retries if self._config.retry_on_error else 1
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max(1, attempts)),
            wait=wait_fixed(self._config.retry_interval_seconds),
            retry=retry_if_exception_type(TmuxError),
            reraise=True,
        ):
            with attempt:
                return await self._observer.capture_tail(pane_id, self._config.capture_lines)
        return ""

    def _duration(self, row: Assignment) -> float:
        started = parse_iso(row.assigned_at)
        if started is None:
            return 0.0
        return max(0.0, (utc_now() - started).total_seconds())

    def _should_emit(self, bead_id: str, is_failed: bool) -> bool:
        now = self._clock()
        key = (bead_id, is_failed)
        last = self._recent.get(key)
        if last is not None and now - last < self._config.dedup_window_seconds:
            return False
        self._recent[key] = now
        return True

    async def _emit(self, row: Assignment, *, is_failed: bool, reason: str = "") -> CompletionEvent | None:
        if not self._should_emit(row.bead_id, is_failed):
            log.debug("duplicate completion suppressed", bead_id=row.bead_id, failed=is_failed)
            return None
        event = CompletionEvent(
            bead_id=row.bead_id,
            pane_index=row.pane_index,
            agent_kind=row.agent_kind,
            is_failed=is_failed,
            fail_reason=reason,
            duration=self._duration(row),
            detected_at=utc_now_iso(),
        )
        self._tracks.pop(row.bead_id, None)
        await self.events.put(event)
        log.info("completion detected", bead_id=row.bead_id, pane=row.pane_index, failed=is_failed, reason=reason)
        return event

    async def _pane_gone(self, row: Assignment) -> bool:
        try:
            return await self._observer.pane_id_for(self._session, row.pane_index, refresh=True) is None
        except TmuxError as exc:
            log.warning("pane listing failed", bead_id=row.bead_id, error=str(exc))
            return False

    async def check(self, row: Assignment) -> CompletionEvent | None:
        """Evaluate one active assignment; emit at most one event."""
        pane_id = await self._observer.pane_id_for(self._session, row.pane_index)
        if pane_id is None:
            return await self._emit(row, is_failed=True, reason=f"pane {row.pane_index} disappeared")
        try:
            tail = await self._capture(pane_id)
        except TmuxError as exc:
            if await self._pane_gone(row):
                return await self._emit(row, is_failed=True, reason=f"pane {row.pane_index} disappeared")
            log.warning("capture failed, will retry next poll", bead_id=row.bead_id, error=str(exc))
            return None

        now = self._clock()
        digest = _digest(tail)
        recent = output_since_prompt(tail, row.prompt)
        track = self._tracks.get(row.bead_id)
        if track is None:
            track = self._tracks[row.bead_id] = _Track(baseline=digest, last_active_at=now)
            track.changed = recent is not None and _has_output(recent)
        elif digest != track.baseline:
            track.changed = True
        fresh = track.changed
        state = self._observer.detect_state(tail, row.agent_kind)

        if state == AgentState.WORKING:
            track.saw_activity = True
            track.last_active_at = now
            if row.status == AssignmentStatus.ASSIGNED:
                self._store.update_status(row.bead_id, AssignmentStatus.WORKING)
            return None
        if fresh and not track.saw_activity:
            track.saw_activity = True
            track.last_active_at = now

        if state == AgentState.ERROR:
            reason = find_marker(tail, self._observer.config.error_markers) or "agent error state"
            return await self._emit(row, is_failed=True, reason=reason)
        if not fresh:
            return None
        scan = tail if recent is None else recent
        failure = find_marker(scan, self._config.failure_markers)
        if failure:
            return await self._emit(row, is_failed=True, reason=failure)
        if state != AgentState.IDLE:
            return None
        error_line = find_marker(scan, self._observer.config.error_markers)
        if error_line:
            return await self._emit(row, is_failed=True, reason=error_line)
        if find_marker(scan, self._config.success_markers) or mentions_done(scan, row.bead_id):
            return await self._emit(row, is_failed=False)
        if track.saw_activity and now - track.last_active_at >= self._config.idle_threshold_seconds:
            return await self._emit(row, is_failed=False)
        return None

    async def poll_once(self) -> list[CompletionEvent]:
        events: list[CompletionEvent] = []
        active = self._store.list_active()
        live = {row.bead_id for row in active}
        for bead_id in list(self._tracks):
            if bead_id not in live:
                del self._tracks[bead_id]
        for row in active:
            event = await self.check(row)
            if event is not None:
                events.append(event)
        return events
