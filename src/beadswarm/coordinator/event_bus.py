"""Event bus for assignment lifecycle events.

Simple in-process pub/sub. The store emits a status-change event for every
transition and the bus appends each one to the session's JSONL journal.
The watch loop subscribes while it runs and logs every transition.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable

from beadswarm.protocol.io import append_jsonl

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class AssignmentEvent:
    """A single assignment status change."""

    bead_id: str
    pane_index: int
    from_status: str  # "" for a fresh assignment
    to_status: str
    timestamp: float = field(default_factory=time.time)
    agent_name: str = ""
    reason: str = ""


class EventBus:
    """In-process pub/sub for assignment events.

    Subscribers receive every emitted event. Events are also optionally
    appended to a JSONL file.
    """

    def __init__(self, persist_path: str | Path | None = None, *, history_limit: int = 1000) -> None:
        self._subscribers: list[Callable[[AssignmentEvent], Any]] = []
        self._persist_path = Path(persist_path) if persist_path else None
        self._history: list[AssignmentEvent] = []
        self._history_limit = history_limit

    def emit(self, event: AssignmentEvent) -> None:
        """Deliver to subscribers, then persist. Subscriber errors are logged."""
        self._history.append(event)
        if len(self._history) > self._history_limit:
            del self._history[: len(self._history) - self._history_limit]

        for cb in self._subscribers:
            try:
                cb(event)
            except Exception as exc:
                logger.debug("EventBus subscriber error: %s", exc)

        if self._persist_path:
            try:
                append_jsonl(self._persist_path, asdict(event))
            except OSError as exc:
                logger.debug("EventBus persist error: %s", exc)

    def subscribe(self, callback: Callable[[AssignmentEvent], Any]) -> None:
        self._subscribers.append(callback)

    def unsubscribe(self, callback: Callable[[AssignmentEvent], Any]) -> None:
        self._subscribers = [cb for cb in self._subscribers if cb != callback]

    @property
    def history(self) -> list[AssignmentEvent]:
        return list(self._history)
