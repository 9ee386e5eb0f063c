"""Durable per-session assignment store.

One JSON document per session::

    {"session_name": ..., "assignments": {bead_id: row}, "history": [row],
     "updated_at": ..., "version": 1}

Every mutation is persisted before it returns (temp file, fsync, rotate the
previous file to ``.bak``, rename). A failed write rolls the in-memory state
back and raises :class:`StoreError`. All access goes through one re-entrant
lock, so the store is the single writer for its session inside a process.
"""

from __future__ import annotations

import contextlib
import copy
import logging
import threading
from pathlib import Path
from typing import Any, Iterator

from beadswarm.coordinator.event_bus import AssignmentEvent, EventBus
from beadswarm.errors import (
    AssignmentConflictError,
    BeadswarmError,
    ErrorCode,
    InvalidTransitionError,
    NotAssignedError,
    StoreError,
)
from beadswarm.protocol.io import read_json_strict, write_json_atomic
from beadswarm.protocol.locks import locked_file
from beadswarm.protocol.models import (
    SCHEMA_VERSION,
    Assignment,
    AssignmentStatus,
    default_session_layout,
    utc_now_iso,
)

logger = logging.getLogger(__name__)

S = AssignmentStatus

TRANSITIONS: dict[AssignmentStatus, set[AssignmentStatus]] = {
    S.ASSIGNED: {S.WORKING, S.FAILED},
    S.WORKING: {S.COMPLETED, S.FAILED},
    # failed -> assigned only happens through reassign()
    S.FAILED: set(),
    S.COMPLETED: set(),
    S.REASSIGNED: set(),
}


class AssignmentStore:
    def __init__(
        self,
        path: Path,
        session: str,
        *,
        backup_path: Path | None = None,
        lock_path: Path | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._path = path
        self._backup = backup_path or path.with_suffix(path.suffix + ".bak")
        self._lock_path = lock_path or path.with_suffix(".lock")
        self._session = session
        self._events = event_bus
        self._lock = threading.RLock()
        self._rows: dict[str, Assignment] = {}
        self._history: list[Assignment] = []
        self.updated_at = ""

    @classmethod
    def open(cls, store_dir: str | Path, session: str, *, event_bus: EventBus | None = None) -> AssignmentStore:
        """Open (and load) the store for *session* under *store_dir*."""
        layout = default_session_layout(Path(store_dir).expanduser(), session)
        store = cls(
            layout["store"],
            session,
            backup_path=layout["backup"],
            lock_path=layout["lock"],
            event_bus=event_bus,
        )
        store.load()
        return store

    @property
    def path(self) -> Path:
        return self._path

    @property
    def event_bus(self) -> EventBus | None:
        return self._events

    @property
    def session(self) -> str:
        return self._session

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self) -> None:
        """Load from disk. A missing file is an empty store; corruption is not."""
        with self._lock:
            source = self._path
            if not source.exists():
                if not self._backup.exists():
                    self._rows, self._history = {}, []
                    return
                source = self._backup
            try:
                doc = read_json_strict(source)
                rows, history = self._parse(doc)
            except (OSError, ValueError, TypeError, KeyError) as exc:
                if source == self._backup or not self._backup.exists():
                    raise StoreError("load", str(source), exc) from exc
                logger.warning("store %s unreadable (%s), recovering from backup", source, exc)
                try:
                    doc = read_json_strict(self._backup)
                    rows, history = self._parse(doc)
                except (OSError, ValueError, TypeError, KeyError) as backup_exc:
                    raise StoreError("load", str(self._path), backup_exc) from backup_exc
            self._rows, self._history = rows, history
            self.updated_at = str(doc.get("updated_at", ""))

    def _parse(self, doc: Any) -> tuple[dict[str, Assignment], list[Assignment]]:
        if not isinstance(doc, dict):
            raise ValueError("store document is not an object")
        version = int(doc.get("version", SCHEMA_VERSION))
        if version > SCHEMA_VERSION:
            raise ValueError(f"unsupported store version {version}")
        raw_rows = doc.get("assignments") or {}
        if not isinstance(raw_rows, dict):
            raise ValueError("assignments is not an object")
        rows = {bead_id: Assignment.from_dict({**row, "bead_id": bead_id}) for bead_id, row in raw_rows.items()}
        history = [Assignment.from_dict(row) for row in doc.get("history") or []]
        return rows, history

    def to_document(self) -> dict[str, Any]:
        with self._lock:
            return {
                "session_name": self._session,
                "assignments": {bead_id: row.to_dict() for bead_id, row in self._rows.items()},
                "history": [row.to_dict() for row in self._history],
                "updated_at": self.updated_at,
                "version": SCHEMA_VERSION,
            }

    def save(self) -> None:
        with self._lock:
            self.updated_at = utc_now_iso()
            doc = self.to_document()
            try:
                with locked_file(self._lock_path):
                    write_json_atomic(self._path, doc, backup=self._backup)
            except (OSError, TypeError, ValueError) as exc:
                raise StoreError("save", str(self._path), exc) from exc

    @contextlib.contextmanager
    def _mutation(self) -> Iterator[list[AssignmentEvent]]:
        """Apply a change, persist it, then publish its events.

        On any failure the in-memory state reverts to before the change.
        """
        with self._lock:
            rows = copy.deepcopy(self._rows)
            history = copy.deepcopy(self._history)
            events: list[AssignmentEvent] = []
            try:
                yield events
                self.save()
            except BaseException:
                self._rows, self._history = rows, history
                raise
        if self._events is not None:
            for event in events:
                self._events.emit(event)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _check_free(self, bead_id: str, pane: int) -> None:
        current = self._rows.get(bead_id)
        if current is not None and current.is_active:
            raise AssignmentConflictError(
                "already_assigned",
                f"bead {bead_id} is already assigned to pane {current.pane_index}",
                details={"bead_id": bead_id, "pane": current.pane_index, "status": str(current.status)},
            )
        occupant = self._find_by_pane(pane)
        if occupant is not None and occupant.bead_id != bead_id:
            raise AssignmentConflictError(
                "pane_occupied",
                f"pane {pane} is busy with {occupant.bead_id}",
                details={"pane": pane, "current_bead": occupant.bead_id},
            )

    def assign(
        self,
        bead_id: str,
        title: str,
        pane: int,
        kind: str,
        agent_name: str,
        prompt: str = "",
        *,
        prompt_sent: bool = False,
        reservation_ids: list[int] | None = None,
        reserved_paths: list[str] | None = None,
    ) -> Assignment:
        with self._mutation() as events:
            self._check_free(bead_id, pane)
            previous = self._rows.get(bead_id)
            if previous is not None:
                self._history.append(previous)
            row = Assignment(
                bead_id=bead_id,
                bead_title=title,
                pane_index=pane,
                agent_kind=str(kind),
                agent_name=agent_name,
                prompt=prompt,
                prompt_sent=prompt_sent,
                reservation_ids=list(reservation_ids or []),
                reserved_paths=list(reserved_paths or []),
            )
            self._rows[bead_id] = row
            events.append(AssignmentEvent(bead_id, pane, "", str(S.ASSIGNED), agent_name=agent_name))
        return copy.deepcopy(row)

    def reassign(
        self,
        bead_id: str,
        new_pane: int,
        new_kind: str,
        new_agent_name: str,
        *,
        prompt: str | None = None,
        displace: bool = False,
    ) -> Assignment:
        """Move *bead_id* to another pane, keeping the old row as history.

        ``retry_count`` grows by one only when the old row had failed. With
        *displace*, an active assignment already on *new_pane* is marked
        failed instead of blocking the move.
        """
        with self._mutation() as events:
            old = self._rows.get(bead_id)
            if old is None:
                raise NotAssignedError(bead_id)
            if old.status == S.COMPLETED:
                raise BeadswarmError(
                    f"bead {bead_id} is already completed",
                    code=ErrorCode.ALREADY_COMPLETED,
                    details={"bead_id": bead_id},
                )
            if not old.is_active and old.status != S.FAILED:
                raise NotAssignedError(bead_id)
            occupant = self._find_by_pane(new_pane)
            if occupant is not None and occupant.bead_id != bead_id:
                if not displace:
                    raise AssignmentConflictError(
                        "pane_occupied",
                        f"pane {new_pane} is busy with {occupant.bead_id}",
                        details={"pane": new_pane, "current_bead": occupant.bead_id},
                    )
                now = utc_now_iso()
                displaced_from = str(occupant.status)
                occupant.status = S.FAILED
                occupant.failure_reason = f"displaced by {bead_id}"
                occupant.failed_at = now
                occupant.updated_at = now
                events.append(
                    AssignmentEvent(occupant.bead_id, new_pane, displaced_from, str(S.FAILED), reason=occupant.failure_reason)
                )

            retry_count = old.retry_count + 1 if old.status == S.FAILED else old.retry_count
            retired = copy.deepcopy(old)
            previous_status = retired.status
            retired.status = S.REASSIGNED
            retired.updated_at = utc_now_iso()
            self._history.append(retired)

            row = Assignment(
                bead_id=bead_id,
                bead_title=old.bead_title,
                pane_index=new_pane,
                agent_kind=str(new_kind),
                agent_name=new_agent_name,
                prompt=old.prompt if prompt is None else prompt,
                retry_count=retry_count,
            )
            self._rows[bead_id] = row
            events.append(
                AssignmentEvent(bead_id, new_pane, str(previous_status), str(S.ASSIGNED), agent_name=new_agent_name)
            )
        return copy.deepcopy(row)

    def remove(self, bead_id: str) -> Assignment:
        with self._mutation() as events:
            row = self._rows.pop(bead_id, None)
            if row is None:
                raise NotAssignedError(bead_id)
            events.append(AssignmentEvent(bead_id, row.pane_index, str(row.status), "removed"))
        return row

    def update_status(self, bead_id: str, status: AssignmentStatus | str, reason: str = "") -> Assignment:
        target = AssignmentStatus(status)
        with self._mutation() as events:
            row = self._rows.get(bead_id)
            if row is None:
                raise NotAssignedError(bead_id)
            if target == row.status:
                return copy.deepcopy(row)
            if target not in TRANSITIONS.get(row.status, set()):
                raise InvalidTransitionError(bead_id, str(row.status), str(target))
            previous = row.status
            now = utc_now_iso()
            row.status = target
            row.updated_at = now
            if target == S.WORKING:
                row.started_at = now
            elif target == S.COMPLETED:
                row.completed_at = now
            elif target == S.FAILED:
                row.failed_at = now
                row.failure_reason = reason
            events.append(
                AssignmentEvent(bead_id, row.pane_index, str(previous), str(target), agent_name=row.agent_name, reason=reason)
            )
        return copy.deepcopy(row)

    def mark_prompt_sent(self, bead_id: str, prompt: str | None = None) -> Assignment:
        with self._mutation():
            row = self._rows.get(bead_id)
            if row is None:
                raise NotAssignedError(bead_id)
            row.prompt_sent = True
            if prompt is not None:
                row.prompt = prompt
            row.updated_at = utc_now_iso()
        return copy.deepcopy(row)

    def set_reservations(self, bead_id: str, reservation_ids: list[int], paths: list[str]) -> Assignment:
        with self._mutation():
            row = self._rows.get(bead_id)
            if row is None:
                raise NotAssignedError(bead_id)
            row.reservation_ids = list(reservation_ids)
            row.reserved_paths = list(paths)
            row.updated_at = utc_now_iso()
        return copy.deepcopy(row)

    def clear_by_status(self, status: AssignmentStatus | str) -> list[Assignment]:
        target = AssignmentStatus(status)
        with self._mutation() as events:
            removed = [row for row in self._rows.values() if row.status == target]
            for row in removed:
                del self._rows[row.bead_id]
                events.append(AssignmentEvent(row.bead_id, row.pane_index, str(row.status), "removed"))
        return removed

    # ------------------------------------------------------------------
    # Queries (snapshots, never live rows)
    # ------------------------------------------------------------------

    def get(self, bead_id: str) -> Assignment | None:
        with self._lock:
            row = self._rows.get(bead_id)
            return copy.deepcopy(row) if row else None

    def get_all(self) -> list[Assignment]:
        """Current rows followed by history rows."""
        with self._lock:
            return copy.deepcopy(list(self._rows.values()) + self._history)

    def list_current(self) -> list[Assignment]:
        with self._lock:
            return copy.deepcopy(list(self._rows.values()))

    def history(self) -> list[Assignment]:
        with self._lock:
            return copy.deepcopy(self._history)

    def list_active(self) -> list[Assignment]:
        with self._lock:
            return [copy.deepcopy(r) for r in self._rows.values() if r.is_active]

    def list_by_status(self, status: AssignmentStatus | str) -> list[Assignment]:
        target = AssignmentStatus(status)
        with self._lock:
            return [copy.deepcopy(r) for r in self._rows.values() if r.status == target]

    def list_by_pane(self, pane: int) -> list[Assignment]:
        with self._lock:
            return [copy.deepcopy(r) for r in self._rows.values() if r.pane_index == pane]

    def _find_by_pane(self, pane: int) -> Assignment | None:
        for row in self._rows.values():
            if row.pane_index == pane and row.is_active:
                return row
        return None

    def find_by_pane(self, pane: int) -> Assignment | None:
        """The active assignment on *pane*, if any."""
        with self._lock:
            row = self._find_by_pane(pane)
            return copy.deepcopy(row) if row else None

    def stats(self) -> dict[str, int]:
        with self._lock:
            counts = {str(s): 0 for s in AssignmentStatus}
            for row in self._rows.values():
                counts[str(row.status)] += 1
            counts[str(S.REASSIGNED)] += sum(1 for row in self._history if row.status == S.REASSIGNED)
            counts["total"] = len(self._rows)
            return counts
