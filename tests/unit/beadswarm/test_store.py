"""Tests for the durable assignment store."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from beadswarm.coordinator.event_bus import AssignmentEvent, EventBus
from beadswarm.errors import (
    AssignmentConflictError,
    BeadswarmError,
    ErrorCode,
    InvalidTransitionError,
    NotAssignedError,
    StoreError,
)
from beadswarm.protocol.models import AssignmentStatus
from beadswarm.store.assignments import AssignmentStore

S = AssignmentStatus


@pytest.fixture
def store(tmp_path: Path) -> AssignmentStore:
    return AssignmentStore.open(tmp_path, "proj")


def _assign(store: AssignmentStore, bead_id: str, pane: int, kind: str = "claude") -> None:
    store.assign(bead_id, f"title {bead_id}", pane, kind, f"proj_{kind}_{pane}", f"prompt {bead_id}")


class TestAssign:
    def test_persists_immediately(self, tmp_path: Path, store: AssignmentStore) -> None:
        _assign(store, "bd-1", 0)
        doc = json.loads(store.path.read_text())
        assert doc["session_name"] == "proj"
        assert doc["version"] == 1
        assert doc["assignments"]["bd-1"]["status"] == "assigned"
        assert doc["assignments"]["bd-1"]["pane_index"] == 0

        reopened = AssignmentStore.open(tmp_path, "proj")
        row = reopened.get("bd-1")
        assert row is not None
        assert row.agent_name == "proj_claude_0"
        assert row.prompt == "prompt bd-1"

    def test_one_active_per_bead(self, store: AssignmentStore) -> None:
        _assign(store, "bd-1", 0)
        with pytest.raises(AssignmentConflictError) as info:
            _assign(store, "bd-1", 1)
        assert info.value.reason == "already_assigned"
        assert info.value.code == ErrorCode.ALREADY_ASSIGNED

    def test_one_active_per_pane(self, store: AssignmentStore) -> None:
        _assign(store, "bd-1", 0)
        with pytest.raises(AssignmentConflictError) as info:
            _assign(store, "bd-2", 0)
        assert info.value.reason == "pane_occupied"
        assert info.value.code == ErrorCode.PANE_BUSY
        assert info.value.details["current_bead"] == "bd-1"

    def test_pane_free_again_after_completion(self, store: AssignmentStore) -> None:
        _assign(store, "bd-1", 0)
        store.update_status("bd-1", S.WORKING)
        store.update_status("bd-1", S.COMPLETED)
        _assign(store, "bd-2", 0)
        assert {r.bead_id for r in store.list_active()} == {"bd-2"}

    def test_reassigning_finished_bead_keeps_history(self, store: AssignmentStore) -> None:
        _assign(store, "bd-1", 0)
        store.update_status("bd-1", S.FAILED, "boom")
        _assign(store, "bd-1", 1)
        assert store.get("bd-1").pane_index == 1
        assert [r.status for r in store.history()] == [S.FAILED]

    def test_returns_snapshot(self, store: AssignmentStore) -> None:
        _assign(store, "bd-1", 0)
        row = store.get("bd-1")
        row.status = S.COMPLETED
        assert store.get("bd-1").status == S.ASSIGNED


class TestTransitions:
    def test_happy_path_timestamps(self, store: AssignmentStore) -> None:
        _assign(store, "bd-1", 0)
        working = store.update_status("bd-1", S.WORKING)
        assert working.started_at
        done = store.update_status("bd-1", S.COMPLETED)
        assert done.completed_at
        assert done.failed_at is None

    def test_failure_records_reason(self, store: AssignmentStore) -> None:
        _assign(store, "bd-1", 0)
        row = store.update_status("bd-1", S.FAILED, "rate limit")
        assert row.failure_reason == "rate limit"
        assert row.failed_at

    @pytest.mark.parametrize(
        ("path", "target"),
        [
            ([], S.COMPLETED),
            ([S.WORKING, S.COMPLETED], S.FAILED),
            ([S.FAILED], S.WORKING),
            ([S.FAILED], S.ASSIGNED),
        ],
    )
    def test_rejected(self, store: AssignmentStore, path: list[AssignmentStatus], target: AssignmentStatus) -> None:
        _assign(store, "bd-1", 0)
        for step in path:
            store.update_status("bd-1", step)
        with pytest.raises(InvalidTransitionError):
            store.update_status("bd-1", target)

    def test_same_status_is_noop(self, store: AssignmentStore) -> None:
        _assign(store, "bd-1", 0)
        assert store.update_status("bd-1", S.ASSIGNED).status == S.ASSIGNED

    def test_missing_bead(self, store: AssignmentStore) -> None:
        with pytest.raises(NotAssignedError):
            store.update_status("bd-404", S.WORKING)


class TestReassign:
    def test_retry_count_grows_only_from_failed(self, store: AssignmentStore) -> None:
        _assign(store, "bd-1", 0)
        moved = store.reassign("bd-1", 1, "codex", "proj_codex_1")
        assert moved.retry_count == 0
        assert moved.pane_index == 1
        assert moved.prompt == "prompt bd-1"

        store.update_status("bd-1", S.FAILED, "crash")
        retried = store.reassign("bd-1", 2, "claude", "proj_claude_2", prompt="again")
        assert retried.retry_count == 1
        assert retried.status == S.ASSIGNED
        assert retried.prompt == "again"

    def test_old_row_kept_as_history(self, store: AssignmentStore) -> None:
        _assign(store, "bd-1", 0)
        store.update_status("bd-1", S.FAILED, "crash")
        store.reassign("bd-1", 1, "codex", "proj_codex_1")

        history = store.history()
        assert len(history) == 1
        assert history[0].status == S.REASSIGNED
        assert history[0].pane_index == 0
        assert history[0].failure_reason == "crash"
        all_rows = store.get_all()
        assert [r.status for r in all_rows] == [S.ASSIGNED, S.REASSIGNED]

    def test_completed_cannot_move(self, store: AssignmentStore) -> None:
        _assign(store, "bd-1", 0)
        store.update_status("bd-1", S.WORKING)
        store.update_status("bd-1", S.COMPLETED)
        with pytest.raises(BeadswarmError) as info:
            store.reassign("bd-1", 1, "codex", "proj_codex_1")
        assert info.value.code == ErrorCode.ALREADY_COMPLETED

    def test_missing(self, store: AssignmentStore) -> None:
        with pytest.raises(NotAssignedError):
            store.reassign("bd-9", 1, "codex", "proj_codex_1")

    def test_occupied_target(self, store: AssignmentStore) -> None:
        _assign(store, "bd-1", 0)
        _assign(store, "bd-2", 1)
        with pytest.raises(AssignmentConflictError):
            store.reassign("bd-1", 1, "codex", "proj_codex_1")
        assert store.get("bd-1").pane_index == 0

    def test_displace_marks_occupant_failed(self, store: AssignmentStore) -> None:
        _assign(store, "bd-1", 0)
        _assign(store, "bd-2", 1)
        store.reassign("bd-1", 1, "codex", "proj_codex_1", displace=True)
        occupant = store.get("bd-2")
        assert occupant.status == S.FAILED
        assert occupant.failure_reason == "displaced by bd-1"
        assert [r.bead_id for r in store.list_active()] == ["bd-1"]


class TestDurability:
    def test_missing_file_is_empty(self, store: AssignmentStore) -> None:
        assert store.get_all() == []
        assert store.stats()["total"] == 0

    def test_backup_rotation_and_recovery(self, tmp_path: Path, store: AssignmentStore) -> None:
        _assign(store, "bd-1", 0)
        _assign(store, "bd-2", 1)
        backup = store.path.with_suffix(".json.bak")
        assert backup.exists()

        store.path.write_text("{ torn")
        recovered = AssignmentStore.open(tmp_path, "proj")
        assert recovered.get("bd-1") is not None

    def test_corrupt_without_backup_raises(self, tmp_path: Path) -> None:
        path = tmp_path / "proj" / "assignments.json"
        path.parent.mkdir(parents=True)
        path.write_text("not json")
        with pytest.raises(StoreError) as info:
            AssignmentStore.open(tmp_path, "proj")
        assert info.value.code == ErrorCode.STORE_ERROR

    def test_newer_version_rejected(self, tmp_path: Path) -> None:
        path = tmp_path / "proj" / "assignments.json"
        path.parent.mkdir(parents=True)
        path.write_text(json.dumps({"assignments": {}, "version": 99}))
        with pytest.raises(StoreError):
            AssignmentStore.open(tmp_path, "proj")

    def test_failed_write_rolls_back(self, store: AssignmentStore, monkeypatch: pytest.MonkeyPatch) -> None:
        _assign(store, "bd-1", 0)

        def boom(*args: object, **kwargs: object) -> None:
            raise OSError("disk full")

        monkeypatch.setattr("beadswarm.store.assignments.write_json_atomic", boom)
        with pytest.raises(StoreError):
            _assign(store, "bd-2", 1)
        assert store.get("bd-2") is None
        assert len(store.list_active()) == 1


class TestQueries:
    def test_stats_and_filters(self, store: AssignmentStore) -> None:
        _assign(store, "bd-1", 0)
        _assign(store, "bd-2", 1)
        _assign(store, "bd-3", 2)
        store.update_status("bd-2", S.WORKING)
        store.update_status("bd-3", S.FAILED, "x")
        store.reassign("bd-3", 3, "codex", "proj_codex_3")

        stats = store.stats()
        assert stats["assigned"] == 2
        assert stats["working"] == 1
        assert stats["failed"] == 0
        assert stats["reassigned"] == 1
        assert stats["total"] == 3
        assert [r.bead_id for r in store.list_by_status(S.WORKING)] == ["bd-2"]
        assert [r.bead_id for r in store.list_by_pane(3)] == ["bd-3"]
        assert store.find_by_pane(1).bead_id == "bd-2"
        assert store.find_by_pane(2) is None

    def test_clear_by_status(self, store: AssignmentStore) -> None:
        _assign(store, "bd-1", 0)
        _assign(store, "bd-2", 1)
        store.update_status("bd-2", S.FAILED, "x")
        removed = store.clear_by_status(S.FAILED)
        assert [r.bead_id for r in removed] == ["bd-2"]
        assert store.get("bd-2") is None

    def test_remove_missing(self, store: AssignmentStore) -> None:
        with pytest.raises(NotAssignedError):
            store.remove("bd-1")


def test_events_published(tmp_path: Path) -> None:
    bus = EventBus()
    seen: list[AssignmentEvent] = []
    bus.subscribe(seen.append)
    store = AssignmentStore.open(tmp_path, "proj", event_bus=bus)

    _assign(store, "bd-1", 0)
    store.update_status("bd-1", S.WORKING)

    assert [(e.from_status, e.to_status) for e in seen] == [("", "assigned"), ("assigned", "working")]
    assert seen[0].agent_name == "proj_claude_0"
