"""Tests for the watch loop."""

from __future__ import annotations

import asyncio

import pytest

from beadswarm.controllers.runtime import Runtime
from beadswarm.coordinator.event_bus import AssignmentEvent
from beadswarm.coordinator.planner import SKIP_CANCELLED, AssignmentPlanner, PassResult
from beadswarm.coordinator.watch import WatchLoop, WatchOptions, WatchSummary, format_duration
from beadswarm.protocol.models import AssignmentStatus, CompletionEvent
from tests.helpers.fakes import BUSY, IDLE, FakeBroker, FakeMux, FakePrioritizer, agent_panes


def _panes(mux: FakeMux, *kinds: str) -> None:
    for pane in agent_panes(*kinds):
        mux.panes[pane.index] = pane


def _loop(runtime: Runtime, **options: object) -> WatchLoop:
    opts = WatchOptions(poll_interval=3600.0)
    for key, value in options.items():
        setattr(opts, key, value)
    return WatchLoop(runtime.planner, runtime.detector(), opts)


class TestCascade:
    @pytest.mark.asyncio
    async def test_completion_unblocks_next_bead(
        self, runtime: Runtime, mux: FakeMux, prioritizer: FakePrioritizer
    ) -> None:
        _panes(mux, "claude", "codex")
        mux.set_tail(1, BUSY)
        prioritizer.recommendations = [
            {"id": "bd-1", "title": "refactor parser", "priority": 1},
            {"id": "bd-2", "title": "implement feature Y", "priority": 2, "blocked_by": ["bd-1"]},
        ]
        detector = runtime.detector()
        passes: list[PassResult] = []

        def on_pass(result: PassResult) -> None:
            passes.append(result)
            if len(passes) == 1:
                mux.set_tail(0, BUSY)
                mux.set_tail(1, IDLE)
                prioritizer.recommendations = [{"id": "bd-2", "title": "implement feature Y", "priority": 2}]
                detector.events.put_nowait(CompletionEvent("bd-1", 0, "claude"))
            else:
                loop.request_stop()

        loop = WatchLoop(runtime.planner, detector, WatchOptions(poll_interval=3600.0), on_pass=on_pass)
        summary = await asyncio.wait_for(loop.run(handle_signals=False), timeout=5)

        assert [a.bead_id for a in passes[0].assignments] == ["bd-1"]
        assert [(a.bead_id, a.pane) for a in passes[1].assignments] == [("bd-2", 1)]
        assert runtime.store.get("bd-1").status == AssignmentStatus.COMPLETED
        assert runtime.store.get("bd-2").status == AssignmentStatus.ASSIGNED
        assert summary.total_assigned == 2
        assert summary.total_completed == 1
        assert summary.exit_reason == "signal"
        assert summary.line().startswith("Watch session: 2 assigned, 1 completed, 0 failed in ")

    @pytest.mark.asyncio
    async def test_failure_without_auto_reassign(
        self, runtime: Runtime, mux: FakeMux, prioritizer: FakePrioritizer, broker: FakeBroker
    ) -> None:
        _panes(mux, "claude")
        runtime.store.assign("bd-1", "Fix src/a.py", 0, "claude", "proj_claude_0", "go", reservation_ids=[4])
        loop = _loop(runtime, auto_reassign=False)

        result = await loop.handle_event(CompletionEvent("bd-1", 0, "claude", is_failed=True, fail_reason="boom"))

        assert result is None
        row = runtime.store.get("bd-1")
        assert row.status == AssignmentStatus.FAILED
        assert row.failure_reason == "boom"
        assert loop.summary.total_failed == 1
        assert broker.released == [("proj_claude_0", [4])]
        assert prioritizer.count("triage") == 0

    @pytest.mark.asyncio
    async def test_event_for_inactive_row_ignored(self, runtime: Runtime, mux: FakeMux) -> None:
        _panes(mux, "claude")
        runtime.store.assign("bd-1", "t", 0, "claude", "proj_claude_0", "go")
        runtime.store.update_status("bd-1", AssignmentStatus.FAILED, "x")
        loop = _loop(runtime)

        assert await loop.handle_event(CompletionEvent("bd-1", 0, "claude")) is None
        assert await loop.handle_event(CompletionEvent("bd-404", 0, "claude")) is None
        assert loop.summary.total_completed == 0

    @pytest.mark.asyncio
    async def test_failed_cascade_keeps_watching(
        self, runtime: Runtime, mux: FakeMux, prioritizer: FakePrioritizer
    ) -> None:
        _panes(mux, "claude")
        runtime.store.assign("bd-1", "t", 0, "claude", "proj_claude_0", "go")
        prioritizer.failures = {"triage": 99, "ready": 99}
        loop = _loop(runtime)

        result = await loop.handle_event(CompletionEvent("bd-1", 0, "claude"))

        assert result is None
        assert runtime.store.get("bd-1").status == AssignmentStatus.COMPLETED
        assert loop.summary.total_completed == 1
        assert any(w.startswith("assignment pass failed:") for w in loop.summary.warnings)
        assert await loop._work_remaining() is True


class TestExit:
    @pytest.mark.asyncio
    async def test_stop_when_done(self, runtime: Runtime, mux: FakeMux) -> None:
        _panes(mux, "claude")
        loop = _loop(runtime, stop_when_done=True, poll_interval=0.01)

        summary = await asyncio.wait_for(loop.run(handle_signals=False), timeout=5)

        assert summary.exit_reason == "no_work_remaining"
        assert summary.total_assigned == 0

    @pytest.mark.asyncio
    async def test_stop_before_start_sends_nothing(
        self, runtime: Runtime, mux: FakeMux, prioritizer: FakePrioritizer
    ) -> None:
        _panes(mux, "claude")
        prioritizer.recommendations = [{"id": "bd-1", "title": "t"}]
        loop = _loop(runtime)
        loop.request_stop()

        summary = await asyncio.wait_for(loop.run(handle_signals=False), timeout=5)

        assert summary.exit_reason == "signal"
        assert mux.sent == []
        assert runtime.store.get("bd-1") is None

    @pytest.mark.asyncio
    async def test_stop_during_delay_sends_nothing_more(
        self, runtime: Runtime, mux: FakeMux, prioritizer: FakePrioritizer
    ) -> None:
        _panes(mux, "claude", "codex", "gemini")
        prioritizer.recommendations = [{"id": f"bd-{i}", "title": "t"} for i in (1, 2, 3)]

        async def fake_sleep(seconds: float) -> None:
            loop.request_stop()

        planner = AssignmentPlanner(
            runtime.session,
            observer=runtime.observer,
            provider=runtime.provider,
            arbiter=runtime.arbiter,
            store=runtime.store,
            prompts=runtime.prompts,
            sleep=fake_sleep,
        )
        passes: list[PassResult] = []
        options = WatchOptions(poll_interval=3600.0, delay=1.0)
        loop = WatchLoop(planner, runtime.detector(), options, on_pass=passes.append)

        summary = await asyncio.wait_for(loop.run(handle_signals=False), timeout=5)

        assert summary.exit_reason == "signal"
        assert len(mux.sent) == 1
        assert summary.total_assigned == 1
        assert sorted(s.reason for s in passes[0].skipped) == [SKIP_CANCELLED, SKIP_CANCELLED]

    @pytest.mark.asyncio
    async def test_store_saved_on_exit(self, runtime: Runtime, mux: FakeMux) -> None:
        _panes(mux, "claude")
        loop = _loop(runtime)
        loop.request_stop()
        await loop.run(handle_signals=False)
        assert runtime.store.path.exists()

    @pytest.mark.asyncio
    async def test_transitions_observed_only_while_running(
        self, runtime: Runtime, mux: FakeMux, prioritizer: FakePrioritizer
    ) -> None:
        _panes(mux, "claude")
        prioritizer.recommendations = [{"id": "bd-1", "title": "t"}]
        seen: list[AssignmentEvent] = []
        loop = WatchLoop(
            runtime.planner,
            runtime.detector(),
            WatchOptions(poll_interval=3600.0),
            on_pass=lambda result: loop.request_stop(),
        )
        loop._log_transition = seen.append  # type: ignore[method-assign]

        await asyncio.wait_for(loop.run(handle_signals=False), timeout=5)
        count = len(seen)
        runtime.store.update_status("bd-1", AssignmentStatus.WORKING)

        assert ("bd-1", "assigned") in [(e.bead_id, e.to_status) for e in seen]
        assert len(seen) == count


class TestSummary:
    @pytest.mark.parametrize(("seconds", "text"), [(5, "5s"), (65, "1m5s"), (3725, "1h2m5s"), (0.4, "0s")])
    def test_format_duration(self, seconds: float, text: str) -> None:
        assert format_duration(seconds) == text

    def test_line_and_dict(self) -> None:
        summary = WatchSummary(total_assigned=2, total_completed=1, duration_seconds=65, exit_reason="signal")
        assert summary.line() == "Watch session: 2 assigned, 1 completed, 0 failed in 1m5s"
        data = summary.to_dict()
        assert data["summary"] == summary.line()
        assert data["exit_reason"] == "signal"
