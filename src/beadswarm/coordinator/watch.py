"""Watch loop: cascade assignments as agents finish their beads.

A single supervisor task owns the store while the loop runs. Completion
events are handled strictly one at a time, in arrival order, so the store
update for one event happens before any decision driven by the next.
"""

from __future__ import annotations

import asyncio
import contextlib
import signal
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from typing import Any

from beadswarm.coordinator.completion import CompletionDetector
from beadswarm.coordinator.event_bus import AssignmentEvent
from beadswarm.coordinator.planner import AssignmentPlanner, PassOptions, PassResult
from beadswarm.errors import BeadswarmError
from beadswarm.protocol.models import AssignmentStatus, CompletionEvent
from beadswarm.store.assignments import AssignmentStore
from beadswarm.utilities.logger import get_logger

log = get_logger(__name__)


def format_duration(seconds: float) -> str:
    total = int(round(seconds))
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


@dataclass(slots=True)
class WatchOptions:
    strategy: str = "balanced"
    limit: int = 0
    agent_type: str = ""
    beads: list[str] = field(default_factory=list)
    auto_reassign: bool = True
    delay: float = 0.0
    stop_when_done: bool = False
    reserve: bool = True
    poll_interval: float = 30.0


@dataclass(slots=True)
class WatchSummary:
    total_assigned: int = 0
    total_completed: int = 0
    total_failed: int = 0
    duration_seconds: float = 0.0
    exit_reason: str = ""
    warnings: list[str] = field(default_factory=list)
    events: list[dict[str, Any]] = field(default_factory=list)

    def line(self) -> str:
        return (
            f"Watch session: {self.total_assigned} assigned, {self.total_completed} completed, "
            f"{self.total_failed} failed in {format_duration(self.duration_seconds)}"
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["summary"] = self.line()
        return data


class WatchLoop:
    def __init__(
        self,
        planner: AssignmentPlanner,
        detector: CompletionDetector,
        options: WatchOptions | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        on_pass: Callable[[PassResult], Any] | None = None,
    ) -> None:
        self._planner = planner
        self._detector = detector
        self._options = options or WatchOptions()
        self._clock = clock
        self._on_pass = on_pass
        self.summary = WatchSummary()
        self.stop_event = asyncio.Event()

    @property
    def store(self) -> AssignmentStore:
        return self._planner.store

    def request_stop(self) -> None:
        self.stop_event.set()

    def _pass_options(self) -> PassOptions:
        opts = self._options
        return PassOptions(
            strategy=opts.strategy,
            limit=opts.limit,
            agent_type=opts.agent_type,
            beads=list(opts.beads),
            execute=True,
            reserve=opts.reserve,
            delay=opts.delay,
            stop=self.stop_event,
        )

    async def _assignment_pass(self) -> PassResult:
        result = await self._planner.run(self._pass_options())
        self.summary.total_assigned += result.summary.assigned_count
        for warning in result.warnings:
            if warning not in self.summary.warnings:
                self.summary.warnings.append(warning)
        for skipped in result.skipped:
            log.info("bead skipped", bead_id=skipped.bead_id, reason=skipped.reason)
        if self._on_pass is not None:
            self._on_pass(result)
        return result

    async def _cascade(self) -> PassResult | None:
        """Run a pass; a failed one is recorded and the loop keeps going."""
        try:
            return await self._assignment_pass()
        except BeadswarmError as exc:
            log.warning("assignment pass failed", error=str(exc), code=str(exc.code))
            message = f"assignment pass failed: {exc}"
            if message not in self.summary.warnings:
                self.summary.warnings.append(message)
            return None

    async def handle_event(self, event: CompletionEvent) -> PassResult | None:
        """Record one completion, then cascade onto newly unblocked work."""
        store = self._planner.store
        row = store.get(event.bead_id)
        if row is None or not row.is_active:
            log.debug("completion for inactive assignment ignored", bead_id=event.bead_id)
            return None

        if event.is_failed:
            store.update_status(event.bead_id, AssignmentStatus.FAILED, event.fail_reason)
            self.summary.total_failed += 1
        else:
            if row.status == AssignmentStatus.ASSIGNED:
                store.update_status(event.bead_id, AssignmentStatus.WORKING)
            store.update_status(event.bead_id, AssignmentStatus.COMPLETED)
            self._planner.provider.mark_completed(event.bead_id)
            self.summary.total_completed += 1
        self.summary.events.append(event.to_dict())
        await self._planner.arbiter.release_for_bead(row.agent_name, row.reservation_ids)

        if not self._options.auto_reassign or self.stop_event.is_set():
            return None
        self._planner.provider.invalidate()
        return await self._cascade()

    async def _work_remaining(self) -> bool:
        """False once nothing is active and nothing assignable is ready."""
        if self._planner.store.list_active():
            return True
        self._planner.provider.invalidate()
        result = await self._cascade()
        if result is None:
            return True
        return bool(result.summary.actionable_count) or bool(self._planner.store.list_active())

    async def _poll(self) -> None:
        while not self.stop_event.is_set():
            try:
                await self._detector.poll_once()
            except BeadswarmError as exc:
                log.warning("completion poll failed", error=str(exc))
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self.stop_event.wait(), timeout=self._options.poll_interval)

    def _install_signals(self) -> list[signal.Signals]:
        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop)
            except (NotImplementedError, RuntimeError):
                continue
            installed.append(sig)
        return installed

    def _log_transition(self, event: AssignmentEvent) -> None:
        log.info(
            "assignment transition",
            bead_id=event.bead_id,
            pane=event.pane_index,
            from_status=event.from_status or "-",
            to_status=event.to_status,
            reason=event.reason,
        )

    async def run(self, *, handle_signals: bool = True) -> WatchSummary:
        started = self._clock()
        installed = self._install_signals() if handle_signals else []
        bus = self.store.event_bus
        if bus is not None:
            bus.subscribe(self._log_transition)
        poller = asyncio.create_task(self._poll())
        try:
            await self._cascade()
            self.summary.exit_reason = await self._supervise()
        finally:
            self.stop_event.set()
            poller.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await poller
            loop = asyncio.get_running_loop()
            for sig in installed:
                loop.remove_signal_handler(sig)
            if bus is not None:
                bus.unsubscribe(self._log_transition)
            self._planner.store.save()
            self.summary.duration_seconds = self._clock() - started
        log.info(self.summary.line(), exit_reason=self.summary.exit_reason)
        return self.summary

    async def _supervise(self) -> str:
        events = self._detector.events
        while True:
            if self.stop_event.is_set():
                return "signal"
            getter = asyncio.create_task(events.get())
            stopper = asyncio.create_task(self.stop_event.wait())
            done, _ = await asyncio.wait(
                {getter, stopper},
                timeout=self._options.poll_interval,
                return_when=asyncio.FIRST_COMPLETED,
            )
            stopper.cancel()
            if getter not in done:
                getter.cancel()
                await asyncio.wait({getter})
            if not getter.cancelled():
                # Drain: an event already taken off the queue is always handled.
                await self.handle_event(getter.result())
                continue
            if self.stop_event.is_set():
                return "signal"
            if self._options.stop_when_done and not await self._work_remaining():
                return "no_work_remaining"
