"""One assignment pass: filter ready work, match, reserve, inject, record.

Preview, ``auto`` and every watch-loop cascade run through
:meth:`AssignmentPlanner.run`; only ``execute`` differs.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from typing import Any

from beadswarm.coordinator.matcher import Strategy, StrategyMatcher, parse_strategy
from beadswarm.errors import AssignmentConflictError, SendError, TmuxError
from beadswarm.observer.heuristics import agent_name
from beadswarm.observer.panes import PaneObserver
from beadswarm.prompts import PromptRenderer
from beadswarm.protocol.models import Agent, Bead, utc_now_iso
from beadswarm.reservations.arbiter import ReservationArbiter
from beadswarm.store.assignments import AssignmentStore
from beadswarm.utilities.logger import get_logger
from beadswarm.work.provider import WorkProvider, WorkSnapshot

log = get_logger(__name__)

SKIP_BLOCKED = "blocked_by_dependency"
SKIP_CYCLE = "in_dependency_cycle"
SKIP_NO_AGENT = "no_idle_agents"
SKIP_LIMIT = "limit_reached"
SKIP_CONFLICT = "file_conflict"
SKIP_ASSIGNED = "already_assigned"
SKIP_SEND = "send_failed"
SKIP_CANCELLED = "cancelled"


@dataclass(slots=True)
class PassOptions:
    strategy: str = Strategy.BALANCED
    limit: int = 0  # 0 = unlimited
    agent_type: str = ""
    beads: list[str] = field(default_factory=list)
    execute: bool = True
    reserve: bool = True
    delay: float = 0.0
    # Once set, no further prompts are injected during the pass.
    stop: asyncio.Event | None = None


@dataclass(slots=True)
class PlannedAssignment:
    bead_id: str
    bead_title: str
    pane: int
    agent_type: str
    agent_name: str
    status: str
    prompt_sent: bool
    assigned_at: str
    score: float
    reasoning: str = ""
    reserved_paths: list[str] = field(default_factory=list)


@dataclass(slots=True)
class SkippedBead:
    bead_id: str
    bead_title: str
    reason: str
    blocked_by_ids: list[str] = field(default_factory=list)
    conflict_paths: list[str] = field(default_factory=list)


@dataclass(slots=True)
class PassSummary:
    total_bead_count: int = 0
    actionable_count: int = 0
    blocked_count: int = 0
    assigned_count: int = 0
    skipped_count: int = 0
    idle_agent_count: int = 0
    cycle_warning_count: int = 0


@dataclass(slots=True)
class PassResult:
    strategy: str
    assignments: list[PlannedAssignment] = field(default_factory=list)
    skipped: list[SkippedBead] = field(default_factory=list)
    summary: PassSummary = field(default_factory=PassSummary)
    warnings: list[str] = field(default_factory=list)
    degraded: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy,
            "assignments": [asdict(a) for a in self.assignments],
            "skipped": [asdict(s) for s in self.skipped],
            "summary": asdict(self.summary),
        }


class AssignmentPlanner:
    def __init__(
        self,
        session: str,
        *,
        observer: PaneObserver,
        provider: WorkProvider,
        arbiter: ReservationArbiter,
        store: AssignmentStore,
        prompts: PromptRenderer,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.session = session
        self.observer = observer
        self.provider = provider
        self.arbiter = arbiter
        self.store = store
        self.prompts = prompts
        self._sleep = sleep

    def _filter(self, snapshot: WorkSnapshot, options: PassOptions, result: PassResult) -> list[Bead]:
        beads = snapshot.beads
        if options.beads:
            wanted = set(options.beads)
            missing = wanted - {b.id for b in beads}
            for bead_id in sorted(missing):
                result.warnings.append(f"bead {bead_id} is not in the ready list")
            beads = [b for b in beads if b.id in wanted]

        cycle_members = snapshot.cycle_members
        actionable: list[Bead] = []
        for bead in beads:
            if bead.blocked_by:
                result.summary.blocked_count += 1
                result.skipped.append(SkippedBead(bead.id, bead.title, SKIP_BLOCKED, list(bead.blocked_by)))
            elif bead.id in cycle_members:
                result.skipped.append(SkippedBead(bead.id, bead.title, SKIP_CYCLE))
            elif (current := self.store.get(bead.id)) is not None and current.is_active:
                result.skipped.append(SkippedBead(bead.id, bead.title, SKIP_ASSIGNED))
            else:
                actionable.append(bead)
        return actionable

    async def idle_agents(self, agent_type: str = "") -> list[Agent]:
        agents = await self.observer.idle_agents(self.session, agent_type)
        busy = {a.pane_index for a in self.store.list_active()}
        return [a for a in agents if a.pane_index not in busy]

    async def run(self, options: PassOptions, *, snapshot: WorkSnapshot | None = None) -> PassResult:
        strategy = parse_strategy(options.strategy)
        result = PassResult(strategy=str(strategy))
        self.arbiter.begin_pass()
        if snapshot is None:
            snapshot = await self.provider.fetch_ready_work()
        result.degraded = snapshot.degraded
        result.warnings.extend(snapshot.warnings)
        result.summary.total_bead_count = len(snapshot.beads)
        result.summary.cycle_warning_count = len(snapshot.cycles)

        actionable = self._filter(snapshot, options, result)
        result.summary.actionable_count = len(actionable)

        agents = await self.idle_agents(options.agent_type)
        result.summary.idle_agent_count = len(agents)
        by_pane = {a.pane_index: a for a in agents}
        by_bead = {b.id: b for b in actionable}

        candidates = StrategyMatcher(strategy).match(agents, actionable)
        log.debug("matched candidates", strategy=str(strategy), candidates=len(candidates), agents=len(agents))

        handled: set[str] = set()
        used_panes: set[int] = set()
        injected = 0
        for cand in candidates:
            bead = by_bead[cand.bead_id]
            handled.add(bead.id)
            if options.stop is not None and options.stop.is_set():
                result.skipped.append(SkippedBead(bead.id, bead.title, SKIP_CANCELLED))
                continue
            if options.limit and len(result.assignments) >= options.limit:
                result.skipped.append(SkippedBead(bead.id, bead.title, SKIP_LIMIT))
                continue
            if cand.pane_index in used_panes:
                result.skipped.append(SkippedBead(bead.id, bead.title, SKIP_NO_AGENT))
                continue
            agent = by_pane[cand.pane_index]
            name = agent_name(self.session, agent.kind, agent.pane_index)

            if not options.execute:
                used_panes.add(cand.pane_index)
                result.assignments.append(
                    PlannedAssignment(
                        bead_id=bead.id,
                        bead_title=bead.title,
                        pane=agent.pane_index,
                        agent_type=str(agent.kind),
                        agent_name=name,
                        status="planned",
                        prompt_sent=False,
                        assigned_at="",
                        score=cand.score,
                        reasoning=cand.reasoning,
                        reserved_paths=self.arbiter.paths_for(bead.title, bead.description),
                    )
                )
                continue

            if injected and options.delay > 0:
                await self._sleep(options.delay)
                if options.stop is not None and options.stop.is_set():
                    result.skipped.append(SkippedBead(bead.id, bead.title, SKIP_CANCELLED))
                    continue
            item = await self._execute(bead, agent, name, cand.score, cand.reasoning, options, result)
            if item is not None:
                used_panes.add(agent.pane_index)
                result.assignments.append(item)
                injected += 1

        for bead in actionable:
            if bead.id not in handled:
                result.skipped.append(SkippedBead(bead.id, bead.title, SKIP_NO_AGENT))

        result.summary.assigned_count = len(result.assignments)
        result.summary.skipped_count = len(result.skipped)
        return result

    async def _execute(
        self,
        bead: Bead,
        agent: Agent,
        name: str,
        score: float,
        reasoning: str,
        options: PassOptions,
        result: PassResult,
    ) -> PlannedAssignment | None:
        reservation = None
        if options.reserve:
            reservation = await self.arbiter.reserve_for_bead(bead.id, bead.title, bead.description, name)
            if reservation.warning and reservation.warning not in result.warnings:
                result.warnings.append(reservation.warning)
            if reservation.conflicts:
                log.info("skipping bead on file conflict", bead_id=bead.id, pane=agent.pane_index)
                result.skipped.append(
                    SkippedBead(
                        bead.id,
                        bead.title,
                        SKIP_CONFLICT,
                        conflict_paths=[c.path_pattern for c in reservation.conflicts],
                    )
                )
                return None
        reservation_ids = reservation.reservation_ids if reservation else []
        reserved_paths = reservation.granted_paths if reservation else []

        prompt = self.prompts.render(bead.id, bead.title)
        try:
            row = self.store.assign(
                bead.id,
                bead.title,
                agent.pane_index,
                str(agent.kind),
                name,
                prompt,
                reservation_ids=reservation_ids,
                reserved_paths=reserved_paths,
            )
        except AssignmentConflictError as exc:
            await self.arbiter.release_for_bead(name, reservation_ids)
            result.skipped.append(SkippedBead(bead.id, bead.title, SKIP_ASSIGNED))
            result.warnings.append(str(exc))
            return None

        try:
            await self.observer.send_prompt(agent.pane_id, prompt)
        except (SendError, TmuxError) as exc:
            log.warning("prompt injection failed", bead_id=bead.id, pane=agent.pane_index, error=str(exc))
            self.store.remove(bead.id)
            await self.arbiter.release_for_bead(name, reservation_ids)
            result.skipped.append(SkippedBead(bead.id, bead.title, SKIP_SEND))
            result.warnings.append(f"send to pane {agent.pane_index} failed for {bead.id}: {exc}")
            return None

        row = self.store.mark_prompt_sent(bead.id)
        log.info("assigned bead", bead_id=bead.id, pane=agent.pane_index, agent=name, score=score)
        return PlannedAssignment(
            bead_id=bead.id,
            bead_title=bead.title,
            pane=agent.pane_index,
            agent_type=str(agent.kind),
            agent_name=name,
            status=str(row.status),
            prompt_sent=row.prompt_sent,
            assigned_at=row.assigned_at or utc_now_iso(),
            score=score,
            reasoning=reasoning,
            reserved_paths=list(reserved_paths),
        )
