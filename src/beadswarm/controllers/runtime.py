"""Wire a loaded config into the engine components for one session."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from beadswarm.config.schema import BeadswarmConfig
from beadswarm.coordinator.completion import CompletionDetector
from beadswarm.coordinator.event_bus import EventBus
from beadswarm.coordinator.planner import AssignmentPlanner
from beadswarm.observer.panes import PaneObserver
from beadswarm.observer.tmux import Multiplexer, TmuxClient
from beadswarm.prompts import PromptRenderer
from beadswarm.protocol.models import default_session_layout
from beadswarm.reservations.arbiter import ReservationArbiter
from beadswarm.reservations.broker import AgentMailClient, ReservationBroker
from beadswarm.store.assignments import AssignmentStore
from beadswarm.work.provider import CommandRunner, WorkProvider, run_command


@dataclass(slots=True)
class Runtime:
    session: str
    config: BeadswarmConfig
    observer: PaneObserver
    provider: WorkProvider
    arbiter: ReservationArbiter
    store: AssignmentStore
    prompts: PromptRenderer
    events: EventBus
    planner: AssignmentPlanner
    _owned_client: AgentMailClient | None = field(default=None, repr=False)

    def detector(self) -> CompletionDetector:
        return CompletionDetector(self.session, self.observer, self.store, self.config.completion)

    async def aclose(self) -> None:
        if self._owned_client is not None:
            await self._owned_client.close()
            self._owned_client = None


def build_runtime(
    config: BeadswarmConfig,
    session: str,
    *,
    mux: Multiplexer | None = None,
    runner: CommandRunner | None = None,
    broker: ReservationBroker | None = None,
) -> Runtime:
    """Build every component for *session*.

    The prompt template is resolved first so a bad template fails before
    anything touches tmux, the prioritizer or the broker.
    """
    prompts = PromptRenderer(config.prompts.template, config.prompts.template_file or None)
    layout = default_session_layout(Path(config.session.store_dir).expanduser(), session)
    events = EventBus(layout["events"])
    store = AssignmentStore.open(config.session.store_dir, session, event_bus=events)
    timeout = config.session.timeout_seconds
    project_dir = str(Path(config.session.project_dir).expanduser())

    observer = PaneObserver(mux or TmuxClient(config.observer.tmux_binary, timeout), config.observer)
    provider = WorkProvider(
        config.provider,
        project_dir=project_dir,
        timeout=timeout,
        runner=runner or run_command,
    )

    reservations = config.reservations
    owned: AgentMailClient | None = None
    if broker is None and reservations.enabled:
        project_key = reservations.project_key or str(Path(project_dir).resolve())
        owned = AgentMailClient(
            reservations.broker_url,
            project_key,
            bearer_token=reservations.bearer_token,
            timeout=timeout,
        )
        broker = owned
    arbiter = ReservationArbiter(
        broker,
        project_dir=project_dir,
        timeout=timeout,
        min_ttl=reservations.min_ttl_seconds,
        enabled=reservations.enabled,
        max_attempts=config.provider.max_attempts,
        backoff=config.provider.backoff_seconds,
    )

    planner = AssignmentPlanner(
        session,
        observer=observer,
        provider=provider,
        arbiter=arbiter,
        store=store,
        prompts=prompts,
    )
    return Runtime(
        session=session,
        config=config,
        observer=observer,
        provider=provider,
        arbiter=arbiter,
        store=store,
        prompts=prompts,
        events=events,
        planner=planner,
        _owned_client=owned,
    )
