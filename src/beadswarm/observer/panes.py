"""Pane observer: turns tmux panes into classified agents."""

from __future__ import annotations

import asyncio
import logging

from beadswarm.config.schema import ObserverConfig
from beadswarm.errors import TmuxError
from beadswarm.observer.heuristics import detect_kind, detect_model, detect_state
from beadswarm.observer.tmux import Multiplexer, PaneInfo
from beadswarm.protocol.models import Agent, AgentKind, AgentState

logger = logging.getLogger(__name__)


class PaneObserver:
    """Polls one multiplexer for pane kinds and states.

    Scrollback captures fan out concurrently, bounded by ``max_concurrency``.
    """

    def __init__(
        self,
        mux: Multiplexer,
        config: ObserverConfig | None = None,
        *,
        max_concurrency: int = 8,
    ) -> None:
        self._mux = mux
        self._config = config or ObserverConfig()
        self._sem = asyncio.Semaphore(max(1, max_concurrency))
        self._pane_ids: dict[tuple[str, int], str] = {}

    @property
    def config(self) -> ObserverConfig:
        return self._config

    def detect_kind(self, title: str) -> AgentKind:
        return detect_kind(title, self._config.kind_markers)

    def detect_state(self, tail: str, kind: AgentKind | str = AgentKind.UNKNOWN) -> AgentState:
        return detect_state(
            tail,
            kind,
            idle_markers=self._config.idle_markers,
            error_markers=self._config.error_markers,
        )

    async def capture_tail(self, pane_id: str, n_lines: int | None = None) -> str:
        return await self._mux.capture_tail(pane_id, n_lines or self._config.capture_lines)

    async def list_panes(self, session: str) -> list[Agent]:
        """Enumerate panes and classify each one.

        A capture failure on a single pane yields state ``unknown`` for that
        pane rather than failing the whole poll.
        """
        panes = await self._mux.list_panes(session)
        agents = await asyncio.gather(*(self._classify(p) for p in panes))
        for key in [k for k in self._pane_ids if k[0] == session]:
            del self._pane_ids[key]
        for agent in agents:
            self._pane_ids[(session, agent.pane_index)] = agent.pane_id
        return sorted(agents, key=lambda a: a.pane_index)

    async def _classify(self, pane: PaneInfo) -> Agent:
        kind = self.detect_kind(pane.title)
        state = AgentState.UNKNOWN
        if kind != AgentKind.UNKNOWN:
            async with self._sem:
                try:
                    tail = await self.capture_tail(pane.pane_id)
                except TmuxError as exc:
                    logger.warning("capture failed for pane %s: %s", pane.pane_id, exc)
                    tail = ""
            state = self.detect_state(tail, kind)
        return Agent(
            pane_id=pane.pane_id,
            pane_index=pane.pane_index,
            title=pane.title,
            kind=kind,
            model_variant=detect_model(pane.title),
            state=state,
        )

    async def idle_agents(self, session: str, kind_filter: str = "") -> list[Agent]:
        """Idle, assignable agents in pane order, optionally of one kind."""
        agents = await self.list_panes(session)
        return [
            a
            for a in agents
            if a.is_agent and a.is_idle and (not kind_filter or a.kind == kind_filter)
        ]

    async def find_pane(self, session: str, pane_index: int) -> Agent | None:
        for agent in await self.list_panes(session):
            if agent.pane_index == pane_index:
                return agent
        return None

    async def pane_id_for(self, session: str, pane_index: int, *, refresh: bool = False) -> str | None:
        """Pane id for *pane_index*, from the last listing unless *refresh*."""
        cached = None if refresh else self._pane_ids.get((session, pane_index))
        if cached:
            return cached
        agent = await self.find_pane(session, pane_index)
        return agent.pane_id if agent else None

    async def send_prompt(self, pane_id: str, prompt: str) -> None:
        await self._mux.send_keys(pane_id, prompt, enter=True)
