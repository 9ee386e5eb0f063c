"""Reservation arbiter: gates assignments on file path leases."""

from __future__ import annotations

import logging
from pathlib import Path

from beadswarm.errors import BrokerError, BrokerUnavailableError
from beadswarm.protocol.models import Conflict, ReservationResult
from beadswarm.reservations.broker import ReservationBroker
from beadswarm.reservations.paths import extract_paths
from beadswarm.utilities.retry import retry_async

logger = logging.getLogger(__name__)


def lease_ttl_seconds(timeout: float, min_ttl: int = 3600) -> int:
    """Lease length: twice the caller timeout, never under *min_ttl*."""
    return max(int(2 * timeout), min_ttl)


class ReservationArbiter:
    """Reserve paths implied by a bead before it is handed to an agent.

    Any conflict makes the whole candidate skippable. An unreachable broker
    suspends reservations until the next :meth:`begin_pass` and yields a
    warning instead; a rejected call only affects that one bead.
    """

    def __init__(
        self,
        broker: ReservationBroker | None,
        *,
        project_dir: str | Path = ".",
        timeout: float = 30.0,
        min_ttl: int = 3600,
        enabled: bool = True,
        max_attempts: int = 3,
        backoff: float = 1.0,
    ) -> None:
        self._broker = broker
        self._project_dir = Path(project_dir)
        self._ttl = lease_ttl_seconds(timeout, min_ttl)
        self._configured = enabled and broker is not None
        self._suspended = ""
        self._max_attempts = max_attempts
        self._backoff = backoff

    @property
    def enabled(self) -> bool:
        return self._configured and not self._suspended

    @property
    def ttl_seconds(self) -> int:
        return self._ttl

    def begin_pass(self) -> None:
        """Give an unreachable broker another chance."""
        self._suspended = ""

    def paths_for(self, title: str, description: str = "") -> list[str]:
        return extract_paths(f"{title}\n{description}", self._project_dir)

    async def reserve_for_bead(
        self,
        bead_id: str,
        title: str,
        description: str,
        agent_name: str,
        *,
        handover_from: str = "",
    ) -> ReservationResult:
        """Reserve the bead's paths for *agent_name*.

        Paths held only by *handover_from* are not conflicts; they are listed
        in ``handover_paths`` for the caller to take over once the previous
        holder lets go (see :meth:`take_over`).
        """
        return await self._reserve(bead_id, title, self.paths_for(title, description), agent_name, handover_from)

    async def take_over(
        self,
        bead_id: str,
        title: str,
        paths: list[str],
        agent_name: str,
    ) -> ReservationResult:
        return await self._reserve(bead_id, title, list(paths), agent_name, "")

    async def _reserve(
        self,
        bead_id: str,
        title: str,
        paths: list[str],
        agent_name: str,
        handover_from: str,
    ) -> ReservationResult:
        result = ReservationResult(requested_paths=paths)
        if not paths:
            return result
        if not self.enabled or self._broker is None:
            result.disabled = True
            result.warning = self._suspended
            return result

        broker = self._broker
        try:
            response = await retry_async(
                broker.reserve,
                agent_name,
                paths,
                self._ttl,
                f"{bead_id}: {title}"[:200],
                max_attempts=self._max_attempts,
                backoff=self._backoff,
            )
        except BrokerUnavailableError as exc:
            logger.warning("reservations suspended for this pass: %s", exc)
            self._suspended = f"file reservations unavailable: {exc}"
            result.disabled = True
            result.warning = self._suspended
            return result
        except BrokerError as exc:
            logger.warning("reservation for %s rejected: %s", bead_id, exc)
            result.disabled = True
            result.warning = f"file reservation for {bead_id} rejected: {exc}"
            return result

        conflicts: list[Conflict] = []
        for conflict in response.conflicts:
            if _held_only_by(conflict, agent_name):
                continue
            if handover_from and _held_only_by(conflict, handover_from):
                result.handover_paths.append(conflict.path_pattern)
                continue
            conflicts.append(conflict)
        granted_ids = [g.reservation_id for g in response.grants if g.reservation_id]
        if conflicts:
            result.conflicts = conflicts
            result.handover_paths = []
            if granted_ids:
                # Drop partial grants so a skipped bead holds nothing.
                await self.release_for_bead(agent_name, granted_ids)
            return result

        result.granted_paths = [g.path for g in response.grants]
        result.reservation_ids = granted_ids
        return result

    async def release_for_bead(self, agent_name: str, reservation_ids: list[int]) -> int:
        if not reservation_ids or not self._configured or self._broker is None:
            return 0
        try:
            await self._broker.release(agent_name, list(reservation_ids))
        except BrokerError as exc:
            logger.warning("release of %s for %s failed: %s", reservation_ids, agent_name, exc)
            return 0
        return len(reservation_ids)

    async def release_by_paths(self, agent_name: str, paths: list[str]) -> int:
        if not paths or not self._configured or self._broker is None:
            return 0
        try:
            await self._broker.release_by_paths(agent_name, list(paths))
        except BrokerError as exc:
            logger.warning("release of %s for %s failed: %s", paths, agent_name, exc)
            return 0
        return len(paths)

    async def list_conflicts(self) -> list[Conflict]:
        if not self.enabled or self._broker is None:
            return []
        return await self._broker.list_conflicts()


def _held_only_by(conflict: Conflict, agent_name: str) -> bool:
    return bool(conflict.holders) and all(h.agent_name == agent_name for h in conflict.holders)
