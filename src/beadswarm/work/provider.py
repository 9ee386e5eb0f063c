"""Work provider adapter over the ``bv`` / ``br`` prioritizer CLIs.

``ready_ranked`` and ``insights`` go through bounded linear-backoff retry.
When triage is gone for good, :meth:`WorkProvider.fetch_ready_work` degrades
to the plain ready list and reports a warning instead of failing.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from tenacity import RetryCallState

from beadswarm.config.schema import ProviderConfig
from beadswarm.errors import ProviderError
from beadswarm.protocol.models import Bead, Recommendation
from beadswarm.utilities.retry import retry_async

logger = logging.getLogger(__name__)

CommandRunner = Callable[[list[str], str, float], Awaitable[str]]


async def run_command(argv: list[str], cwd: str, timeout: float) -> str:
    """Run a prioritizer command and return stdout."""
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
        )
    except FileNotFoundError as exc:
        raise ProviderError(f"{argv[0]} is not installed", retryable=False) from exc
    try:
        out, err = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        proc.kill()
        await proc.wait()
        raise ProviderError(f"{' '.join(argv)} timed out after {timeout}s") from exc
    if proc.returncode != 0:
        stderr_text = (err or b"").decode("utf-8", errors="replace").strip()
        raise ProviderError(f"{' '.join(argv)} exited {proc.returncode}: {stderr_text}")
    return (out or b"").decode("utf-8", errors="replace")


def _parse_priority(value: Any) -> int:
    if isinstance(value, bool):
        return 2
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str):
        text = value.strip().upper().removeprefix("P")
        try:
            return int(text)
        except ValueError:
            return 2
    return 2


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(v) for v in value if v]


def parse_triage(payload: Any) -> list[Recommendation]:
    """Extract ranked recommendations from ``bv -robot-triage`` output."""
    if not isinstance(payload, dict):
        raise ProviderError("triage output is not an object", retryable=False)
    triage = payload.get("triage", payload)
    items = triage.get("recommendations", []) if isinstance(triage, dict) else []
    if not isinstance(items, list):
        raise ProviderError("triage recommendations is not a list", retryable=False)
    recs: list[Recommendation] = []
    for item in items:
        if not isinstance(item, dict) or not item.get("id"):
            continue
        score = item.get("score", 0.0)
        recs.append(
            Recommendation(
                id=str(item["id"]),
                title=str(item.get("title", "")),
                priority=_parse_priority(item.get("priority", 2)),
                blocked_by=_str_list(item.get("blocked_by", item.get("blockers"))),
                description=str(item.get("description", "")),
                status=str(item.get("status", "")),
                score=float(score) if isinstance(score, (int, float)) else 0.0,
                reasons=_str_list(item.get("reasons")),
            )
        )
    return recs


def parse_ready(payload: Any) -> list[Bead]:
    """Extract beads from ``br ready --json`` output."""
    if isinstance(payload, dict):
        payload = payload.get("issues", payload.get("beads", []))
    if not isinstance(payload, list):
        raise ProviderError("ready output is not a list", retryable=False)
    beads: list[Bead] = []
    for item in payload:
        if not isinstance(item, dict) or not item.get("id"):
            continue
        beads.append(
            Bead(
                id=str(item["id"]),
                title=str(item.get("title", "")),
                priority=_parse_priority(item.get("priority", 2)),
                description=str(item.get("description", "")),
                status=str(item.get("status", "")),
            )
        )
    return beads


def validate_cycles(raw: Any) -> list[list[str]]:
    """Normalise cycle lists from insights.

    Accepts ``[[ids]]`` or ``[{"nodes": [ids]}]``. A repeated closing node is
    dropped; cycles with fewer than two distinct nodes, or with a repeat
    anywhere else, are discarded.
    """
    if not isinstance(raw, list):
        return []
    cycles: list[list[str]] = []
    for entry in raw:
        nodes = entry.get("nodes") if isinstance(entry, dict) else entry
        if not isinstance(nodes, list):
            continue
        ids = [str(n) for n in nodes if n]
        if len(ids) > 1 and ids[0] == ids[-1]:
            ids = ids[:-1]
        if len(ids) < 2 or len(set(ids)) != len(ids):
            continue
        cycles.append(ids)
    return cycles


@dataclass(slots=True)
class WorkSnapshot:
    """Ready work plus graph context for one assignment pass."""

    beads: list[Bead] = field(default_factory=list)
    cycles: list[list[str]] = field(default_factory=list)
    degraded: bool = False
    warnings: list[str] = field(default_factory=list)

    @property
    def cycle_members(self) -> set[str]:
        return {bead_id for cycle in self.cycles for bead_id in cycle}


class WorkProvider:
    """Adapter over the external prioritizer."""

    def __init__(
        self,
        config: ProviderConfig | None = None,
        *,
        project_dir: str = ".",
        timeout: float = 30.0,
        runner: CommandRunner = run_command,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or ProviderConfig()
        self._project_dir = project_dir
        self._timeout = timeout
        self._runner = runner
        self._clock = clock
        self._triage_cache: list[Recommendation] | None = None
        self._triage_cached_at = 0.0
        self._completed: set[str] = set()

    # ------------------------------------------------------------------
    # Raw calls
    # ------------------------------------------------------------------

    async def _call_json(self, argv: list[str]) -> Any:
        out = await self._runner(argv, self._project_dir, self._timeout)
        try:
            return json.loads(out)
        except json.JSONDecodeError as exc:
            raise ProviderError(f"{argv[0]} returned invalid JSON: {exc}") from exc

    def _log_retry(self, state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        logger.warning("prioritizer call failed (attempt %d): %s", state.attempt_number, exc)

    async def _with_retry(self, fn: Callable[[], Awaitable[Any]]) -> Any:
        return await retry_async(
            fn,
            max_attempts=self._config.max_attempts,
            backoff=self._config.backoff_seconds,
            on_retry=self._log_retry,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def invalidate(self) -> None:
        self._triage_cache = None

    async def ready_ranked(self, limit: int | None = None) -> list[Recommendation]:
        cap = limit or self._config.ready_limit
        now = self._clock()
        if self._triage_cache is not None and now - self._triage_cached_at < self._config.cache_ttl_seconds:
            return self._triage_cache[:cap]

        async def _triage() -> list[Recommendation]:
            payload = await self._call_json([self._config.triage_binary, "-robot-triage"])
            return parse_triage(payload)

        recs = await self._with_retry(_triage)
        self._triage_cache = recs
        self._triage_cached_at = now
        return recs[:cap]

    async def ready_preview(self, limit: int | None = None) -> list[Bead]:
        cap = limit or self._config.ready_limit
        last_error: ProviderError | None = None
        for binary in self._config.ready_binaries:
            try:
                payload = await self._call_json([binary, "ready", "--json"])
                return parse_ready(payload)[:cap]
            except ProviderError as exc:
                logger.debug("ready via %s failed: %s", binary, exc)
                last_error = exc
        raise last_error or ProviderError("no ready command configured", retryable=False)

    async def insights(self) -> dict[str, list[list[str]]]:
        async def _insights() -> dict[str, list[list[str]]]:
            payload = await self._call_json([self._config.triage_binary, "-robot-insights"])
            raw = payload.get("cycles", payload.get("Cycles", [])) if isinstance(payload, dict) else []
            return {"cycles": validate_cycles(raw)}

        return await self._with_retry(_insights)

    async def _lookup(self, bead_id: str) -> Recommendation | None:
        recs = self._triage_cache
        if recs is None:
            try:
                recs = await self.ready_ranked()
            except ProviderError:
                return None
        for rec in recs:
            if rec.id == bead_id:
                return rec
        return None

    async def _show(self, bead_id: str) -> dict[str, Any]:
        for binary in self._config.ready_binaries:
            try:
                payload = await self._call_json([binary, "show", bead_id, "--json"])
            except ProviderError:
                continue
            if isinstance(payload, list) and payload:
                payload = payload[0]
            if isinstance(payload, dict):
                return payload
        return {}

    async def title_of(self, bead_id: str) -> str:
        rec = await self._lookup(bead_id)
        if rec is not None and rec.title:
            return rec.title
        return str((await self._show(bead_id)).get("title", ""))

    async def blockers_of(self, bead_id: str) -> list[str]:
        rec = await self._lookup(bead_id)
        if rec is not None:
            return list(rec.blocked_by)
        return _str_list((await self._show(bead_id)).get("blocked_by"))

    async def status_of(self, bead_id: str) -> str:
        return str((await self._show(bead_id)).get("status", ""))

    # ------------------------------------------------------------------
    # Staleness tracking
    # ------------------------------------------------------------------

    def mark_completed(self, bead_id: str) -> None:
        self._completed.add(bead_id)

    def stale_warnings(self, recs: list[Bead]) -> list[str]:
        """Flag completed beads the prioritizer has not caught up with."""
        warnings: list[str] = []
        for rec in recs:
            if rec.id in self._completed and rec.blocked_by:
                warnings.append(
                    f"stale graph: {rec.id} was completed but is still listed with blockers {rec.blocked_by}"
                )
                continue
            stale = [b for b in rec.blocked_by if b in self._completed]
            if stale:
                warnings.append(f"stale graph: {rec.id} still blocked by completed {stale}")
        return warnings

    async def fetch_ready_work(self, limit: int | None = None) -> WorkSnapshot:
        """Ranked ready work with cycles, degrading to the ready list."""
        snapshot = WorkSnapshot()
        try:
            snapshot.beads = list(await self.ready_ranked(limit))
            snapshot.warnings.extend(self.stale_warnings(snapshot.beads))
        except ProviderError as exc:
            logger.warning("triage unavailable, falling back to ready list: %s", exc)
            snapshot.degraded = True
            snapshot.warnings.append(f"triage unavailable ({exc}); using ready list without dependency info")
            snapshot.beads = await self.ready_preview(limit)
            return snapshot
        try:
            snapshot.cycles = (await self.insights())["cycles"]
        except ProviderError as exc:
            snapshot.warnings.append(f"insights unavailable ({exc}); cycle filtering skipped")
        return snapshot
