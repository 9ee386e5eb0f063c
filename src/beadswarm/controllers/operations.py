"""Operation controllers behind ``beadswarm assign``.

Every public coroutine returns an :class:`Envelope`. Engine errors become
``error{code, message, details}``; anything unexpected becomes
``INTERNAL_ERROR``. Whatever ``data`` was gathered before a failure stays
in the envelope.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Collection
from typing import Any

from beadswarm.controllers.envelope import Envelope, rfc3339_now
from beadswarm.controllers.runtime import Runtime
from beadswarm.coordinator.planner import PassOptions, PassResult
from beadswarm.coordinator.watch import WatchLoop, WatchOptions
from beadswarm.errors import (
    AssignmentConflictError,
    BeadswarmError,
    ErrorCode,
    InvalidArgsError,
    NotAssignedError,
    SendError,
    StoreError,
    TmuxError,
)
from beadswarm.observer.heuristics import agent_name
from beadswarm.protocol.models import ASSIGNABLE_KINDS, Agent, Assignment, AssignmentStatus
from beadswarm.utilities.logger import get_logger

log = get_logger(__name__)


def _file_reservations(requested: list[str], granted: list[str]) -> dict[str, list[str]]:
    granted_set = set(granted)
    return {
        "requested": list(requested),
        "granted": list(granted),
        "denied": [p for p in requested if p not in granted_set],
    }


class AssignController:
    def __init__(self, runtime: Runtime) -> None:
        self.rt = runtime

    @property
    def session(self) -> str:
        return self.rt.session

    async def _guarded(
        self,
        subcommand: str,
        body: Callable[..., Awaitable[None]],
        *args: Any,
        **kwargs: Any,
    ) -> Envelope:
        env = Envelope(subcommand=subcommand, session=self.session)
        try:
            await body(env, *args, **kwargs)
        except BeadswarmError as exc:
            log.info("operation failed", subcommand=subcommand, code=str(exc.code), error=str(exc))
            env.fail_with(exc)
        except Exception as exc:
            log.exception("operation crashed", subcommand=subcommand)
            env.fail_with(exc)
        return env

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    async def _require_agent_pane(self, pane: int) -> Agent:
        agent = await self.rt.observer.find_pane(self.session, pane)
        if agent is None:
            raise BeadswarmError(
                f"pane {pane} not found in session {self.session}",
                code=ErrorCode.PANE_NOT_FOUND,
                details={"pane": pane},
            )
        if not agent.is_agent:
            raise BeadswarmError(
                f"pane {pane} is not an agent pane (type: {agent.kind})",
                code=ErrorCode.NOT_AGENT_PANE,
                details={"pane": pane, "agent_type": str(agent.kind)},
            )
        return agent

    def _busy_details(self, agent: Agent, bead_id: str) -> dict[str, Any] | None:
        """Details of why *agent* cannot take *bead_id*, or None when free."""
        occupant = self.rt.store.find_by_pane(agent.pane_index)
        if occupant is not None and occupant.bead_id == bead_id:
            occupant = None
        if agent.is_idle and occupant is None:
            return None
        details: dict[str, Any] = {"pane": agent.pane_index, "pane_state": str(agent.state)}
        if occupant is not None:
            details["current_bead"] = occupant.bead_id
            details["current_status"] = str(occupant.status)
        return details

    async def _auto_target(self, agent_type: str, exclude: set[int]) -> Agent:
        agents = [a for a in await self.rt.planner.idle_agents(agent_type) if a.pane_index not in exclude]
        if not agents:
            label = f"{agent_type} " if agent_type else ""
            raise BeadswarmError(
                f"no idle {label}agents available",
                code=ErrorCode.NO_IDLE_AGENT,
                details={"agent_type": agent_type},
            )
        return agents[0]

    async def _release_row(self, row: Assignment, keep: Collection[int] = ()) -> int:
        # Ids in *keep* were re-granted to the same agent and stay held.
        ids = [i for i in row.reservation_ids if i not in keep]
        return await self.rt.arbiter.release_for_bead(row.agent_name, ids)

    async def _transfer(
        self,
        env: Envelope,
        row: Assignment,
        agent: Agent,
        *,
        prompt: str = "",
        displace: bool = False,
    ) -> dict[str, Any]:
        """Move *row* onto *agent*: reserve, record, release, inject.

        The target's reservation comes first so a blocked move leaves the
        source row and its leases untouched. Paths the source still holds
        are taken over once the store has recorded the move. A failed
        injection leaves the new row ``failed`` so it can be retried; the
        returned item then has ``prompt_sent`` false.
        """
        rt = self.rt
        bead_id = row.bead_id
        title = row.bead_title or await rt.provider.title_of(bead_id)
        kind = str(agent.kind)
        name = agent_name(self.session, kind, agent.pane_index)

        reservation = await rt.arbiter.reserve_for_bead(bead_id, title, "", name, handover_from=row.agent_name)
        env.warn(reservation.warning)
        if reservation.conflicts:
            raise BeadswarmError(
                f"files for {bead_id} are reserved by another agent",
                code=ErrorCode.BLOCKED,
                details={"conflicts": [c.to_dict() for c in reservation.conflicts]},
            )

        occupant = rt.store.find_by_pane(agent.pane_index) if displace else None
        if occupant is not None and occupant.bead_id == bead_id:
            occupant = None
        text = rt.prompts.render(bead_id, title, override=prompt)
        try:
            new_row = rt.store.reassign(bead_id, agent.pane_index, kind, name, prompt=text, displace=displace)
        except StoreError:
            await rt.arbiter.release_for_bead(name, reservation.reservation_ids)
            raise
        except BeadswarmError as exc:
            await rt.arbiter.release_for_bead(name, reservation.reservation_ids)
            raise BeadswarmError(str(exc), code=ErrorCode.REASSIGN_ERROR, details=exc.details) from exc

        released = await self._release_row(row, keep=reservation.reservation_ids)
        if released:
            env.warn(f"released {released} reservation(s) held by {row.agent_name}")
        if occupant is not None and occupant.reservation_ids:
            freed = await self._release_row(occupant, keep=reservation.reservation_ids)
            rt.store.set_reservations(occupant.bead_id, [], [])
            env.warn(f"released {freed} reservation(s) held by displaced bead {occupant.bead_id}")

        reservation_ids = list(reservation.reservation_ids)
        granted_paths = list(reservation.granted_paths)
        if reservation.handover_paths:
            taken = await rt.arbiter.take_over(bead_id, title, reservation.handover_paths, name)
            env.warn(taken.warning)
            if taken.conflicts:
                lost = ", ".join(c.path_pattern for c in taken.conflicts)
                env.warn(f"could not take over {lost} for {bead_id}")
            reservation_ids += taken.reservation_ids
            granted_paths += taken.granted_paths
        if reservation_ids:
            rt.store.set_reservations(bead_id, reservation_ids, granted_paths)

        item: dict[str, Any] = {
            "bead_id": bead_id,
            "bead_title": title,
            "pane": agent.pane_index,
            "agent_type": kind,
            "agent_name": name,
            "status": str(new_row.status),
            "prompt_sent": False,
            "assigned_at": new_row.assigned_at,
            "retry_count": new_row.retry_count,
            "previous_pane": row.pane_index,
            "previous_agent": row.agent_name,
            "previous_agent_type": row.agent_kind,
            "previous_status": str(row.status),
            "file_reservations_transferred": bool(released or granted_paths),
            "released_from": released,
            "created_for": len(granted_paths),
        }
        try:
            await rt.observer.send_prompt(agent.pane_id, text)
        except (SendError, TmuxError) as exc:
            log.warning("prompt injection failed", bead_id=bead_id, pane=agent.pane_index, error=str(exc))
            rt.store.update_status(bead_id, AssignmentStatus.FAILED, f"send failed: {exc}")
            await rt.arbiter.release_for_bead(name, reservation_ids)
            item["status"] = str(AssignmentStatus.FAILED)
            item["error"] = str(exc)
            return item
        rt.store.mark_prompt_sent(bead_id)
        item["prompt_sent"] = True
        log.info("bead moved", bead_id=bead_id, from_pane=row.pane_index, to_pane=agent.pane_index)
        return item

    # ------------------------------------------------------------------
    # Assignment passes
    # ------------------------------------------------------------------

    def _pass_envelope(self, env: Envelope, result: PassResult) -> None:
        env.data.update(result.to_dict())
        for warning in result.warnings:
            env.warn(warning)

    async def preview(self, options: PassOptions) -> Envelope:
        async def body(env: Envelope) -> None:
            options.execute = False
            self._pass_envelope(env, await self.rt.planner.run(options))

        return await self._guarded("preview", body)

    async def auto(self, options: PassOptions) -> Envelope:
        async def body(env: Envelope) -> None:
            options.execute = True
            self._pass_envelope(env, await self.rt.planner.run(options))

        return await self._guarded("auto", body)

    # ------------------------------------------------------------------
    # Direct pane assignment
    # ------------------------------------------------------------------

    async def assign_pane(
        self,
        bead_id: str,
        pane: int,
        *,
        force: bool = False,
        ignore_deps: bool = False,
        prompt: str = "",
        reserve: bool = True,
    ) -> Envelope:
        return await self._guarded(
            "pane", self._assign_pane, bead_id, pane,
            force=force, ignore_deps=ignore_deps, prompt=prompt, reserve=reserve,
        )

    async def _assign_pane(
        self,
        env: Envelope,
        bead_id: str,
        pane: int,
        *,
        force: bool,
        ignore_deps: bool,
        prompt: str,
        reserve: bool,
    ) -> None:
        bead_id = bead_id.strip()
        if not bead_id:
            raise InvalidArgsError("exactly one bead id is required for pane assignment")
        if pane < 0:
            raise InvalidArgsError(f"invalid pane index {pane}")
        rt = self.rt

        agent = await self._require_agent_pane(pane)
        kind = str(agent.kind)
        busy = self._busy_details(agent, bead_id)
        item: dict[str, Any] = {
            "bead_id": bead_id,
            "bead_title": "",
            "pane": pane,
            "agent_type": kind,
            "status": str(AssignmentStatus.ASSIGNED),
            "prompt": "",
            "prompt_sent": False,
            "assigned_at": rfc3339_now(),
            "pane_was_busy": busy is not None,
            "deps_ignored": False,
            "blocked_by_ids": [],
        }
        env.data["assignment"] = item
        if busy is not None and not force:
            env.fail(
                ErrorCode.PANE_BUSY,
                f"pane {pane} is busy (state: {agent.state}), use --force to override",
                busy,
            )
            return

        existing = rt.store.get(bead_id)
        if existing is not None and existing.is_active:
            env.fail(
                ErrorCode.ALREADY_ASSIGNED,
                f"bead {bead_id} is already assigned to pane {existing.pane_index}",
                {"bead_id": bead_id, "pane": existing.pane_index, "status": str(existing.status)},
            )
            return

        if ignore_deps:
            item["deps_ignored"] = True
        else:
            blockers = await rt.provider.blockers_of(bead_id)
            if blockers:
                item["blocked_by_ids"] = blockers
                env.fail(
                    ErrorCode.BLOCKED,
                    f"bead {bead_id} is blocked by {', '.join(blockers)}, use --ignore-deps to override",
                    {"blocked_by": blockers},
                )
                return

        title = await rt.provider.title_of(bead_id)
        item["bead_title"] = title
        name = agent_name(self.session, kind, pane)

        reservation_ids: list[int] = []
        granted: list[str] = []
        if reserve:
            result = await rt.arbiter.reserve_for_bead(bead_id, title, "", name)
            env.warn(result.warning)
            env.data["file_reservations"] = _file_reservations(result.requested_paths, result.granted_paths)
            if result.conflicts:
                env.fail(
                    ErrorCode.BLOCKED,
                    f"files for {bead_id} are reserved by another agent",
                    {"conflicts": [c.to_dict() for c in result.conflicts]},
                )
                return
            reservation_ids, granted = result.reservation_ids, result.granted_paths

        if busy is not None and busy.get("current_bead"):
            displaced = rt.store.update_status(busy["current_bead"], AssignmentStatus.FAILED, f"displaced by {bead_id}")
            await self._release_row(displaced, keep=reservation_ids)
            env.warn(f"pane {pane} was working on {displaced.bead_id}; marked it failed")

        text = rt.prompts.render(bead_id, title, override=prompt)
        item["prompt"] = text
        try:
            rt.store.assign(
                bead_id, title, pane, kind, name, text,
                reservation_ids=reservation_ids, reserved_paths=granted,
            )
        except BeadswarmError:
            await rt.arbiter.release_for_bead(name, reservation_ids)
            raise

        try:
            await rt.observer.send_prompt(agent.pane_id, text)
        except (SendError, TmuxError) as exc:
            rt.store.remove(bead_id)
            await rt.arbiter.release_for_bead(name, reservation_ids)
            env.fail(ErrorCode.SEND_ERROR, f"failed to send prompt: {exc}", {"pane": pane})
            return

        row = rt.store.mark_prompt_sent(bead_id)
        item["prompt_sent"] = True
        item["assigned_at"] = row.assigned_at
        log.info("assigned bead to pane", bead_id=bead_id, pane=pane, agent=name)

    # ------------------------------------------------------------------
    # Clearing
    # ------------------------------------------------------------------

    async def _clear_row(self, row: Assignment) -> dict[str, Any]:
        released = await self._release_row(row)
        self.rt.store.remove(row.bead_id)
        return {
            "bead_id": row.bead_id,
            "previous_pane": row.pane_index,
            "previous_agent": row.agent_name,
            "previous_agent_type": row.agent_kind,
            "previous_status": str(row.status),
            "assignment_found": True,
            "file_reservations_released": released > 0,
            "files_released": list(row.reserved_paths) if released else [],
            "success": True,
        }

    def _clear_summary(self, env: Envelope, results: list[dict[str, Any]]) -> None:
        cleared = [r for r in results if r["success"]]
        failed = [r for r in results if not r["success"]]
        env.data["summary"] = {
            "cleared_count": len(cleared),
            "reservations_released": sum(1 for r in cleared if r.get("file_reservations_released")),
            "failed_count": len(failed),
        }
        for item in failed:
            env.warn(f"{item['bead_id']}: {item['error']}")
        if failed and not cleared:
            first = failed[0]
            env.fail(first["error_code"], first["error"], {"bead_id": first["bead_id"]})

    async def clear(self, bead_ids: list[str], *, force: bool = False) -> Envelope:
        return await self._guarded("clear", self._clear, bead_ids, force=force)

    async def _clear(self, env: Envelope, bead_ids: list[str], *, force: bool) -> None:
        ids = [b.strip() for b in bead_ids if b.strip()]
        if not ids:
            raise InvalidArgsError("at least one bead id is required")
        results: list[dict[str, Any]] = []
        env.data["results"] = results
        for bead_id in ids:
            row = self.rt.store.get(bead_id)
            if row is None:
                results.append({
                    "bead_id": bead_id,
                    "assignment_found": False,
                    "success": False,
                    "error": f"bead {bead_id} has no assignment",
                    "error_code": str(ErrorCode.NOT_ASSIGNED),
                })
                continue
            if row.status == AssignmentStatus.COMPLETED and not force:
                results.append({
                    "bead_id": bead_id,
                    "previous_pane": row.pane_index,
                    "previous_status": str(row.status),
                    "assignment_found": True,
                    "success": False,
                    "error": f"bead {bead_id} is already completed, use --force to clear it",
                    "error_code": str(ErrorCode.ALREADY_COMPLETED),
                })
                continue
            results.append(await self._clear_row(row))
        self._clear_summary(env, results)

    async def clear_pane(self, pane: int) -> Envelope:
        return await self._guarded("clear-pane", self._clear_pane, pane)

    async def _clear_pane(self, env: Envelope, pane: int) -> None:
        if pane < 0:
            raise InvalidArgsError(f"invalid pane index {pane}")
        env.data["pane"] = pane
        results: list[dict[str, Any]] = []
        env.data["results"] = results
        for row in self.rt.store.list_by_pane(pane):
            if row.is_active:
                results.append(await self._clear_row(row))
        if not results:
            env.warn(f"no active assignments on pane {pane}")
        self._clear_summary(env, results)

    async def clear_failed(self) -> Envelope:
        async def body(env: Envelope) -> None:
            removed = self.rt.store.clear_by_status(AssignmentStatus.FAILED)
            env.data["cleared"] = [row.bead_id for row in removed]
            env.data["summary"] = {"cleared_count": len(removed)}

        return await self._guarded("clear-failed", body)

    # ------------------------------------------------------------------
    # Reassign and retry
    # ------------------------------------------------------------------

    @staticmethod
    def _check_kind(agent_type: str) -> None:
        if agent_type and agent_type not in {str(k) for k in ASSIGNABLE_KINDS}:
            choices = ", ".join(sorted(str(k) for k in ASSIGNABLE_KINDS))
            raise InvalidArgsError(f"unknown agent type {agent_type!r} (choose from {choices})")

    async def reassign(
        self,
        bead_id: str,
        *,
        to_pane: int | None = None,
        to_type: str = "",
        force: bool = False,
        prompt: str = "",
    ) -> Envelope:
        return await self._guarded(
            "reassign", self._reassign, bead_id,
            to_pane=to_pane, to_type=to_type, force=force, prompt=prompt,
        )

    async def _reassign(
        self,
        env: Envelope,
        bead_id: str,
        *,
        to_pane: int | None,
        to_type: str,
        force: bool,
        prompt: str,
    ) -> None:
        bead_id = bead_id.strip()
        if not bead_id:
            raise InvalidArgsError("bead id required for reassign")
        if to_pane is None and not to_type:
            raise InvalidArgsError("either a target pane or a target agent type is required")
        if to_pane is not None and to_type:
            raise InvalidArgsError("cannot specify both a target pane and a target agent type")
        self._check_kind(to_type)

        row = self.rt.store.get(bead_id)
        if row is None:
            raise NotAssignedError(bead_id)
        if row.status == AssignmentStatus.COMPLETED:
            raise BeadswarmError(
                f"bead {bead_id} assignment is already completed",
                code=ErrorCode.ALREADY_COMPLETED,
                details={"current_status": str(row.status)},
            )
        if not row.is_active and row.status != AssignmentStatus.FAILED:
            raise NotAssignedError(bead_id)

        if to_pane is not None:
            agent = await self._require_agent_pane(to_pane)
        else:
            agent = await self._auto_target(to_type, {row.pane_index})
        if agent.pane_index == row.pane_index:
            raise AssignmentConflictError(
                "already_assigned",
                f"bead {bead_id} is already assigned to pane {agent.pane_index}",
                details={"bead_id": bead_id, "pane": agent.pane_index},
            )
        busy = self._busy_details(agent, bead_id)
        if busy is not None and not force:
            raise BeadswarmError(
                f"pane {agent.pane_index} is busy (state: {agent.state}), use --force to override",
                code=ErrorCode.TARGET_BUSY,
                details=busy,
            )

        item = await self._transfer(env, row, agent, prompt=prompt, displace=force)
        env.data.update(item)
        if not item["prompt_sent"]:
            env.fail(ErrorCode.SEND_ERROR, f"failed to send prompt: {item['error']}", {"pane": agent.pane_index})

    async def retry(self, bead_id: str, *, to_pane: int | None = None, to_type: str = "") -> Envelope:
        return await self._guarded("retry", self._retry, bead_id, to_pane=to_pane, to_type=to_type)

    def _retry_item(self, row: Assignment, moved: dict[str, Any]) -> dict[str, Any]:
        return {
            "bead_id": row.bead_id,
            "bead_title": moved["bead_title"],
            "pane": moved["pane"],
            "agent_type": moved["agent_type"],
            "agent_name": moved["agent_name"],
            "prompt_sent": moved["prompt_sent"],
            "assigned_at": moved["assigned_at"],
            "previous_pane": row.pane_index,
            "previous_agent": row.agent_name,
            "previous_fail_reason": row.failure_reason,
            "retry_count": moved["retry_count"],
        }

    async def _retry_target(self, row: Assignment, to_pane: int | None, to_type: str) -> Agent:
        if to_pane is None:
            return await self._auto_target(to_type, set())
        agent = await self._require_agent_pane(to_pane)
        busy = self._busy_details(agent, row.bead_id)
        if busy is not None:
            raise BeadswarmError(
                f"pane {to_pane} is busy (state: {agent.state})",
                code=ErrorCode.TARGET_BUSY,
                details=busy,
            )
        return agent

    async def _retry(self, env: Envelope, bead_id: str, *, to_pane: int | None, to_type: str) -> None:
        bead_id = bead_id.strip()
        if not bead_id:
            raise InvalidArgsError("bead id required for retry")
        self._check_kind(to_type)
        row = self.rt.store.get(bead_id)
        if row is None:
            raise NotAssignedError(bead_id)
        if row.status != AssignmentStatus.FAILED:
            raise InvalidArgsError(
                f"bead {bead_id} is not in failed state (status: {row.status})",
                details={"bead_id": bead_id, "status": str(row.status)},
            )
        agent = await self._retry_target(row, to_pane, to_type)
        moved = await self._transfer(env, row, agent)
        env.data["retried"] = [self._retry_item(row, moved)]
        env.data["skipped"] = []
        env.data["summary"] = {"total_failed": 1, "retried_count": 1, "skipped_count": 0}
        if not moved["prompt_sent"]:
            env.fail(ErrorCode.SEND_ERROR, f"failed to send prompt: {moved['error']}", {"pane": agent.pane_index})

    async def retry_failed(self, *, to_type: str = "") -> Envelope:
        return await self._guarded("retry-failed", self._retry_failed, to_type=to_type)

    async def _retry_failed(self, env: Envelope, *, to_type: str) -> None:
        self._check_kind(to_type)
        failed = self.rt.store.list_by_status(AssignmentStatus.FAILED)
        retried: list[dict[str, Any]] = []
        skipped: list[dict[str, str]] = []
        env.data.update({"retried": retried, "skipped": skipped})
        agents = await self.rt.planner.idle_agents(to_type) if failed else []
        for row in failed:
            if not agents:
                label = f"{to_type} " if to_type else ""
                skipped.append({"bead_id": row.bead_id, "reason": f"no idle {label}agent available"})
                continue
            agent = agents.pop(0)
            try:
                moved = await self._transfer(env, row, agent)
            except StoreError:
                raise
            except BeadswarmError as exc:
                skipped.append({"bead_id": row.bead_id, "reason": str(exc)})
                continue
            if not moved["prompt_sent"]:
                skipped.append({"bead_id": row.bead_id, "reason": f"send failed: {moved['error']}"})
                continue
            retried.append(self._retry_item(row, moved))
        env.data["summary"] = {
            "total_failed": len(failed),
            "retried_count": len(retried),
            "skipped_count": len(skipped),
        }

    # ------------------------------------------------------------------
    # Status and watch
    # ------------------------------------------------------------------

    async def status(self) -> Envelope:
        async def body(env: Envelope) -> None:
            store = self.rt.store
            env.data["assignments"] = [row.to_dict() for row in store.list_current()]
            env.data["history"] = [row.to_dict() for row in store.history()]
            env.data["stats"] = store.stats()

        return await self._guarded("status", body)

    async def watch(
        self,
        options: WatchOptions,
        *,
        on_pass: Callable[[PassResult], Any] | None = None,
        handle_signals: bool = True,
    ) -> Envelope:
        async def body(env: Envelope) -> None:
            loop = WatchLoop(self.rt.planner, self.rt.detector(), options, on_pass=on_pass)
            try:
                summary = await loop.run(handle_signals=handle_signals)
            finally:
                env.data.update(loop.summary.to_dict())
            for warning in summary.warnings:
                env.warn(warning)

        return await self._guarded("watch", body)


async def invoke(
    subcommand: str,
    session: str,
    factory: Callable[[], Runtime],
    call: Callable[[AssignController], Awaitable[Envelope]],
) -> Envelope:
    """Build a runtime, run one controller call, and always close it."""
    try:
        runtime = factory()
    except BeadswarmError as exc:
        return Envelope(subcommand=subcommand, session=session).fail_with(exc)
    try:
        return await call(AssignController(runtime))
    finally:
        await runtime.aclose()
