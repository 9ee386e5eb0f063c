"""Reservation broker client (Agent Mail JSON-RPC over HTTP)."""

from __future__ import annotations

import itertools
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from beadswarm.errors import BrokerError, BrokerUnavailableError
from beadswarm.protocol.models import Conflict, ConflictHolder, ReservationGrant, utc_now_iso

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ReserveResponse:
    grants: list[ReservationGrant] = field(default_factory=list)
    conflicts: list[Conflict] = field(default_factory=list)


class ReservationBroker(Protocol):
    async def reserve(
        self, agent_name: str, paths: list[str], ttl_seconds: int, reason: str
    ) -> ReserveResponse: ...

    async def release(self, agent_name: str, reservation_ids: list[int]) -> None: ...

    async def release_by_paths(self, agent_name: str, paths: list[str]) -> None: ...

    async def list_conflicts(self, project_key: str | None = None) -> list[Conflict]: ...

    async def is_available(self) -> bool: ...


def _holder(raw: Any) -> ConflictHolder:
    if isinstance(raw, dict):
        return ConflictHolder(
            agent_name=str(raw.get("agent_name", raw.get("agent", ""))),
            reserved_at=str(raw.get("created_ts", raw.get("reserved_at", "")) or ""),
            expires_at=str(raw.get("expires_ts", raw.get("expires_at", "")) or ""),
            reason=str(raw.get("reason", "") or ""),
        )
    return ConflictHolder(agent_name=str(raw))


def _grant(raw: dict[str, Any]) -> ReservationGrant:
    return ReservationGrant(
        reservation_id=int(raw.get("id", 0)),
        path=str(raw.get("path_pattern", raw.get("path", ""))),
        agent_name=str(raw.get("agent_name", "")),
        reserved_at=str(raw.get("created_ts", "") or ""),
        expires_at=str(raw.get("expires_ts", "") or ""),
        exclusive=bool(raw.get("exclusive", True)),
        reason=str(raw.get("reason", "") or ""),
    )


def parse_reserve_result(payload: Any) -> ReserveResponse:
    if not isinstance(payload, dict):
        raise BrokerError("reservation result is not an object")
    now = utc_now_iso()
    grants = [_grant(g) for g in payload.get("granted") or [] if isinstance(g, dict)]
    conflicts = [
        Conflict(
            path_pattern=str(c.get("path", c.get("path_pattern", ""))),
            holders=[_holder(h) for h in c.get("holders") or []],
            detected_at=now,
        )
        for c in payload.get("conflicts") or []
        if isinstance(c, dict)
    ]
    return ReserveResponse(grants=grants, conflicts=conflicts)


class AgentMailClient:
    """Calls broker tools through MCP ``tools/call`` requests."""

    def __init__(
        self,
        base_url: str,
        project_key: str,
        *,
        bearer_token: str = "",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url if base_url.endswith("/") else base_url + "/"
        self._project_key = project_key
        headers = {"Authorization": f"Bearer {bearer_token}"} if bearer_token else {}
        self._client = httpx.AsyncClient(timeout=timeout, headers=headers, transport=transport)
        self._ids = itertools.count(1)

    @property
    def project_key(self) -> str:
        return self._project_key

    async def close(self) -> None:
        await self._client.aclose()

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> Any:
        request = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": "tools/call",
            "params": {"name": name, "arguments": arguments},
        }
        try:
            response = await self._client.post(self._base_url, json=request)
        except httpx.TransportError as exc:
            raise BrokerUnavailableError(f"broker unreachable: {exc}") from exc
        if response.status_code >= 500:
            raise BrokerUnavailableError(f"broker returned HTTP {response.status_code}")
        if response.status_code >= 400:
            raise BrokerError(f"{name} rejected with HTTP {response.status_code}")
        try:
            body = response.json()
        except json.JSONDecodeError as exc:
            raise BrokerError(f"{name} returned invalid JSON") from exc
        if not isinstance(body, dict):
            raise BrokerError(f"{name} returned a non-object response")
        if body.get("error"):
            err = body["error"]
            message = err.get("message", err) if isinstance(err, dict) else err
            raise BrokerError(f"{name} failed: {message}")
        return self._unwrap(name, body.get("result"))

    @staticmethod
    def _unwrap(name: str, result: Any) -> Any:
        """Prefer ``structuredContent``; fall back to JSON in text content."""
        if not isinstance(result, dict):
            return result
        if "structuredContent" in result:
            return result["structuredContent"]
        content = result.get("content")
        if isinstance(content, list):
            texts = [c.get("text", "") for c in content if isinstance(c, dict) and c.get("type") == "text"]
            if result.get("isError"):
                raise BrokerError(f"{name} failed: {' '.join(texts).strip()}")
            for text in texts:
                try:
                    return json.loads(text)
                except json.JSONDecodeError:
                    continue
            return {}
        return result

    async def reserve(
        self, agent_name: str, paths: list[str], ttl_seconds: int, reason: str
    ) -> ReserveResponse:
        args: dict[str, Any] = {
            "project_key": self._project_key,
            "agent_name": agent_name,
            "paths": paths,
            "ttl_seconds": ttl_seconds,
            "exclusive": True,
        }
        if reason:
            args["reason"] = reason
        return parse_reserve_result(await self.call_tool("file_reservation_paths", args))

    async def release(self, agent_name: str, reservation_ids: list[int]) -> None:
        if not reservation_ids:
            return
        await self.call_tool(
            "release_file_reservations",
            {
                "project_key": self._project_key,
                "agent_name": agent_name,
                "file_reservation_ids": reservation_ids,
            },
        )

    async def release_by_paths(self, agent_name: str, paths: list[str]) -> None:
        if not paths:
            return
        await self.call_tool(
            "release_file_reservations",
            {"project_key": self._project_key, "agent_name": agent_name, "paths": paths},
        )

    async def list_reservations(self, project_key: str | None = None) -> list[ReservationGrant]:
        payload = await self.call_tool(
            "list_file_reservations",
            {"project_key": project_key or self._project_key, "all_agents": True},
        )
        items = payload.get("reservations", []) if isinstance(payload, dict) else payload
        if not isinstance(items, list):
            return []
        return [_grant(item) for item in items if isinstance(item, dict)]

    async def list_conflicts(self, project_key: str | None = None) -> list[Conflict]:
        """Exclusive patterns currently held by more than one agent."""
        by_path: dict[str, list[ReservationGrant]] = {}
        for grant in await self.list_reservations(project_key):
            if grant.exclusive:
                by_path.setdefault(grant.path, []).append(grant)
        now = utc_now_iso()
        conflicts: list[Conflict] = []
        for path, grants in by_path.items():
            if len({g.agent_name for g in grants}) < 2:
                continue
            holders = [
                ConflictHolder(
                    agent_name=g.agent_name,
                    reserved_at=g.reserved_at,
                    expires_at=g.expires_at,
                    reason=g.reason,
                )
                for g in grants
            ]
            conflicts.append(Conflict(path_pattern=path, holders=holders, detected_at=now))
        return conflicts

    async def is_available(self) -> bool:
        try:
            result = await self.call_tool("health_check", {})
        except BrokerError as exc:
            logger.debug("broker health check failed: %s", exc)
            return False
        return not isinstance(result, dict) or result.get("status", "ok") == "ok"
