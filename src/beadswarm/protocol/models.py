"""Protocol types shared by every beadswarm component."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any

SCHEMA_VERSION = 1


class AgentKind(StrEnum):
    CLAUDE = "claude"
    CODEX = "codex"
    GEMINI = "gemini"
    USER = "user"
    UNKNOWN = "unknown"


ASSIGNABLE_KINDS: frozenset[AgentKind] = frozenset(
    {AgentKind.CLAUDE, AgentKind.CODEX, AgentKind.GEMINI}
)


class AgentState(StrEnum):
    IDLE = "idle"
    WORKING = "working"
    ERROR = "error"
    UNKNOWN = "unknown"


class AssignmentStatus(StrEnum):
    ASSIGNED = "assigned"
    WORKING = "working"
    COMPLETED = "completed"
    FAILED = "failed"
    # Only ever seen on history rows replaced by reassign/retry.
    REASSIGNED = "reassigned"


ACTIVE_STATUSES: frozenset[AssignmentStatus] = frozenset(
    {AssignmentStatus.ASSIGNED, AssignmentStatus.WORKING}
)


def utc_now() -> datetime:
    return datetime.now(UTC)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


@dataclass(slots=True)
class Bead:
    id: str
    title: str = ""
    priority: int = 2
    blocked_by: list[str] = field(default_factory=list)
    description: str = ""
    status: str = ""

    @property
    def is_blocked(self) -> bool:
        return bool(self.blocked_by)


@dataclass(slots=True)
class Recommendation(Bead):
    """A ranked ready bead as returned by triage."""

    score: float = 0.0
    reasons: list[str] = field(default_factory=list)


@dataclass(slots=True)
class Agent:
    """One pane of a session. Derived fresh on every poll, never persisted."""

    pane_id: str
    pane_index: int
    title: str = ""
    kind: AgentKind = AgentKind.UNKNOWN
    model_variant: str = ""
    state: AgentState = AgentState.UNKNOWN

    @property
    def is_agent(self) -> bool:
        return self.kind in ASSIGNABLE_KINDS

    @property
    def is_idle(self) -> bool:
        return self.state == AgentState.IDLE


@dataclass(slots=True)
class Assignment:
    bead_id: str
    bead_title: str
    pane_index: int
    agent_kind: str
    agent_name: str
    status: AssignmentStatus = AssignmentStatus.ASSIGNED
    assigned_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)
    prompt_sent: bool = False
    prompt: str = ""
    retry_count: int = 0
    failure_reason: str = ""
    reservation_ids: list[int] = field(default_factory=list)
    # Paths still held by the previous assignee during a reassignment.
    handover_paths: list[str] = field(default_factory=list)
    reserved_paths: list[str] = field(default_factory=list)
    started_at: str | None = None
    completed_at: str | None = None
    failed_at: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = str(self.status)
        return data

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Assignment:
        allowed = set(cls.__dataclass_fields__.keys())
        data = {k: v for k, v in raw.items() if k in allowed}
        data["status"] = AssignmentStatus(data.get("status", AssignmentStatus.ASSIGNED))
        data["pane_index"] = int(data.get("pane_index", -1))
        data["retry_count"] = int(data.get("retry_count", 0))
        return cls(**data)


@dataclass(slots=True)
class ReservationGrant:
    reservation_id: int
    path: str
    agent_name: str
    reserved_at: str = ""
    expires_at: str = ""
    exclusive: bool = True
    reason: str = ""


@dataclass(slots=True)
class ConflictHolder:
    agent_name: str
    reserved_at: str = ""
    expires_at: str = ""
    reason: str = ""


@dataclass(slots=True)
class Conflict:
    path_pattern: str
    holders: list[ConflictHolder] = field(default_factory=list)
    detected_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class ReservationResult:
    requested_paths: list[str] = field(default_factory=list)
    granted_paths: list[str] = field(default_factory=list)
    conflicts: list[Conflict] = field(default_factory=list)
    reservation_ids: list[int] = field(default_factory=list)
    # Paths still held by the previous assignee during a reassignment.
    handover_paths: list[str] = field(default_factory=list)
    # True when nothing was reserved because the broker was down or refused.
    disabled: bool = False
    warning: str = ""

    @property
    def ok(self) -> bool:
        return not self.conflicts

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class CompletionEvent:
    bead_id: str
    pane_index: int
    agent_kind: str
    is_failed: bool = False
    fail_reason: str = ""
    duration: float = 0.0
    detected_at: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True)
class AssignmentCandidate:
    """One proposed (bead, pane) pair from the matcher."""

    bead_id: str
    bead_title: str
    pane_index: int
    agent_kind: str
    score: float
    reasoning: str = ""
    priority: int = 2

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_session_layout(store_dir: Path, session: str) -> dict[str, Path]:
    root = store_dir / session
    return {
        "root": root,
        "store": root / "assignments.json",
        "backup": root / "assignments.json.bak",
        "lock": root / "assignments.lock",
        "events": root / "assignments.events.jsonl",
    }
