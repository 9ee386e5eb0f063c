"""Pure title and scrollback classifiers.

Every table here is data so that callers (and the YAML config) can swap
markers without touching code.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence

from beadswarm.config.schema import DEFAULT_ERROR_MARKERS, DEFAULT_IDLE_MARKERS, DEFAULT_KIND_MARKERS
from beadswarm.protocol.models import AgentKind, AgentState

MODEL_VARIANTS: tuple[str, ...] = ("opus", "sonnet", "haiku")


def detect_kind(title: str, kind_markers: Mapping[str, Sequence[str]] | None = None) -> AgentKind:
    """Classify a pane by case-insensitive marker substrings in its title.

    Markers are checked in mapping order; the first kind with a hit wins.
    """
    markers = kind_markers if kind_markers is not None else DEFAULT_KIND_MARKERS
    lowered = title.lower()
    for kind, needles in markers.items():
        if any(n.lower() in lowered for n in needles if n):
            try:
                return AgentKind(kind)
            except ValueError:
                continue
    return AgentKind.UNKNOWN


def detect_model(title: str) -> str:
    lowered = title.lower()
    for variant in MODEL_VARIANTS:
        if variant in lowered:
            return variant
    return ""


def last_nonempty_line(tail: str) -> str:
    for line in reversed(tail.splitlines()):
        stripped = line.strip()
        if stripped:
            return stripped
    return ""


def matches_marker(line: str, markers: Sequence[str]) -> bool:
    """True when *line* ends with or contains any marker."""
    for marker in markers:
        if not marker:
            continue
        if line.endswith(marker.strip()) or marker in line:
            return True
    return False


def detect_state(
    tail: str,
    kind: AgentKind | str = AgentKind.UNKNOWN,
    *,
    idle_markers: Sequence[str] | None = None,
    error_markers: Sequence[str] | None = None,
) -> AgentState:
    """Decide agent state from the last non-empty scrollback line.

    Error markers win over idle markers. ``kind`` is not consulted; the
    default idle table already carries each kind's ready prompt.
    """
    line = last_nonempty_line(tail)
    if not line:
        return AgentState.UNKNOWN
    lowered = line.lower()
    errors = error_markers if error_markers is not None else DEFAULT_ERROR_MARKERS
    if any(m and m.lower() in lowered for m in errors):
        return AgentState.ERROR
    idle = idle_markers if idle_markers is not None else DEFAULT_IDLE_MARKERS
    if matches_marker(line, idle):
        return AgentState.IDLE
    return AgentState.WORKING


def agent_name(session: str, kind: AgentKind | str, pane_index: int) -> str:
    """Stable session-scoped label used for reservations and the store."""
    if not session:
        return ""
    return f"{session}_{kind}_{pane_index}"
