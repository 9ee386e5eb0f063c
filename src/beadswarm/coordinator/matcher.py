"""Strategy matcher: pair ready beads with idle agents."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from enum import StrEnum

from beadswarm.errors import InvalidArgsError
from beadswarm.protocol.models import Agent, AssignmentCandidate, Bead


class Strategy(StrEnum):
    BALANCED = "balanced"
    SPEED = "speed"
    QUALITY = "quality"
    DEPENDENCY = "dependency"
    ROUND_ROBIN = "round-robin"


DEFAULT_CONFIDENCE = 0.7
SPEED_TARGET = 0.9
DEPENDENCY_BOOST = 0.1
DEPENDENCY_CAP = 0.95

# First match wins, so order matters.
TASK_TYPE_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("bug", ("bug", "fix", "broken", "error", "crash")),
    ("testing", ("test", "spec", "coverage")),
    ("documentation", ("doc", "readme", "comment")),
    ("refactor", ("refactor", "cleanup", "improve")),
    ("analysis", ("analyze", "investigate", "research")),
    ("feature", ("feature", "implement", "add", "new")),
)

KIND_STRENGTHS: dict[str, dict[str, float]] = {
    "claude": {"analysis": 0.9, "refactor": 0.9, "documentation": 0.8, "feature": 0.8, "bug": 0.7},
    "codex": {"feature": 0.9, "bug": 0.8, "task": 0.8, "refactor": 0.6},
    "gemini": {"documentation": 0.9, "analysis": 0.8, "feature": 0.8},
}

# (kind, title keywords, reasoning note)
KIND_NOTES: tuple[tuple[str, tuple[str, ...], str], ...] = (
    ("claude", ("refactor", "analyze"), "Claude excels at analysis/refactoring"),
    ("codex", ("feature", "implement"), "Codex excels at implementations"),
    ("gemini", ("doc",), "Gemini excels at documentation"),
)

STRATEGY_NOTES: dict[str, str] = {
    Strategy.BALANCED: "balanced workload",
    Strategy.SPEED: "optimizing for speed",
    Strategy.QUALITY: "optimizing for quality",
    Strategy.DEPENDENCY: "prioritizing unblocks",
}

FALLBACK_REASON = "available agent matched to available work"


def parse_strategy(value: str | Strategy) -> Strategy:
    try:
        return Strategy(str(value).strip().lower())
    except ValueError as exc:
        choices = ", ".join(s.value for s in Strategy)
        raise InvalidArgsError(f"unknown strategy {value!r} (choose from {choices})") from exc


def task_type_of(title: str) -> str:
    lowered = title.lower()
    for task_type, keywords in TASK_TYPE_KEYWORDS:
        if any(k in lowered for k in keywords):
            return task_type
    return "task"


def kind_strength(kind: str, task_type: str) -> float:
    return KIND_STRENGTHS.get(str(kind), {}).get(task_type, DEFAULT_CONFIDENCE)


def calculate_match_confidence(kind: str, bead: Bead, strategy: str | Strategy) -> float:
    confidence = kind_strength(kind, task_type_of(bead.title))
    if strategy == Strategy.SPEED:
        confidence = (confidence + SPEED_TARGET) / 2
    elif strategy == Strategy.DEPENDENCY and bead.priority <= 1:
        confidence = min(confidence + DEPENDENCY_BOOST, DEPENDENCY_CAP)
    return confidence


def build_reasoning(kind: str, bead: Bead, strategy: str | Strategy) -> str:
    reasons: list[str] = []
    lowered = bead.title.lower()
    for note_kind, keywords, note in KIND_NOTES:
        if str(kind) == note_kind and any(k in lowered for k in keywords):
            reasons.append(note)
            break
    if bead.priority == 0:
        reasons.append("critical priority")
    elif bead.priority == 1:
        reasons.append("high priority")
    note = STRATEGY_NOTES.get(str(strategy))
    if note:
        reasons.append(note)
    return "; ".join(reasons) if reasons else FALLBACK_REASON


class StrategyMatcher:
    """Emit ordered (bead, pane) candidates under one strategy.

    Pure and deterministic: the same inputs always give the same output.
    Except for round-robin, no agent appears twice.
    """

    def __init__(self, strategy: str | Strategy = Strategy.BALANCED) -> None:
        self.strategy = parse_strategy(strategy)

    def match(
        self,
        agents: Sequence[Agent],
        beads: Sequence[Bead],
        *,
        load: Mapping[int, int] | None = None,
    ) -> list[AssignmentCandidate]:
        """Match *beads* (rank order) to *agents* (pane order).

        *load* optionally seeds per-pane assignment counts for ``balanced``.
        """
        if not agents or not beads:
            return []
        if self.strategy == Strategy.ROUND_ROBIN:
            return self._round_robin(agents, beads)

        counts: dict[int, int] = {a.pane_index: (load or {}).get(a.pane_index, 0) for a in agents}
        used: set[int] = set()
        out: list[AssignmentCandidate] = []
        for bead in beads:
            free = [a for a in agents if a.pane_index not in used]
            if not free:
                break
            picked, score = self._pick(free, bead, counts)
            used.add(picked.pane_index)
            counts[picked.pane_index] += 1
            out.append(self._candidate(picked, bead, score, build_reasoning(picked.kind, bead, self.strategy)))
        return out

    def _pick(self, free: Sequence[Agent], bead: Bead, counts: Mapping[int, int]) -> tuple[Agent, float]:
        strategy = self.strategy
        if strategy == Strategy.SPEED:
            first = free[0]
            return first, calculate_match_confidence(first.kind, bead, strategy)

        if strategy == Strategy.BALANCED:
            best = free[0]
            best_conf = calculate_match_confidence(best.kind, bead, strategy)
            for agent in free[1:]:
                conf = calculate_match_confidence(agent.kind, bead, strategy)
                if counts[agent.pane_index] < counts[best.pane_index] or (
                    counts[agent.pane_index] == counts[best.pane_index] and conf > best_conf
                ):
                    best, best_conf = agent, conf
            return best, best_conf

        # quality and dependency rank by raw strength; ties keep input order
        task_type = task_type_of(bead.title)
        best = free[0]
        best_strength = kind_strength(best.kind, task_type)
        for agent in free[1:]:
            strength = kind_strength(agent.kind, task_type)
            if strength > best_strength:
                best, best_strength = agent, strength
        if strategy == Strategy.DEPENDENCY:
            return best, calculate_match_confidence(best.kind, bead, strategy)
        return best, best_strength

    def _round_robin(self, agents: Sequence[Agent], beads: Sequence[Bead]) -> list[AssignmentCandidate]:
        n = len(agents)
        out: list[AssignmentCandidate] = []
        for i, bead in enumerate(beads):
            agent = agents[i % n]
            out.append(self._candidate(agent, bead, 1.0, f"round-robin slot {i + 1} → agent {i % n}"))
        return out

    @staticmethod
    def _candidate(agent: Agent, bead: Bead, score: float, reasoning: str) -> AssignmentCandidate:
        return AssignmentCandidate(
            bead_id=bead.id,
            bead_title=bead.title,
            pane_index=agent.pane_index,
            agent_kind=str(agent.kind),
            score=round(score, 4),
            reasoning=reasoning,
            priority=bead.priority,
        )
