"""Configuration schema for beadswarm YAML files."""

from __future__ import annotations

from dataclasses import dataclass, field

DEFAULT_IDLE_MARKERS: list[str] = [
    "$",
    ">",
    ">>> ",
    "claude>",
    "codex>",
    "gemini>",
    "What would you like",
    "How can I help",
    "Ready for",
    "Waiting for",
]

DEFAULT_KIND_MARKERS: dict[str, list[str]] = {
    "claude": ["__cc", "claude"],
    "codex": ["__cod", "codex"],
    "gemini": ["__gmi", "gemini"],
    "user": ["__user", "user"],
}

DEFAULT_ERROR_MARKERS: list[str] = [
    "rate limit exceeded",
    "api error",
    "panic:",
    "traceback (most recent call last)",
    "fatal error",
]

DEFAULT_SUCCESS_MARKERS: list[str] = [
    "[TASK_DONE]",
    "task complete",
    "all tests pass",
    "successfully completed",
]

DEFAULT_FAILURE_MARKERS: list[str] = [
    "[TASK_FAILED]",
    "task failed",
    "unable to complete",
    "giving up",
]


@dataclass(slots=True)
class SessionConfig:
    store_dir: str = "~/.beadswarm/sessions"
    project_dir: str = "."
    timeout_seconds: float = 30.0


@dataclass(slots=True)
class ObserverConfig:
    tmux_binary: str = "tmux"
    capture_lines: int = 50
    idle_markers: list[str] = field(default_factory=lambda: list(DEFAULT_IDLE_MARKERS))
    error_markers: list[str] = field(default_factory=lambda: list(DEFAULT_ERROR_MARKERS))
    kind_markers: dict[str, list[str]] = field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_KIND_MARKERS.items()}
    )


@dataclass(slots=True)
class ProviderConfig:
    triage_binary: str = "bv"
    ready_binaries: list[str] = field(default_factory=lambda: ["br", "bd"])
    ready_limit: int = 50
    max_attempts: int = 3
    backoff_seconds: float = 1.0  # linear: attempt n waits n * backoff
    cache_ttl_seconds: float = 30.0


@dataclass(slots=True)
class ReservationsConfig:
    enabled: bool = True
    broker_url: str = "http://127.0.0.1:8765/mcp/"
    project_key: str = ""  # empty = absolute project_dir
    bearer_token: str = ""
    min_ttl_seconds: int = 3600


@dataclass(slots=True)
class MatcherConfig:
    strategy: str = "balanced"  # balanced | speed | quality | dependency | round-robin


@dataclass(slots=True)
class CompletionConfig:
    poll_interval_seconds: float = 30.0
    idle_threshold_seconds: float = 120.0
    dedup_window_seconds: float = 5.0
    retry_on_error: bool = True
    max_retries: int = 3
    retry_interval_seconds: float = 10.0
    capture_lines: int = 50
    success_markers: list[str] = field(default_factory=lambda: list(DEFAULT_SUCCESS_MARKERS))
    failure_markers: list[str] = field(default_factory=lambda: list(DEFAULT_FAILURE_MARKERS))


@dataclass(slots=True)
class WatchConfig:
    auto_reassign: bool = True
    delay_seconds: float = 0.0
    limit: int = 0  # 0 = unlimited per cycle
    stop_when_done: bool = False
    agent_type: str = ""


@dataclass(slots=True)
class PromptsConfig:
    template: str = "impl"  # impl | review | custom
    template_file: str = ""


@dataclass(slots=True)
class BeadswarmConfig:
    version: int = 1
    session: SessionConfig = field(default_factory=SessionConfig)
    observer: ObserverConfig = field(default_factory=ObserverConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    reservations: ReservationsConfig = field(default_factory=ReservationsConfig)
    matcher: MatcherConfig = field(default_factory=MatcherConfig)
    completion: CompletionConfig = field(default_factory=CompletionConfig)
    watch: WatchConfig = field(default_factory=WatchConfig)
    prompts: PromptsConfig = field(default_factory=PromptsConfig)
