"""YAML config loader for beadswarm."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml

from beadswarm.config.schema import (
    BeadswarmConfig,
    CompletionConfig,
    MatcherConfig,
    ObserverConfig,
    PromptsConfig,
    ProviderConfig,
    ReservationsConfig,
    SessionConfig,
    WatchConfig,
)
from beadswarm.errors import InvalidArgsError

DEFAULT_CONFIG_NAME = ".beadswarm.yaml"

_SECTIONS: dict[str, type[Any]] = {
    "session": SessionConfig,
    "observer": ObserverConfig,
    "provider": ProviderConfig,
    "reservations": ReservationsConfig,
    "matcher": MatcherConfig,
    "completion": CompletionConfig,
    "watch": WatchConfig,
    "prompts": PromptsConfig,
}


def load_config(path: str | Path | None = None) -> BeadswarmConfig:
    p = Path(path) if path else Path(DEFAULT_CONFIG_NAME)
    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8")) if p.exists() else {}
    except yaml.YAMLError as exc:
        raise InvalidArgsError(f"invalid config {p}: {exc}") from exc
    if not isinstance(raw, dict):
        raw = {}

    sections: dict[str, Any] = {}
    for name, model_type in _SECTIONS.items():
        section_raw = raw.get(name, {}) if isinstance(raw.get(name), dict) else {}
        sections[name] = model_type(**_pick(section_raw, model_type))

    observer: ObserverConfig = sections["observer"]
    if not isinstance(observer.kind_markers, dict):
        observer.kind_markers = ObserverConfig().kind_markers

    return BeadswarmConfig(version=int(raw.get("version", 1)), **sections)


def _pick(raw: dict[str, Any], model_type: type[Any]) -> dict[str, Any]:
    allowed = set(model_type.__dataclass_fields__.keys())
    return {k: v for k, v in raw.items() if k in allowed}
