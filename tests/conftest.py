"""Global test fixtures for beadswarm."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path

import pytest

from beadswarm.config.schema import BeadswarmConfig
from beadswarm.controllers.runtime import Runtime, build_runtime
from tests.helpers.fakes import FakeBroker, FakeMux, FakePrioritizer

SESSION = "proj"


@pytest.fixture
def event_loop_policy():
    """Use default asyncio event loop policy."""
    return asyncio.DefaultEventLoopPolicy()


@pytest.fixture
def config(tmp_path: Path) -> BeadswarmConfig:
    """Config rooted in a temp dir with retries that do not sleep."""
    cfg = BeadswarmConfig()
    cfg.session.store_dir = str(tmp_path / "sessions")
    cfg.session.project_dir = str(tmp_path)
    cfg.provider.backoff_seconds = 0.0
    cfg.completion.retry_interval_seconds = 0.0
    cfg.completion.dedup_window_seconds = 5.0
    return cfg


@pytest.fixture
def mux() -> FakeMux:
    return FakeMux(SESSION)


@pytest.fixture
def prioritizer() -> FakePrioritizer:
    return FakePrioritizer()


@pytest.fixture
def broker() -> FakeBroker:
    return FakeBroker()


@pytest.fixture
def make_runtime(
    config: BeadswarmConfig,
    mux: FakeMux,
    prioritizer: FakePrioritizer,
    broker: FakeBroker,
) -> Callable[[], Runtime]:
    def _make() -> Runtime:
        return build_runtime(config, SESSION, mux=mux, runner=prioritizer, broker=broker)

    return _make


@pytest.fixture
def runtime(make_runtime: Callable[[], Runtime]) -> Runtime:
    return make_runtime()
