"""Shared test helpers for the beadswarm test suite."""

from __future__ import annotations

from tests.helpers.fakes import FakeBroker, FakeMux, FakePane, FakePrioritizer, agent_panes

__all__ = ["FakeBroker", "FakeMux", "FakePane", "FakePrioritizer", "agent_panes"]
