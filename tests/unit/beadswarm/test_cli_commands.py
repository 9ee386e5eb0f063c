"""CLI tests for the ``assign`` command group."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner, Result

from beadswarm.cli import main
from beadswarm.config.schema import BeadswarmConfig
from beadswarm.controllers.runtime import Runtime, build_runtime
from tests.helpers.fakes import BUSY, FakeBroker, FakeMux, FakePrioritizer, agent_panes


def _write_config(path: Path, root: Path) -> None:
    path.write_text(
        f"""version: 1
session:
  store_dir: {root / "sessions"}
  project_dir: {root}
provider:
  backoff_seconds: 0
""",
        encoding="utf-8",
    )


@pytest.fixture
def cli(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    mux: FakeMux,
    prioritizer: FakePrioritizer,
    broker: FakeBroker,
) -> Any:
    for pane in agent_panes("claude", "codex"):
        mux.panes[pane.index] = pane
    cfg_path = tmp_path / "beadswarm.yaml"
    _write_config(cfg_path, tmp_path)
    seen: dict[str, BeadswarmConfig] = {}

    def fake_build(config: BeadswarmConfig, session: str) -> Runtime:
        seen["config"] = config
        return build_runtime(config, session, mux=mux, runner=prioritizer, broker=broker)

    monkeypatch.setattr("beadswarm.cli.build_runtime", fake_build)
    runner = CliRunner()

    def invoke(*args: str) -> Result:
        return runner.invoke(main, ["--config", str(cfg_path), "assign", *args])

    invoke.seen = seen  # type: ignore[attr-defined]
    return invoke


def _envelope(result: Result) -> dict[str, Any]:
    return json.loads(result.stdout)


class TestJsonEnvelope:
    def test_preview(self, cli: Any, prioritizer: FakePrioritizer, mux: FakeMux) -> None:
        prioritizer.recommendations = [{"id": "bd-1", "title": "refactor parser", "priority": 1}]

        result = cli("preview", "proj", "--json")

        assert result.exit_code == 0, result.output
        env = _envelope(result)
        assert env["command"] == "assign"
        assert env["subcommand"] == "preview"
        assert env["session"] == "proj"
        assert env["success"] is True
        assert env["timestamp"].endswith("Z")
        assert [a["status"] for a in env["data"]["assignments"]] == ["planned"]
        assert "error" not in env
        assert mux.sent == []

    def test_auto_sends(self, cli: Any, prioritizer: FakePrioritizer, mux: FakeMux) -> None:
        prioritizer.recommendations = [{"id": "bd-1", "title": "refactor parser"}]

        result = cli("auto", "proj", "--json", "--cod-only")

        assert result.exit_code == 0, result.output
        env = _envelope(result)
        assert [(a["bead_id"], a["pane"]) for a in env["data"]["assignments"]] == [("bd-1", 1)]
        assert mux.sent[0][0] == "%1"

    def test_conflicting_agent_flags(self, cli: Any, mux: FakeMux) -> None:
        result = cli("auto", "proj", "--json", "--cc-only", "--cod-only")

        assert result.exit_code == 1
        env = _envelope(result)
        assert env["success"] is False
        assert env["error"]["code"] == "INVALID_ARGS"
        assert mux.sent == []

    def test_pane_busy(self, cli: Any, mux: FakeMux) -> None:
        mux.set_tail(0, BUSY)

        result = cli("pane", "proj", "0", "bd-1", "--json")

        assert result.exit_code == 1
        env = _envelope(result)
        assert env["error"]["code"] == "PANE_BUSY"
        assert env["data"]["assignment"]["pane_was_busy"] is True

    def test_clear_missing(self, cli: Any) -> None:
        result = cli("clear", "proj", "bd-404", "--json")
        assert result.exit_code == 1
        assert _envelope(result)["error"]["code"] == "NOT_ASSIGNED"

    def test_status_empty(self, cli: Any) -> None:
        result = cli("status", "proj", "--json")
        assert result.exit_code == 0
        assert _envelope(result)["data"]["assignments"] == []

    def test_watch_stops_when_done(self, cli: Any) -> None:
        result = cli("watch", "proj", "--json", "--stop-when-done", "--poll-interval", "0.01")
        assert result.exit_code == 0, result.output
        assert _envelope(result)["data"]["exit_reason"] == "no_work_remaining"

    def test_unknown_template_file(self, cli: Any, tmp_path: Path) -> None:
        result = cli("preview", "proj", "--json", "--template-file", str(tmp_path / "missing.txt"))
        assert result.exit_code == 1
        assert _envelope(result)["error"]["code"] == "INVALID_ARGS"


class TestOverrides:
    def test_flags_reach_config(self, cli: Any, prioritizer: FakePrioritizer, broker: FakeBroker) -> None:
        prioritizer.recommendations = [{"id": "bd-1", "title": "Fix src/a.py"}]

        result = cli("auto", "proj", "--json", "--no-reserve", "--timeout", "5", "--template", "review")

        assert result.exit_code == 0, result.output
        cfg = cli.seen["config"]
        assert cfg.reservations.enabled is False
        assert cfg.session.timeout_seconds == 5
        assert cfg.prompts.template == "review"
        assert broker.reserve_calls == 0


class TestHumanOutput:
    def test_pane_success(self, cli: Any, prioritizer: FakePrioritizer) -> None:
        prioritizer.recommendations = [{"id": "bd-1", "title": "Fix src/a.py"}]

        result = cli("pane", "proj", "1", "bd-1")

        assert result.exit_code == 0, result.output
        assert "✓ Assigned bd-1 to pane 1 (codex)" in result.stdout
        assert "Title: Fix src/a.py" in result.stdout
        assert "Reserved: src/a.py" in result.stdout

    def test_status_table(self, cli: Any, prioritizer: FakePrioritizer) -> None:
        assert "No assignments" in cli("status", "proj").stdout

        prioritizer.recommendations = [{"id": "bd-1", "title": "refactor parser"}]
        cli("auto", "proj")
        result = cli("status", "proj")

        assert result.exit_code == 0
        assert "bd-1" in result.stdout
        assert "assigned=1" in result.stdout

    def test_error_goes_to_stderr(self, cli: Any) -> None:
        result = cli("retry", "proj", "bd-404")
        assert result.exit_code == 1
        assert "Error [" in result.stderr
        assert result.stdout == ""
