"""Tests for YAML config loading and prompt templates."""

from __future__ import annotations

from pathlib import Path

import pytest

from beadswarm.config.loader import load_config
from beadswarm.errors import InvalidArgsError
from beadswarm.prompts import PromptRenderer, render


class TestLoadConfig:
    def test_missing_file_gives_defaults(self, tmp_path: Path) -> None:
        cfg = load_config(tmp_path / "absent.yaml")
        assert cfg.version == 1
        assert cfg.matcher.strategy == "balanced"
        assert cfg.provider.ready_binaries == ["br", "bd"]
        assert cfg.reservations.enabled is True

    def test_sections_and_unknown_keys(self, tmp_path: Path) -> None:
        path = tmp_path / "beadswarm.yaml"
        path.write_text(
            """version: 2
matcher:
  strategy: quality
watch:
  auto_reassign: false
  limit: 3
  bogus: 1
observer:
  kind_markers: not-a-mapping
completion: [1, 2]
""",
            encoding="utf-8",
        )

        cfg = load_config(path)

        assert cfg.version == 2
        assert cfg.matcher.strategy == "quality"
        assert cfg.watch.auto_reassign is False
        assert cfg.watch.limit == 3
        assert "claude" in cfg.observer.kind_markers
        assert cfg.completion.poll_interval_seconds == 30.0

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("matcher: [unclosed\n", encoding="utf-8")
        with pytest.raises(InvalidArgsError, match="invalid config"):
            load_config(path)


class TestPrompts:
    def test_builtin_templates(self) -> None:
        assert PromptRenderer().render("bd-1", "Fix it") == "Work on bead bd-1: Fix it. Check dependencies first."
        review = PromptRenderer("review").render("bd-2", "Ship")
        assert review == "Review and verify bead bd-2: Ship. Run tests if applicable."

    def test_override_uses_placeholders(self) -> None:
        assert PromptRenderer().render("bd-1", "T", override="{BEAD_ID}/{TITLE}/{BEAD_ID}") == "bd-1/T/bd-1"

    def test_custom_template_file(self, tmp_path: Path) -> None:
        path = tmp_path / "prompt.txt"
        path.write_text("Take {BEAD_ID} ({TITLE})", encoding="utf-8")
        assert PromptRenderer("custom", path).render("bd-3", "Docs") == "Take bd-3 (Docs)"

    @pytest.mark.parametrize(
        ("name", "template_file", "match"),
        [
            ("fancy", None, "unknown template"),
            ("custom", None, "requires a template file"),
            ("custom", "missing.txt", "cannot read template file"),
        ],
    )
    def test_bad_templates(self, tmp_path: Path, name: str, template_file: str | None, match: str) -> None:
        path = tmp_path / template_file if template_file else None
        with pytest.raises(InvalidArgsError, match=match):
            PromptRenderer(name, path)

    def test_render_leaves_unknown_placeholders(self) -> None:
        assert render("{BEAD_ID} {OTHER}", "bd-1", "t") == "bd-1 {OTHER}"
