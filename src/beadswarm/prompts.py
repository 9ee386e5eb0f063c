"""Prompt templates injected into agent panes."""

from __future__ import annotations

from pathlib import Path

from beadswarm.errors import InvalidArgsError

TEMPLATES: dict[str, str] = {
    "impl": "Work on bead {BEAD_ID}: {TITLE}. Check dependencies first.",
    "review": "Review and verify bead {BEAD_ID}: {TITLE}. Run tests if applicable.",
}

TEMPLATE_NAMES = ("impl", "review", "custom")


def render(template: str, bead_id: str, title: str) -> str:
    return template.replace("{BEAD_ID}", bead_id).replace("{TITLE}", title)


class PromptRenderer:
    """Resolves a named template once and renders it per bead."""

    def __init__(self, name: str = "impl", template_file: str | Path | None = None) -> None:
        if name not in TEMPLATE_NAMES:
            raise InvalidArgsError(
                f"unknown template {name!r} (choose from {', '.join(TEMPLATE_NAMES)})"
            )
        if name == "custom":
            if not template_file:
                raise InvalidArgsError("template 'custom' requires a template file")
            path = Path(template_file)
            try:
                self._template = path.read_text(encoding="utf-8")
            except OSError as exc:
                raise InvalidArgsError(f"cannot read template file {path}: {exc}") from exc
        else:
            self._template = TEMPLATES[name]
        self.name = name

    @property
    def template(self) -> str:
        return self._template

    def render(self, bead_id: str, title: str, override: str = "") -> str:
        """Render for one bead; a non-empty *override* replaces the template."""
        return render(override or self._template, bead_id, title)
