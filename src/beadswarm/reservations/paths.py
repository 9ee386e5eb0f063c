"""Extract file paths mentioned in bead titles and descriptions."""

from __future__ import annotations

import posixpath
import re
from pathlib import Path, PurePosixPath

EXTENSION_ALLOWLIST: frozenset[str] = frozenset(
    {
        "py", "pyi", "go", "rs", "js", "jsx", "ts", "tsx", "mjs", "cjs",
        "java", "kt", "rb", "php", "c", "h", "cc", "cpp", "hpp", "cs",
        "swift", "scala", "sh", "bash", "zsh", "sql", "proto",
        "json", "yaml", "yml", "toml", "ini", "cfg", "conf", "env",
        "md", "rst", "txt", "html", "css", "scss", "vue", "svelte",
        "lock", "mod", "sum", "xml", "graphql", "tf",
    }
)

_URL = re.compile(r"\b[a-zA-Z][a-zA-Z0-9+.-]*://\S+")
_TOKEN = re.compile(r"[A-Za-z0-9_.*/\-]+")
_EXT = re.compile(r"\.([A-Za-z][A-Za-z0-9]*)$")
_TRAILING = ".,;:!?)]}'\""


def _is_path_like(token: str) -> bool:
    if "/" in token.strip("/"):
        last = token.rstrip("/").rsplit("/", 1)[-1]
        return bool(_EXT.search(last)) or "*" in token or token.endswith("/")
    if token.endswith("/") and len(token) > 1:
        return True
    match = _EXT.search(token)
    return bool(match) and match.group(1).lower() in EXTENSION_ALLOWLIST and not token.startswith(".")


def normalize_path(token: str, project_root: str | Path) -> str | None:
    """Make *token* relative to *project_root*; None if it escapes the root."""
    raw = token.strip().rstrip(_TRAILING)
    if not raw:
        return None
    is_dir = raw.endswith("/")
    if raw.startswith("/"):
        root = PurePosixPath(str(Path(project_root).resolve()))
        try:
            raw = str(PurePosixPath(raw).relative_to(root))
        except ValueError:
            return None
    rel = posixpath.normpath(raw)
    if rel in {".", ""} or rel.startswith(".."):
        return None
    if is_dir:
        rel = f"{rel}/**"
    return rel


def extract_paths(text: str, project_root: str | Path = ".") -> list[str]:
    """Return normalised path mentions in first-seen order."""
    cleaned = _URL.sub(" ", text or "")
    seen: set[str] = set()
    out: list[str] = []
    for match in _TOKEN.finditer(cleaned):
        token = match.group(0).rstrip(_TRAILING)
        if not token or not _is_path_like(token):
            continue
        rel = normalize_path(token, project_root)
        if rel and rel not in seen:
            seen.add(rel)
            out.append(rel)
    return out
