from __future__ import annotations

from pathlib import Path

import pytest

_SKIPPED_DIRS = frozenset(
    {".git", "__pycache__", ".venv", "venv", ".mypy_cache", ".pytest_cache", "build"}
)
MAX_LINES = 400

ROOT = Path(__file__).resolve().parents[1]


def _source_files() -> list[Path]:
    return sorted(
        p
        for p in ROOT.rglob("*.py")
        if not _SKIPPED_DIRS & set(p.relative_to(ROOT).parts)
    )


@pytest.mark.parametrize(
    "path", _source_files(), ids=lambda p: p.relative_to(ROOT).as_posix()
)
def test_module_stays_small(path: Path) -> None:
    """Modules are kept small and focused; split one before it grows past the limit."""

    line_count = len(path.read_text(encoding="utf-8").splitlines())
    assert line_count <= MAX_LINES, f"{path.name} has {line_count} lines"


def test_package_modules_are_covered() -> None:
    names = {p.name for p in _source_files() if p.parent.name == "lantern"}
    assert {"graph.py", "simulator.py", "connections.py", "metrics.py"} <= names
