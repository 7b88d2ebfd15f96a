"""Pytest configuration.

Pytest 9 defaults to importlib-based importing, which does not automatically add the
repository root (where `search_mask.py` lives) onto `sys.path`.

The CLI tests import the top-level `search_mask` module, so we prepend the project
root (and `src/` for uninstalled checkouts) to `sys.path`.
"""

from __future__ import annotations

import sys
from pathlib import Path


def _ensure_project_paths_on_syspath() -> None:
    project_root = Path(__file__).resolve().parents[1]
    for path in (project_root / "src", project_root):
        path_str = str(path)
        if path_str not in sys.path:
            sys.path.insert(0, path_str)


_ensure_project_paths_on_syspath()
