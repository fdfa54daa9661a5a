# Ensure the repository root is on sys.path so `order_printer` can be imported in tests.

import sys
from pathlib import Path


def _ensure_repo_root_on_syspath() -> None:
    # This file lives at: <repo_root>/tests/conftest.py
    here = Path(__file__).resolve()
    repo_str = str(here.parent.parent)
    if repo_str not in sys.path:
        sys.path.insert(0, repo_str)


_ensure_repo_root_on_syspath()
