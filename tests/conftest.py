"""Pytest configuration – make the local *pgwrapper* package and the
standalone helpers under ``tools/src`` importable without installation.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path


def pytest_configure() -> None:  # noqa: D401 – Pytest hook name
    root = Path(os.getenv("PYTEST_PROJECT_ROOT", Path(__file__).resolve().parent.parent)).resolve()
    for path in (root, root / "tools" / "src"):
        if str(path) not in sys.path:  # pragma: no cover – executed once
            sys.path.insert(0, str(path))
