"""Pytest configuration for path setup.

The test suite imports the ``backtester`` package from ``backtester/src``
and the shared doubles from ``tests.helpers``.  When pytest is executed as
an installed script, neither location is automatically on ``sys.path``.
This file ensures that both the project root and ``backtester/src`` are
available for imports during test collection.
"""

from __future__ import annotations

import sys
from pathlib import Path


ROOT = Path(__file__).resolve().parents[1]

# Ensure the project root and the package source directory are at the front
# of sys.path so that ``tests.helpers`` and ``backtester`` import regardless
# of how pytest is invoked.
for path in (ROOT / "backtester" / "src", ROOT):
    path_str = str(path)
    if path_str not in sys.path:
        sys.path.insert(0, path_str)
