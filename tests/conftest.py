"""Shared pytest setup.

Tests import the top-level modules under `src/` (`config`, `main`, `pipeline`,
`observability`) directly, so `src/` is put on `sys.path` before collection.
This keeps the suite runnable from a plain checkout without `pip install -e .`.
"""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

SRC_DIR = Path(__file__).resolve().parents[1] / "src"


def pytest_configure() -> None:
    if str(SRC_DIR) not in sys.path:
        sys.path.insert(0, str(SRC_DIR))


@pytest.fixture
def drain_events():
    """Return a helper that empties a subscriber queue into a list (no waiting)."""

    def _drain(q: asyncio.Queue) -> list:
        events = []
        while not q.empty():
            events.append(q.get_nowait())
        return events

    return _drain
