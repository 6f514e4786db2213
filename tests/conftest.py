"""
Shared pytest configuration.

Puts the ``src`` directory on the module search path so the tests can import
``chat_context`` without installing the package first.
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))


@pytest.fixture
def clock():
    """Deterministic clock advancing one second per call."""
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    ticks = iter(range(10_000))
    return lambda: start + timedelta(seconds=next(ticks))
