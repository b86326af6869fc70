"""Shared fixtures for task board tests."""

import asyncio
import sys
from pathlib import Path

import pytest

# Ensure the repo root is importable without installing
sys.path.insert(0, str(Path(__file__).parent.parent))

from taskboard.store import SQLiteTableAccessor


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "board.db")


@pytest.fixture
def store(db_path):
    return SQLiteTableAccessor(db_path)


async def _drain(rounds: int = 50):
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def settle():
    """Coroutine that yields to the loop until queued change events are consumed."""
    return _drain
