"""
Shared fixtures for the reward engine tests.
"""

import pytest

from holder_rewards.core.database import Database
from holder_rewards.store import StateStore
from tests.fakes import FakeClock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def database(tmp_path):
    """File-backed SQLite database with all tables created."""
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'state.db'}", echo=False)
    await db.connect()
    await db.create_tables()
    yield db
    await db.close()


@pytest.fixture
async def store(database) -> StateStore:
    return StateStore(database)
