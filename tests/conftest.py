"""
Shared fixtures: a throwaway SQLite database per test.
"""

import pytest

from mission_indexer.core.database import init_database, close_database, DatabaseManager


@pytest.fixture
async def database(tmp_path):
    """Fresh schema in a temporary SQLite file."""
    await init_database(f"sqlite:///{tmp_path / 'indexer.db'}")
    await DatabaseManager.create_tables()
    yield
    await close_database()
