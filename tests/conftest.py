"""
Shared fixtures: a fresh SQLite database per test.
"""

import tempfile
from pathlib import Path

import pytest_asyncio

from healforge.db import close_db, init_db


@pytest_asyncio.fixture
async def session_maker():
    """Session maker bound to a throwaway database file."""
    with tempfile.TemporaryDirectory() as tmpdir:
        maker = await init_db(Path(tmpdir) / "healforge.db")
        yield maker
        # Close database connections before cleanup
        await close_db()
