from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio

from sequel_core.orm.registry import Registry


@pytest.fixture
def db_url(tmp_path) -> str:
    """SQLAlchemy URL of a file-backed SQLite database private to one test."""
    return f"sqlite+aiosqlite:///{tmp_path / 'test.db'}"


@pytest_asyncio.fixture
async def registry(db_url: str) -> AsyncGenerator[Registry, None]:
    """Create a registry over a fresh database for each test.

    The engine is disposed after the test so no connection outlives the database file.
    """
    registry = Registry(db_url)

    yield registry

    await registry.close()
