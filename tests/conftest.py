"""
Pytest configuration and shared fixtures for MDB_ENTITY tests.

This module provides:
- Mock motor client / collection / cursor fixtures
- A ConnectionPool and EntityEngine wired to the mock client
- Testcontainers fixtures for integration tests against real MongoDB
"""

import os
from typing import Any, Dict
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio

from mdb_entity.core.engine import EntityEngine
from mdb_entity.database.connection import ConnectionPool
from mdb_entity.observability import get_metrics_collector


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "integration: tests that need a real MongoDB (testcontainers)"
    )


# ============================================================================
# MOCK MONGODB FIXTURES
# ============================================================================


def make_cursor(docs: list | None = None) -> MagicMock:
    """Create a mock motor cursor whose chain methods return itself."""
    cursor = MagicMock()
    cursor.sort = MagicMock(return_value=cursor)
    cursor.skip = MagicMock(return_value=cursor)
    cursor.limit = MagicMock(return_value=cursor)
    cursor.to_list = AsyncMock(return_value=list(docs or []))
    return cursor


def make_collection(name: str) -> MagicMock:
    """Create a mock motor collection with async CRUD methods."""
    collection = MagicMock()
    collection.name = name
    collection.insert_one = AsyncMock(return_value=MagicMock(inserted_id="test_id"))
    collection.insert_many = AsyncMock(
        side_effect=lambda docs, **kwargs: MagicMock(
            inserted_ids=[f"id{i}" for i in range(len(docs))]
        )
    )
    collection.find_one = AsyncMock(return_value=None)
    collection.find = MagicMock(return_value=make_cursor())
    collection.find_one_and_update = AsyncMock(return_value=None)
    collection.replace_one = AsyncMock(
        return_value=MagicMock(matched_count=0, modified_count=0, upserted_id="test_id")
    )
    collection.delete_one = AsyncMock(return_value=MagicMock(deleted_count=1))
    collection.count_documents = AsyncMock(return_value=0)
    collection.aggregate = MagicMock(return_value=make_cursor())
    collection.create_index = AsyncMock(return_value="test_index")
    return collection


@pytest.fixture
def mock_collections() -> Dict[str, MagicMock]:
    """Collections handed out by the mock database, keyed by name."""
    return {}


@pytest.fixture
def mock_mongo_client(mock_collections) -> MagicMock:
    """Create a mock AsyncIOMotorClient."""
    client = MagicMock()
    client.admin.command = AsyncMock(return_value={"ok": 1})
    client.drop_database = AsyncMock()
    client.close = MagicMock()

    def new_session():
        session = MagicMock()
        session.end_session = AsyncMock()
        return session

    client.start_session = AsyncMock(side_effect=new_session)

    database = MagicMock()
    database.client = client
    database.__getitem__.side_effect = lambda name: mock_collections.setdefault(
        name, make_collection(name)
    )
    client.__getitem__.side_effect = lambda db_name: database
    return client


@pytest.fixture
def pool_config() -> Dict[str, Any]:
    """Provide default configuration for ConnectionPool."""
    return {
        "mongo_uri": "mongodb://localhost:27017/test_db",
        "max_pool_size": 4,
        "socket_timeout": 0.2,
    }


@pytest_asyncio.fixture
async def pool(pool_config, mock_mongo_client):
    """An initialized ConnectionPool backed by the mock client."""
    with patch(
        "mdb_entity.database.connection.AsyncIOMotorClient", return_value=mock_mongo_client
    ):
        connection_pool = ConnectionPool(**pool_config)
        await connection_pool.initialize()
    yield connection_pool
    await connection_pool.shutdown()


@pytest_asyncio.fixture
async def engine(pool) -> EntityEngine:
    """An EntityEngine on the mock-backed pool."""
    return EntityEngine(pool)


@pytest.fixture
def metrics():
    """The global metrics collector, reset around each test."""
    collector = get_metrics_collector()
    collector.reset()
    yield collector
    collector.reset()


# ============================================================================
# ENVIRONMENT VARIABLES
# ============================================================================


@pytest.fixture(autouse=True)
def reset_environment(monkeypatch):
    """Reset environment variables before each test."""
    env_vars_to_clear = [
        "MONGO_URI",
        "MONGODB",
        "DB_NAME",
        "MONGO_MAX_POOL_SIZE",
        "MONGO_SOCKET_TIMEOUT",
        "MONGO_BLOCK_ON_EXHAUSTION",
    ]
    for var in env_vars_to_clear:
        monkeypatch.delenv(var, raising=False)
    yield


# ============================================================================
# TESTCONTAINERS FIXTURES (Real MongoDB for Integration Tests)
# ============================================================================


@pytest.fixture(scope="session")
def mongodb_container():
    """
    Start a MongoDB container for integration tests.

    Session-scoped: the container starts once and is reused. Tests are
    skipped when testcontainers or Docker is unavailable.
    """
    try:
        from testcontainers.mongodb import MongoDbContainer
    except ImportError:
        pytest.skip("testcontainers not installed. Install with: pip install -e '.[test]'")

    container = MongoDbContainer("mongo:7.0")
    try:
        container.start()
    except Exception as e:  # docker daemon missing, image pull failure, ...
        pytest.skip(f"Could not start MongoDB container: {e}")
    yield container
    container.stop()


@pytest.fixture
def mongodb_connection_string(mongodb_container):
    """Connection string for the test container (without a database path)."""
    return mongodb_container.get_connection_url().rstrip("/")


@pytest_asyncio.fixture
async def real_pool(mongodb_connection_string):
    """
    An initialized ConnectionPool on a unique database, dropped afterwards.
    """
    db_name = f"test_db_{os.getpid()}_{os.urandom(4).hex()}"
    connection_pool = ConnectionPool(
        f"{mongodb_connection_string}/?authSource=admin",
        db_name=db_name,
        max_pool_size=8,
        socket_timeout=10,
    )
    await connection_pool.initialize()
    yield connection_pool
    try:
        await connection_pool.drop()
    finally:
        await connection_pool.shutdown()


@pytest_asyncio.fixture
async def real_engine(real_pool) -> EntityEngine:
    """An EntityEngine on a real MongoDB database."""
    return EntityEngine(real_pool)
