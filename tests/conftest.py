"""Shared test fixtures and configuration."""

import os

import pytest
import pytest_asyncio


# Complete test environment that overrides ALL possible config values
TEST_ENV = {
    # Engine connection
    "INDEX_SYNC_ENGINE_URL": "http://index.test:9200",
    "INDEX_SYNC_REQUEST_TIMEOUT": "5",
    "INDEX_SYNC_CONNECT_TIMEOUT": "2",
    "INDEX_SYNC_REFRESH_ON_WRITE": "false",
    # Index naming
    "INDEX_SYNC_INDEX_PREFIX": "",
    "INDEX_SYNC_PLURALIZE_INDEX_NAMES": "true",
    # Retry policy - no sleeping in tests
    "INDEX_SYNC_MAX_ATTEMPTS": "3",
    "INDEX_SYNC_BACKOFF_INITIAL": "0",
    "INDEX_SYNC_BACKOFF_MULTIPLIER": "1",
    "INDEX_SYNC_BACKOFF_MAX": "0",
    "INDEX_SYNC_BACKOFF_JITTER": "0",
    # Dispatch
    "INDEX_SYNC_MAX_CONCURRENCY": "4",
    "INDEX_SYNC_BULK_CHUNK_SIZE": "100",
    # Logging
    "INDEX_SYNC_LOG_LEVEL": "debug",
    "INDEX_SYNC_LOG_JSON": "false",
    # Proxy settings - ensure they're cleared for tests
    "http_proxy": "",
    "https_proxy": "",
    "all_proxy": "",
    "no_proxy": "",
}


# Set environment variables immediately when conftest.py is loaded
for key, value in TEST_ENV.items():
    os.environ[key] = value

# Now we can safely import config-dependent modules
from index_sync.adapters.memory_index_client import InMemoryIndexClient
from index_sync.config import Settings
from index_sync.search.schema import IndexMapping, NumericField, TextField
from index_sync.service_layer.indexed_collection import IndexedCollection
from index_sync.service_layer.retry import RetryPolicy
from index_sync.service_layer.sync_engine import SyncEngine


BONDS = [
    {"_id": "b1", "name": "Bail", "type": "A", "price": 10000},
    {"_id": "b2", "name": "Commercial", "type": "B", "price": 15000},
    {"_id": "b3", "name": "Construction", "type": "B", "price": 20000},
    {"_id": "b4", "name": "Legal", "type": "C", "price": 30000},
]


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Clean environment variables before each test and set test defaults."""
    for key, value in TEST_ENV.items():
        monkeypatch.setenv(key, value)


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def bond_mapping() -> IndexMapping:
    return IndexMapping(
        fields=[
            TextField("name"),
            TextField("type"),
            NumericField("price", numeric_type="long"),
        ],
        name="bond",
    )


@pytest.fixture
def bonds() -> list[dict]:
    return [dict(bond) for bond in BONDS]


@pytest.fixture
def memory_client() -> InMemoryIndexClient:
    return InMemoryIndexClient()


@pytest_asyncio.fixture
async def engine(memory_client):
    sync_engine = SyncEngine(memory_client, RetryPolicy.immediate(), max_concurrency=4, name="test")
    await sync_engine.start()
    yield sync_engine
    await sync_engine.stop(drain=False)


@pytest_asyncio.fixture
async def bond_collection(bond_mapping, memory_client, engine, settings) -> IndexedCollection:
    collection = IndexedCollection("Bond", bond_mapping, memory_client, engine, settings=settings)
    await collection.ensure_index()
    return collection
