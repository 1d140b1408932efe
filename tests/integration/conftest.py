"""Pytest fixtures for integration tests.

These tests run against a real PostgreSQL server (the compose stack or any
local instance reachable with the POSTGRES_* settings). Every test starts
from freshly seeded categories; tests are skipped when the server is down.
"""

import os
from typing import AsyncGenerator, List

import pytest
import pytest_asyncio

from awards_voting.config import settings
from awards_voting.data_store.base import StoreError
from awards_voting.data_store.postgres import PostgresDataStore
from awards_voting.shared.models import Category
from awards_voting.shared.retry import RetryPolicy
from awards_voting.unlock_controller.controller import UnlockController
from awards_voting.vote_gateway.gateway import VoteGateway
from awards_voting.vote_gateway.voted_cache import MemoryVotedCache


@pytest.fixture
def sample_categories() -> List[Category]:
    """Eight locked categories with ids 1..8."""
    return [
        Category(
            id=category_id,
            title=f"Integration Category {category_id}",
            nominees={option: f"Nominee {category_id}{option}" for option in "ABCD"},
        )
        for category_id in range(1, 9)
    ]


@pytest_asyncio.fixture
async def pg_store(sample_categories) -> AsyncGenerator[PostgresDataStore, None]:
    """PostgreSQL store with the schema ensured and sample categories loaded.

    Yields a connected store; tables are emptied before seeding.
    """
    store = PostgresDataStore(
        dsn=os.getenv("TEST_POSTGRES_DSN", settings.postgres_dsn),
        connect_timeout=5.0
    )
    try:
        await store.initialize(create_schema=True)
    except StoreError:
        pytest.skip("PostgreSQL not available")

    async with store.pool.acquire() as conn:
        await conn.execute("TRUNCATE TABLE votes, categories")
    for category in sample_categories:
        await store.upsert_category(category)

    yield store

    await store.close()


@pytest.fixture
def pg_retry() -> RetryPolicy:
    return RetryPolicy(base_delay=0.05, max_delay=0.2, max_attempts=3, timeout=5.0)


@pytest.fixture
def pg_gateway(pg_store, pg_retry) -> VoteGateway:
    return VoteGateway(pg_store, voted_cache=MemoryVotedCache(), retry_policy=pg_retry)


@pytest.fixture
def pg_controller(pg_store, pg_gateway, pg_retry) -> UnlockController:
    return UnlockController(pg_store, gateway=pg_gateway, retry_policy=pg_retry)
