"""Pytest fixtures for unit tests.

Everything here runs against the in-process MemoryDataStore with zero retry
and reconnect delays, so no database or network is needed.
"""

import asyncio
from typing import Callable, List

import pytest

from awards_voting.data_store.memory import MemoryDataStore
from awards_voting.shared.models import Category
from awards_voting.shared.retry import Backoff, RetryPolicy
from awards_voting.unlock_controller.controller import UnlockController
from awards_voting.vote_gateway.gateway import VoteGateway
from awards_voting.vote_gateway.voted_cache import MemoryVotedCache


def make_category(category_id: int, unlocked: bool = False) -> Category:
    """Build a valid category with four nominees."""
    return Category(
        id=category_id,
        title=f"Category {category_id}",
        nominees={option: f"Nominee {category_id}{option}" for option in "ABCD"},
        is_unlocked=unlocked,
    )


@pytest.fixture
def categories() -> List[Category]:
    """Eight locked categories with ids 1..8."""
    return [make_category(category_id) for category_id in range(1, 9)]


@pytest.fixture
def store(categories: List[Category]) -> MemoryDataStore:
    """In-process data store seeded with the sample categories."""
    return MemoryDataStore(categories)


@pytest.fixture
def sleeps() -> List[float]:
    """Delays requested by retry and reconnect loops, in order."""
    return []


@pytest.fixture
def fake_sleep(sleeps: List[float]):
    """Sleep replacement that records the delay and only yields to the loop."""
    async def _sleep(delay: float):
        sleeps.append(delay)
        await asyncio.sleep(0)

    return _sleep


@pytest.fixture
def retry_policy(fake_sleep) -> RetryPolicy:
    """Production retry shape (1s base, 30s cap, 4 attempts) without real waiting."""
    return RetryPolicy(base_delay=1.0, max_delay=30.0, max_attempts=4, timeout=1.0, sleep=fake_sleep)


@pytest.fixture
def reconnect_backoff() -> Backoff:
    return Backoff(base_delay=1.0, max_delay=30.0, max_attempts=5)


@pytest.fixture
def gateway(store: MemoryDataStore, retry_policy: RetryPolicy) -> VoteGateway:
    return VoteGateway(store, voted_cache=MemoryVotedCache(), retry_policy=retry_policy)


@pytest.fixture
def controller(store: MemoryDataStore, gateway: VoteGateway, retry_policy: RetryPolicy) -> UnlockController:
    return UnlockController(store, gateway=gateway, retry_policy=retry_policy)


@pytest.fixture
def wait_until():
    """Helper fixture to wait for asynchronous notifications to settle.

    Returns a coroutine function that polls ``predicate`` until it holds.
    """
    async def _wait(predicate: Callable[[], bool], timeout: float = 2.0):
        """Wait until ``predicate()`` is true.

        Args:
            predicate: Condition to poll
            timeout: Seconds before the test fails
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                pytest.fail("Condition not reached before timeout")
            await asyncio.sleep(0.005)

    return _wait
