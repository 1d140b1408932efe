"""Integration tests for the PostgreSQL store and the voting core on top of it.

Requires: a reachable PostgreSQL server
"""

import asyncio

import pytest

from awards_voting.data_store.base import (
    SINGLE_UNLOCKED_CONSTRAINT,
    VOTE_UNIQUE_CONSTRAINT,
    CheckViolation,
    ForeignKeyViolation,
    UniqueViolation,
)
from awards_voting.live_sync.synchronizer import LiveViewSynchronizer, SyncState
from awards_voting.shared.errors import CategoryLocked, DuplicateVote
from awards_voting.shared.models import Vote
from awards_voting.vote_gateway.gateway import VoteGateway
from awards_voting.vote_gateway.voted_cache import MemoryVotedCache


async def wait_for(predicate, timeout=5.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            pytest.fail("Condition not reached before timeout")
        await asyncio.sleep(0.05)


@pytest.mark.docker
@pytest.mark.asyncio
class TestPostgresConstraints:
    """Tests for the schema constraints the voting core relies on."""

    async def test_categories_seeded(self, pg_store):
        categories = await pg_store.fetch_categories()

        assert [category.id for category in categories] == list(range(1, 9))
        assert all(not category.is_unlocked for category in categories)
        assert categories[0].nominees["A"] == "Nominee 1A"

    async def test_vote_unique_per_device_and_category(self, pg_store):
        await pg_store.insert_vote(Vote(category_id=1, option="A", identity="device-x"))

        with pytest.raises(UniqueViolation) as exc_info:
            await pg_store.insert_vote(Vote(category_id=1, option="B", identity="device-x"))

        assert exc_info.value.constraint == VOTE_UNIQUE_CONSTRAINT

    async def test_vote_for_missing_category(self, pg_store):
        with pytest.raises(ForeignKeyViolation):
            await pg_store.insert_vote(Vote(category_id=99, option="A", identity="device-x"))

    async def test_vote_option_checked(self, pg_store):
        with pytest.raises(CheckViolation):
            await pg_store.insert_vote(Vote(category_id=1, option="E", identity="device-x"))

    async def test_single_unlocked_index(self, pg_store):
        await pg_store.update_categories({"is_unlocked": True}, 1)

        with pytest.raises(UniqueViolation) as exc_info:
            await pg_store.update_categories({"is_unlocked": True}, 2)

        assert exc_info.value.constraint == SINGLE_UNLOCKED_CONSTRAINT

    async def test_update_missing_category_returns_nothing(self, pg_store):
        assert await pg_store.update_categories({"is_unlocked": False}, 99) == []

    async def test_votes_newest_first(self, pg_store):
        await pg_store.insert_vote(Vote(category_id=1, option="A", identity="device-x"))
        await pg_store.insert_vote(Vote(category_id=2, option="B", identity="device-x"))

        votes = await pg_store.fetch_votes(identity="device-x")

        assert [vote.category_id for vote in votes] == [2, 1]

    async def test_health(self, pg_store):
        assert await pg_store.check_health()


@pytest.mark.docker
@pytest.mark.asyncio
class TestVotingFlow:
    """End-to-end voting flow against PostgreSQL."""

    async def test_unlock_vote_and_tally(self, pg_controller, pg_gateway):
        await pg_controller.unlock(5)
        await pg_controller.unlock(7)

        active = await pg_controller.get_active_category()
        assert active.id == 7

        with pytest.raises(CategoryLocked):
            await pg_gateway.submit_vote(5, "B", "device-x")

        await pg_gateway.submit_vote(7, "B", "device-x")
        with pytest.raises(DuplicateVote):
            await pg_gateway.submit_vote(7, "B", "device-x")

        tally = await pg_gateway.tally(7)
        assert tally.to_dict() == {"A": 0, "B": 1, "C": 0, "D": 0, "total": 1}

    async def test_concurrent_duplicates(self, pg_store, pg_controller, pg_retry):
        await pg_controller.unlock(3)
        gateways = [
            VoteGateway(pg_store, voted_cache=MemoryVotedCache(), retry_policy=pg_retry)
            for _ in range(5)
        ]

        results = await asyncio.gather(
            *(gateway.submit_vote(3, "A", "device-x") for gateway in gateways),
            return_exceptions=True
        )

        assert sum(1 for result in results if not isinstance(result, Exception)) == 1
        assert all(isinstance(r, DuplicateVote) for r in results if isinstance(r, Exception))
        assert len(await pg_store.fetch_votes(category_id=3)) == 1

    async def test_live_view_follows_notifications(self, pg_store, pg_controller, pg_gateway):
        view = LiveViewSynchronizer(pg_store, pg_gateway)
        await view.start()
        assert view.state == SyncState.SUBSCRIBED

        try:
            await pg_controller.unlock(4)
            await wait_for(lambda: view.active_category() is not None and view.active_category().id == 4)

            await pg_gateway.submit_vote(4, "C", "device-y")
            await wait_for(lambda: view.tally_for(4).C == 1)
        finally:
            await view.close()
