"""Unit tests for the participant voting session."""

import pytest

from awards_voting.identity.resolver import IdentityResolver, ReportedFingerprintProvider
from awards_voting.live_sync.synchronizer import SyncState
from awards_voting.session import VotingSession
from awards_voting.shared.errors import CategoryLocked, DuplicateVote, IdentityUnavailable
from awards_voting.vote_gateway.gateway import VoteGateway
from awards_voting.vote_gateway.voted_cache import MemoryVotedCache


@pytest.fixture
def make_session(store, retry_policy):
    """Factory for sessions with their own gateway and voted cache."""
    def _make(device_id="device-x"):
        gateway = VoteGateway(store, voted_cache=MemoryVotedCache(), retry_policy=retry_policy)
        resolver = IdentityResolver(
            ReportedFingerprintProvider(device_id),
            characteristics={"userAgent": "Mozilla/5.0"},
        )
        return VotingSession(store, resolver, gateway=gateway)

    return _make


@pytest.mark.asyncio
class TestVotingSession:
    """Tests for the per-participant session."""

    async def test_start_resolves_identity_and_history(self, controller, gateway, make_session):
        await controller.unlock(1)
        await gateway.submit_vote(1, "A", "device-x")
        session = make_session()

        await session.start()

        assert session.identity.device_id == "device-x"
        assert session.has_voted(1)
        assert not session.has_voted(2)
        assert session.active_category().id == 1
        assert session.view.state == SyncState.SUBSCRIBED
        await session.close()

    async def test_vote_in_active_category(self, controller, make_session, wait_until):
        session = make_session()
        await session.start()
        await controller.unlock(4)
        await wait_until(lambda: session.active_category() is not None)

        vote = await session.vote("C")

        assert vote.category_id == 4
        assert vote.user_agent == "Mozilla/5.0"
        assert session.has_voted(4)
        await wait_until(lambda: session.view.tally_for(4).C == 1)
        await session.close()

    async def test_duplicate_marks_category_voted(self, controller, make_session, wait_until):
        await controller.unlock(4)
        first = make_session()
        await first.start()
        await first.vote("A")
        second = make_session()
        await second.start()
        second.voted_categories.clear()

        with pytest.raises(DuplicateVote):
            await second.vote("B")

        assert second.has_voted(4)
        await first.close()
        await second.close()

    async def test_vote_while_waiting(self, make_session):
        session = make_session()
        await session.start()

        with pytest.raises(CategoryLocked):
            await session.vote("A")

        await session.close()

    async def test_vote_before_start(self, make_session):
        session = make_session()

        with pytest.raises(IdentityUnavailable):
            await session.vote("A")

    async def test_start_without_fingerprint(self, make_session):
        session = make_session(device_id=None)

        with pytest.raises(IdentityUnavailable):
            await session.start()

        assert session.identity is None
