"""
Vote store gateway.

Coordinates vote submission against the data store:
- optimistic duplicate check against the local voted cache
- option and category validation
- authoritative insert, with constraint violations translated into the
  error taxonomy

The category check and the insert are deliberately not one transaction; the
store's (category_id, identity) unique constraint is the final arbiter.
"""

import logging
from typing import List, Optional

from prometheus_client import Counter, Histogram

from ..data_store.base import (
    CheckViolation,
    DataStore,
    ForeignKeyViolation,
    UniqueViolation,
)
from ..shared.errors import (
    CategoryLocked,
    CategoryNotFound,
    DuplicateVote,
    InvalidCategory,
    InvalidOption,
    VotingError,
)
from ..shared.models import Tally, Vote, utcnow, validate_vote_option
from ..shared.retry import RetryPolicy
from .voted_cache import MemoryVotedCache, VotedCache

logger = logging.getLogger(__name__)

votes_submitted = Counter(
    'votes_submitted_total',
    'Total number of votes accepted',
    ['category_id', 'option']
)

votes_rejected = Counter(
    'votes_rejected_total',
    'Total number of rejected vote submissions',
    ['reason']
)

duplicate_attempts = Counter(
    'duplicate_attempts_total',
    'Duplicate vote attempts',
    ['detected_by']
)

submission_latency = Histogram(
    'vote_submission_latency_seconds',
    'Time spent submitting a vote',
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0]
)


class VoteGateway:
    """Vote submission, duplicate checks and tallies on top of a DataStore."""

    def __init__(
        self,
        store: DataStore,
        voted_cache: Optional[VotedCache] = None,
        retry_policy: Optional[RetryPolicy] = None
    ):
        self.store = store
        self.voted_cache = voted_cache or MemoryVotedCache()
        self.retry = retry_policy or RetryPolicy()

    async def submit_vote(
        self,
        category_id: int,
        option: str,
        identity: str,
        browser_fingerprint: Optional[str] = None,
        session_id: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> Vote:
        """
        Submit a vote for a category.

        Args:
            category_id: Category being voted in
            option: Option key (A, B, C or D)
            identity: Primary device fingerprint
            browser_fingerprint: Diagnostic characteristic hash
            session_id: Diagnostic session token
            user_agent: Diagnostic user agent

        Returns:
            Vote: the persisted vote

        Raises:
            DuplicateVote: identity already voted in this category
            InvalidOption: option outside A-D
            CategoryNotFound: category does not exist
            CategoryLocked: category is not accepting votes
            InvalidCategory: category vanished between check and insert
            ConnectionFailure: store unreachable after retries
        """
        with submission_latency.time():
            try:
                vote = await self._submit(
                    category_id, option, identity,
                    browser_fingerprint, session_id, user_agent
                )
            except VotingError as e:
                votes_rejected.labels(reason=e.code).inc()
                logger.error(
                    f"Vote submission failed: code={e.code}, category_id={category_id}, "
                    f"option={option}, identity={identity}, at={utcnow().isoformat()}"
                )
                raise

        votes_submitted.labels(category_id=str(category_id), option=option).inc()
        logger.info(
            f"Vote submitted successfully: category_id={category_id}, "
            f"option={option}, vote_id={vote.id}"
        )
        return vote

    async def _submit(self, category_id, option, identity,
                      browser_fingerprint, session_id, user_agent) -> Vote:
        # Step 1: optimistic duplicate check, no store round trip
        if await self.voted_cache.has_voted(category_id, identity):
            duplicate_attempts.labels(detected_by='cache').inc()
            raise DuplicateVote(category_id=category_id, identity=identity)

        # Step 2: option domain
        if not validate_vote_option(option):
            raise InvalidOption(category_id=category_id, option=option)

        # Step 3: category must exist and be unlocked
        category = await self.retry.run(
            lambda: self.store.fetch_category(category_id),
            description='fetch_category',
            category_id=category_id
        )
        if category is None:
            raise CategoryNotFound(category_id=category_id)
        if not category.is_unlocked:
            raise CategoryLocked(category_id=category_id)

        # Step 4: authoritative insert
        vote = Vote(
            category_id=category_id,
            option=option,
            identity=identity,
            browser_fingerprint=browser_fingerprint,
            session_id=session_id,
            user_agent=user_agent,
        )
        try:
            stored = await self.retry.run(
                lambda: self.store.insert_vote(vote),
                description='insert_vote',
                category_id=category_id
            )
        except UniqueViolation as e:
            duplicate_attempts.labels(detected_by='store').inc()
            await self.voted_cache.mark_as_voted(category_id, identity)
            raise DuplicateVote(category_id=category_id, identity=identity) from e
        except ForeignKeyViolation as e:
            raise InvalidCategory(category_id=category_id) from e
        except CheckViolation as e:
            raise InvalidOption(category_id=category_id, option=option) from e

        # Step 5: remember locally
        await self.voted_cache.mark_as_voted(category_id, identity)
        return stored

    async def has_voted(self, category_id: int, identity: str) -> bool:
        """
        Check whether an identity has voted in a category.

        The local cache answers first; otherwise the store is queried. A store
        failure answers False so the participant may still attempt to vote,
        the insert constraint will catch a real duplicate.
        """
        if await self.voted_cache.has_voted(category_id, identity):
            return True

        try:
            vote = await self.retry.run(
                lambda: self.store.find_vote(category_id, identity),
                description='find_vote',
                category_id=category_id
            )
        except VotingError as e:
            logger.error(
                f"Failed to check vote status: category_id={category_id}, "
                f"identity={identity}, error={e}"
            )
            return False

        if vote is not None:
            await self.voted_cache.mark_as_voted(category_id, identity)
            return True
        return False

    async def get_user_votes(self, identity: str) -> List[Vote]:
        """
        Fetch every vote cast by an identity, newest first.

        Primes the voted cache so later optimistic checks short-circuit.
        Returns an empty list when the store cannot be reached.
        """
        try:
            votes = await self.retry.run(
                lambda: self.store.fetch_votes(identity=identity),
                description='fetch_user_votes'
            )
        except VotingError as e:
            logger.error(f"Failed to fetch votes for identity={identity}: {e}")
            return []

        for vote in votes:
            await self.voted_cache.mark_as_voted(vote.category_id, identity)
        return votes

    async def tally(self, category_id: int) -> Tally:
        """
        Recompute vote counts for a category from the stored votes.

        Never raises: any failure yields a zero tally so result displays keep working.
        """
        try:
            votes = await self.retry.run(
                lambda: self.store.fetch_votes(category_id=category_id),
                description='fetch_votes',
                category_id=category_id
            )
        except Exception as e:
            logger.error(
                f"Failed to fetch vote counts: category_id={category_id}, "
                f"at={utcnow().isoformat()}, error={e!r}"
            )
            return Tally.zero(category_id)

        return Tally.from_votes(category_id, votes)
