"""
Participant voting session.

Owns everything that belongs to one participant: the resolved identity, the
set of categories already voted in and the live view of the active category.
Created with explicit start() and close() calls; nothing is kept at module level.
"""

import logging
from typing import Optional, Set

from .data_store.base import DataStore
from .identity.resolver import Identity, IdentityResolver
from .live_sync.synchronizer import LiveViewSynchronizer, UpdateCallback
from .shared.errors import CategoryLocked, DuplicateVote, IdentityUnavailable
from .shared.models import Category, Vote
from .vote_gateway.gateway import VoteGateway

logger = logging.getLogger(__name__)


class VotingSession:
    """One participant's voting session."""

    def __init__(
        self,
        store: DataStore,
        resolver: IdentityResolver,
        gateway: Optional[VoteGateway] = None,
        on_update: Optional[UpdateCallback] = None
    ):
        self.store = store
        self.resolver = resolver
        self.gateway = gateway or VoteGateway(store)
        self.view = LiveViewSynchronizer(store, self.gateway, on_update=on_update)
        self.voted_categories: Set[int] = set()
        self.identity: Optional[Identity] = None

    async def start(self) -> None:
        """Resolve the identity, load voting history and start the live view."""
        self.identity = await self.resolver.resolve_identity()

        votes = await self.gateway.get_user_votes(self.identity.device_id)
        self.voted_categories = {vote.category_id for vote in votes}
        logger.info(
            f"Session started for {self.identity.device_id}: "
            f"{len(self.voted_categories)} categories already voted"
        )

        await self.view.start()

    def active_category(self) -> Optional[Category]:
        return self.view.active_category()

    def has_voted(self, category_id: int) -> bool:
        return category_id in self.voted_categories

    async def vote(self, option: str) -> Vote:
        """
        Vote in the currently active category.

        Raises:
            IdentityUnavailable: the session has no identity yet
            CategoryLocked: no category is currently unlocked
            DuplicateVote: already voted in the active category
        """
        if self.identity is None:
            raise IdentityUnavailable()

        category = self.active_category()
        if category is None:
            raise CategoryLocked()

        try:
            vote = await self.gateway.submit_vote(
                category.id,
                option,
                self.identity.device_id,
                browser_fingerprint=self.identity.browser_fingerprint,
                session_id=self.identity.session_id,
                user_agent=self.identity.user_agent,
            )
        except DuplicateVote:
            self.voted_categories.add(category.id)
            raise

        self.voted_categories.add(category.id)
        return vote

    async def close(self) -> None:
        """Stop the live view; safe to call more than once."""
        await self.view.close()
        logger.info("Voting session closed")
