"""
Category unlock controller.

Keeps at most one category unlocked with a two-phase update: lock every
category, then unlock the target. Observers briefly see no active category
between the two phases; they never see two.
"""

import logging
from typing import List, Optional, Tuple

from prometheus_client import Counter

from ..data_store.base import DataStore, UniqueViolation
from ..shared.errors import (
    CategoryNotFound,
    InvalidCategoryId,
    MultipleActiveCategories,
    UnlockConflict,
    VotingError,
)
from ..shared.models import Category, Tally, is_valid_category_id, utcnow
from ..shared.retry import RetryPolicy
from ..vote_gateway.gateway import VoteGateway

logger = logging.getLogger(__name__)

category_operations = Counter(
    'category_operations_total',
    'Admin category operations',
    ['operation', 'status']
)

consistency_anomalies = Counter(
    'category_consistency_anomalies_total',
    'Times more than one unlocked category was observed'
)


class UnlockController:
    """Admin-side control of which category accepts votes."""

    def __init__(
        self,
        store: DataStore,
        gateway: Optional[VoteGateway] = None,
        retry_policy: Optional[RetryPolicy] = None
    ):
        self.store = store
        self.retry = retry_policy or RetryPolicy()
        self.gateway = gateway or VoteGateway(store, retry_policy=self.retry)

    @staticmethod
    def _validate_id(category_id) -> None:
        if not is_valid_category_id(category_id):
            logger.error(f"Invalid category ID provided: {category_id!r}")
            raise InvalidCategoryId(category_id=category_id)

    async def unlock(self, category_id: int) -> Category:
        """
        Unlock a category, locking every other one first.

        Args:
            category_id: Category to unlock

        Returns:
            Category: the unlocked category

        Raises:
            InvalidCategoryId: id is not a positive integer (no store call made)
            CategoryNotFound: no category with this id
            UnlockConflict: a concurrent unlock won the race
            ConnectionFailure: store unreachable after retries
        """
        self._validate_id(category_id)
        try:
            category = await self._unlock(category_id)
        except VotingError as e:
            category_operations.labels(operation='unlock', status=e.code).inc()
            logger.error(
                f"Failed to unlock category: code={e.code}, category_id={category_id}, "
                f"at={utcnow().isoformat()}"
            )
            raise

        category_operations.labels(operation='unlock', status='success').inc()
        logger.info(f"Category unlocked successfully: category_id={category_id}, title={category.title}")
        return category

    async def _unlock(self, category_id: int) -> Category:
        existing = await self.retry.run(
            lambda: self.store.fetch_category(category_id),
            description='fetch_category',
            category_id=category_id
        )
        if existing is None:
            raise CategoryNotFound(category_id=category_id)

        # Phase 1: lock everything
        await self.retry.run(
            lambda: self.store.update_categories({'is_unlocked': False}),
            description='lock_all_categories',
            category_id=category_id
        )

        # Phase 2: unlock the target
        try:
            updated = await self.retry.run(
                lambda: self.store.update_categories({'is_unlocked': True}, category_id),
                description='unlock_category',
                category_id=category_id
            )
        except UniqueViolation as e:
            raise UnlockConflict(category_id=category_id) from e

        if not updated:
            raise CategoryNotFound(category_id=category_id)
        return updated[0]

    async def lock(self, category_id: int) -> Category:
        """
        Lock a category. Locking an already locked category is not an error.

        Raises:
            InvalidCategoryId: id is not a positive integer
            CategoryNotFound: no category with this id
        """
        self._validate_id(category_id)
        try:
            updated = await self.retry.run(
                lambda: self.store.update_categories({'is_unlocked': False}, category_id),
                description='lock_category',
                category_id=category_id
            )
            if not updated:
                raise CategoryNotFound(category_id=category_id)
        except VotingError as e:
            category_operations.labels(operation='lock', status=e.code).inc()
            logger.error(
                f"Failed to lock category: code={e.code}, category_id={category_id}, "
                f"at={utcnow().isoformat()}"
            )
            raise

        category_operations.labels(operation='lock', status='success').inc()
        logger.info(f"Category locked successfully: category_id={category_id}, title={updated[0].title}")
        return updated[0]

    async def lock_all(self) -> List[Category]:
        """Lock every category."""
        updated = await self.retry.run(
            lambda: self.store.update_categories({'is_unlocked': False}),
            description='lock_all_categories'
        )
        category_operations.labels(operation='lock_all', status='success').inc()
        logger.info("All categories locked successfully")
        return updated

    async def get_active_category(self, strict: bool = True) -> Optional[Category]:
        """
        Return the single unlocked category, or None.

        Args:
            strict: raise on an invariant violation instead of falling back

        Raises:
            MultipleActiveCategories: the store reports more than one unlocked
                category (only when ``strict``)
        """
        unlocked = await self.retry.run(
            lambda: self.store.fetch_categories(unlocked=True),
            description='fetch_active_category'
        )
        if not unlocked:
            return None
        if len(unlocked) > 1:
            consistency_anomalies.inc()
            ids = [category.id for category in unlocked]
            logger.error(
                f"Consistency error: {len(unlocked)} categories unlocked {ids} "
                f"at={utcnow().isoformat()}"
            )
            if strict:
                raise MultipleActiveCategories(unlocked)
        return unlocked[0]

    async def get_all_categories_with_tallies(self) -> List[Tuple[Category, Tally]]:
        """All categories ordered by id, each with its current tally."""
        categories = await self.retry.run(
            lambda: self.store.fetch_categories(),
            description='fetch_categories'
        )
        return [(category, await self.gateway.tally(category.id)) for category in categories]
