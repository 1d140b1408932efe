"""
In-process data store.

Implements the same constraints and notification semantics as the PostgreSQL
store so the voting core can run without a database (local demos, tests).
Failures can be injected to exercise the retry and reconnection paths.
"""
import asyncio
import logging
from dataclasses import replace
from datetime import timedelta
from typing import Any, Dict, List, Optional, Type

from ..shared.models import (
    Category,
    ChangeEvent,
    ChangeType,
    Vote,
    VOTE_OPTIONS,
    utcnow,
)
from .base import (
    CATEGORIES_TABLE,
    VOTES_TABLE,
    SINGLE_UNLOCKED_CONSTRAINT,
    VOTE_UNIQUE_CONSTRAINT,
    CheckViolation,
    DataStore,
    EventCallback,
    ForeignKeyViolation,
    StatusCallback,
    StoreError,
    StoreUnavailable,
    Subscription,
    SubscriptionStatus,
    UniqueViolation,
)

logger = logging.getLogger(__name__)


class MemorySubscription(Subscription):
    """Subscription handle returned by MemoryDataStore."""

    def __init__(self, store: 'MemoryDataStore', table: str,
                 on_event: EventCallback, on_status: StatusCallback):
        self.store = store
        self.table = table
        self.on_event = on_event
        self.on_status = on_status
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def deliver(self, event: ChangeEvent) -> None:
        if self._active:
            self.on_event(event)

    def fail(self, status: SubscriptionStatus, error: Optional[Exception]) -> None:
        if not self._active:
            return
        self._active = False
        self.store._subscriptions.discard(self)
        self.on_status(status, error)

    async def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self.store._subscriptions.discard(self)
        logger.debug(f"Unsubscribed from {self.table} notifications")


class MemoryDataStore(DataStore):
    """Dictionary-backed store enforcing the voting schema constraints."""

    def __init__(self, categories: Optional[List[Category]] = None):
        self._categories: Dict[int, Category] = {}
        self._votes: List[Vote] = []
        self._subscriptions = set()
        self._pending_failures: List[Exception] = []
        self._subscribe_failures: List[Exception] = []
        self._last_change = utcnow()
        self.calls = 0

        for category in categories or []:
            self.add_category(category)

    # ------------------------------------------------------------------
    # Setup and failure injection
    # ------------------------------------------------------------------

    def add_category(self, category: Category) -> Category:
        stored = replace(category, nominees=dict(category.nominees), updated_at=self._tick())
        self._categories[stored.id] = stored
        return replace(stored)

    def fail_next(self, count: int = 1, error_type: Type[StoreError] = StoreUnavailable) -> None:
        """Make the next ``count`` store calls raise ``error_type``."""
        for _ in range(count):
            self._pending_failures.append(error_type("injected store failure"))

    def fail_next_subscribe(self, count: int = 1) -> None:
        """Make the next ``count`` subscribe calls fail to connect."""
        for _ in range(count):
            self._subscribe_failures.append(StoreUnavailable("injected subscribe failure"))

    def drop_subscriptions(self, status: SubscriptionStatus = SubscriptionStatus.CHANNEL_ERROR) -> None:
        """Simulate a transport failure on every live subscription."""
        error = StoreUnavailable("injected transport failure")
        for subscription in list(self._subscriptions):
            subscription.fail(status, error)

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _enter(self) -> None:
        self.calls += 1
        # Yield so concurrent callers interleave the way network calls would
        await asyncio.sleep(0)
        if self._pending_failures:
            raise self._pending_failures.pop(0)

    def _tick(self):
        now = utcnow()
        if now <= self._last_change:
            now = self._last_change + timedelta(microseconds=1)
        self._last_change = now
        return now

    def _publish(self, table: str, change_type: ChangeType,
                 new: Dict[str, Any], old: Optional[Dict[str, Any]] = None) -> None:
        event = ChangeEvent(table=table, type=change_type, new=new, old=old or {})
        loop = asyncio.get_running_loop()
        for subscription in list(self._subscriptions):
            if subscription.table == table:
                loop.call_soon(subscription.deliver, event)

    # ------------------------------------------------------------------
    # DataStore API
    # ------------------------------------------------------------------

    async def fetch_categories(self, unlocked: Optional[bool] = None) -> List[Category]:
        await self._enter()
        categories = sorted(self._categories.values(), key=lambda c: c.id)
        if unlocked is not None:
            categories = [c for c in categories if c.is_unlocked == unlocked]
        return [replace(c, nominees=dict(c.nominees)) for c in categories]

    async def fetch_category(self, category_id: int) -> Optional[Category]:
        await self._enter()
        category = self._categories.get(category_id)
        return replace(category, nominees=dict(category.nominees)) if category else None

    async def fetch_votes(self, category_id: Optional[int] = None,
                          identity: Optional[str] = None) -> List[Vote]:
        await self._enter()
        votes = [
            vote for vote in self._votes
            if (category_id is None or vote.category_id == category_id)
            and (identity is None or vote.identity == identity)
        ]
        return sorted(votes, key=lambda v: v.submitted_at, reverse=True)

    async def find_vote(self, category_id: int, identity: str) -> Optional[Vote]:
        await self._enter()
        for vote in self._votes:
            if vote.category_id == category_id and vote.identity == identity:
                return vote
        return None

    async def insert_vote(self, vote: Vote) -> Vote:
        await self._enter()
        if vote.option not in VOTE_OPTIONS:
            raise CheckViolation(
                f"option {vote.option!r} violates votes_option_check",
                constraint="votes_option_check"
            )
        if vote.category_id not in self._categories:
            raise ForeignKeyViolation(
                f"category {vote.category_id} is not present in categories",
                constraint="votes_category_id_fkey"
            )
        for existing in self._votes:
            if existing.category_id == vote.category_id and existing.identity == vote.identity:
                raise UniqueViolation(
                    f"duplicate key value violates unique constraint {VOTE_UNIQUE_CONSTRAINT}",
                    constraint=VOTE_UNIQUE_CONSTRAINT
                )

        stored = replace(vote, submitted_at=self._tick())
        self._votes.append(stored)
        self._publish(VOTES_TABLE, ChangeType.INSERT, stored.to_dict())
        return stored

    async def update_categories(self, values: Dict[str, Any],
                                category_id: Optional[int] = None) -> List[Category]:
        await self._enter()
        if category_id is None:
            targets = sorted(self._categories)
        elif category_id in self._categories:
            targets = [category_id]
        else:
            return []

        staged = {
            target: self._categories[target].merge(values)
            for target in targets
        }
        unlocked = {
            cid for cid, category in {**self._categories, **staged}.items()
            if category.is_unlocked
        }
        if len(unlocked) > 1:
            raise UniqueViolation(
                f"duplicate key value violates unique constraint {SINGLE_UNLOCKED_CONSTRAINT}",
                constraint=SINGLE_UNLOCKED_CONSTRAINT
            )

        updated = []
        for target, category in staged.items():
            old = self._categories[target]
            category = replace(category, updated_at=self._tick())
            self._categories[target] = category
            self._publish(CATEGORIES_TABLE, ChangeType.UPDATE, category.to_dict(), old.to_dict())
            updated.append(replace(category, nominees=dict(category.nominees)))
        return updated

    async def subscribe(self, table: str, on_event: EventCallback,
                        on_status: StatusCallback) -> Subscription:
        await asyncio.sleep(0)
        if self._subscribe_failures:
            raise self._subscribe_failures.pop(0)

        subscription = MemorySubscription(self, table, on_event, on_status)
        self._subscriptions.add(subscription)
        on_status(SubscriptionStatus.SUBSCRIBED, None)
        return subscription

    async def close(self) -> None:
        for subscription in list(self._subscriptions):
            subscription.fail(SubscriptionStatus.CLOSED, None)
