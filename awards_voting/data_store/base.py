"""
Data store contract used by the voting core.

The store is the single source of truth. It enforces:
- one vote per (category_id, identity)
- at most one unlocked category
- vote -> category referential integrity
- the A-D domain of vote options

and emits change notifications for the categories and votes tables.
"""

from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from ..shared.models import Category, ChangeEvent, Vote

CATEGORIES_TABLE = "categories"
VOTES_TABLE = "votes"

# Constraint names shared by every store implementation
VOTE_UNIQUE_CONSTRAINT = "votes_category_id_device_id_key"
SINGLE_UNLOCKED_CONSTRAINT = "idx_single_unlocked"


class StoreError(Exception):
    """Generic, transient data store failure."""

    retryable = True


class StoreUnavailable(StoreError):
    """The store could not be reached or the connection dropped."""


class ConstraintViolation(StoreError):
    """A schema-level constraint rejected the write."""

    retryable = False

    def __init__(self, message: str, constraint: Optional[str] = None):
        super().__init__(message)
        self.constraint = constraint


class UniqueViolation(ConstraintViolation):
    pass


class ForeignKeyViolation(ConstraintViolation):
    pass


class CheckViolation(ConstraintViolation):
    pass


class RecordNotFound(StoreError):
    retryable = False


class SubscriptionStatus(str, Enum):
    """Lifecycle states reported by a change subscription."""
    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    CLOSED = "CLOSED"
    TIMED_OUT = "TIMED_OUT"


EventCallback = Callable[[ChangeEvent], None]
StatusCallback = Callable[[SubscriptionStatus, Optional[Exception]], None]


class Subscription(ABC):
    """Handle for a live change subscription."""

    @property
    @abstractmethod
    def active(self) -> bool:
        """True until the subscription is closed or fails."""

    @abstractmethod
    async def unsubscribe(self) -> None:
        """Stop delivery. Safe to call more than once."""


class DataStore(ABC):
    """Asynchronous data store used by the gateway, controller and synchronizer."""

    @abstractmethod
    async def fetch_categories(self, unlocked: Optional[bool] = None) -> List[Category]:
        """Fetch categories ordered by id, optionally filtered on the unlocked flag."""

    @abstractmethod
    async def fetch_category(self, category_id: int) -> Optional[Category]:
        """Fetch a single category, or None when it does not exist."""

    @abstractmethod
    async def fetch_votes(
        self,
        category_id: Optional[int] = None,
        identity: Optional[str] = None
    ) -> List[Vote]:
        """Fetch votes matching the given filters, newest first."""

    @abstractmethod
    async def find_vote(self, category_id: int, identity: str) -> Optional[Vote]:
        """Fetch the vote for (category_id, identity), or None."""

    @abstractmethod
    async def insert_vote(self, vote: Vote) -> Vote:
        """
        Insert a vote and return the persisted row.

        Raises:
            UniqueViolation: identity already voted in the category
            ForeignKeyViolation: category does not exist
            CheckViolation: option outside A-D
        """

    @abstractmethod
    async def update_categories(
        self,
        values: Dict[str, Any],
        category_id: Optional[int] = None
    ) -> List[Category]:
        """
        Update one category (or every category when category_id is None).

        Returns:
            The updated rows; empty when category_id matched nothing.

        Raises:
            UniqueViolation: the update would leave two categories unlocked
        """

    @abstractmethod
    async def subscribe(
        self,
        table: str,
        on_event: EventCallback,
        on_status: StatusCallback
    ) -> Subscription:
        """
        Subscribe to INSERT/UPDATE notifications on ``table``.

        ``on_status`` receives SUBSCRIBED once delivery is live and
        CHANNEL_ERROR / TIMED_OUT / CLOSED afterwards.

        Raises:
            StoreUnavailable: the subscription could not be established
        """

    async def check_health(self) -> bool:
        """Return True when the store answers a trivial query."""
        try:
            await self.fetch_categories()
            return True
        except StoreError:
            return False

    async def close(self) -> None:
        """Release connections."""
