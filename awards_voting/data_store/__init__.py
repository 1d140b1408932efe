"""Data store contract and implementations."""

from .base import (
    CATEGORIES_TABLE,
    VOTES_TABLE,
    VOTE_UNIQUE_CONSTRAINT,
    SINGLE_UNLOCKED_CONSTRAINT,
    DataStore,
    Subscription,
    SubscriptionStatus,
    StoreError,
    StoreUnavailable,
    ConstraintViolation,
    UniqueViolation,
    ForeignKeyViolation,
    CheckViolation,
    RecordNotFound,
)
from .memory import MemoryDataStore

__all__ = [
    'CATEGORIES_TABLE',
    'VOTES_TABLE',
    'VOTE_UNIQUE_CONSTRAINT',
    'SINGLE_UNLOCKED_CONSTRAINT',
    'DataStore',
    'Subscription',
    'SubscriptionStatus',
    'StoreError',
    'StoreUnavailable',
    'ConstraintViolation',
    'UniqueViolation',
    'ForeignKeyViolation',
    'CheckViolation',
    'RecordNotFound',
    'MemoryDataStore',
]
