"""
Shared utilities and models for the awards night voting system.

This package contains common code used across all components:
- Data models (Category, Vote, Tally, ChangeEvent, enums)
- Validation functions
- The error taxonomy
"""

from .models import (
    Category,
    Vote,
    Tally,
    ChangeEvent,
    ChangeType,
    VoteOption,
    VOTE_OPTIONS,
    is_valid_category_id,
    validate_vote_option,
    parse_timestamp,
    utcnow,
)
from .errors import (
    VotingError,
    IdentityUnavailable,
    InvalidOption,
    InvalidCategoryId,
    InvalidCategory,
    CategoryLocked,
    CategoryNotFound,
    DuplicateVote,
    UnlockConflict,
    MultipleActiveCategories,
    ConnectionFailure,
    NON_RETRYABLE_ERRORS,
)

__all__ = [
    'Category',
    'Vote',
    'Tally',
    'ChangeEvent',
    'ChangeType',
    'VoteOption',
    'VOTE_OPTIONS',
    'is_valid_category_id',
    'validate_vote_option',
    'parse_timestamp',
    'utcnow',
    'VotingError',
    'IdentityUnavailable',
    'InvalidOption',
    'InvalidCategoryId',
    'InvalidCategory',
    'CategoryLocked',
    'CategoryNotFound',
    'DuplicateVote',
    'UnlockConflict',
    'MultipleActiveCategories',
    'ConnectionFailure',
    'NON_RETRYABLE_ERRORS',
]
