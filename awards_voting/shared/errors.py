"""
Error taxonomy for the voting core.

Every error carries a stable ``code``, a human readable ``user_message`` that is
safe to show to participants or the admin, and a ``retryable`` flag consulted by
the retry policy. Business-rule errors are never retried.
"""

from typing import Optional, Dict, Any, List


class VotingError(Exception):
    """Base class for all voting core errors."""

    code = "VOTING_ERROR"
    user_message = "Something went wrong. Please try again."
    retryable = False

    def __init__(self, message: Optional[str] = None, **context: Any):
        super().__init__(message or self.user_message)
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.user_message,
            "details": {key: value for key, value in self.context.items() if value is not None},
        }


class IdentityUnavailable(VotingError):
    code = "DEVICE_ID_ERROR"
    user_message = "Unable to identify your device. Please try again."
    retryable = True


class InvalidOption(VotingError):
    code = "INVALID_OPTION"
    user_message = "Invalid vote option. Must be A, B, C, or D."


class InvalidCategoryId(VotingError):
    code = "INVALID_CATEGORY_ID"
    user_message = "Invalid category ID."


class InvalidCategory(VotingError):
    code = "INVALID_CATEGORY"
    user_message = "This category does not exist."


class CategoryLocked(VotingError):
    code = "CATEGORY_LOCKED"
    user_message = "This category is not currently accepting votes."


class CategoryNotFound(VotingError):
    code = "CATEGORY_NOT_FOUND"
    user_message = "Category not found."


class DuplicateVote(VotingError):
    code = "DUPLICATE_VOTE"
    user_message = "You have already voted for this category."


class UnlockConflict(VotingError):
    code = "UNLOCK_CONFLICT"
    user_message = "Another category was unlocked at the same time. Please try again."


class MultipleActiveCategories(VotingError):
    code = "MULTIPLE_ACTIVE_CATEGORIES"
    user_message = "More than one category is unlocked. Please lock all categories and unlock one."

    def __init__(self, categories: Optional[List[Any]] = None, **context: Any):
        self.categories = list(categories or [])
        context.setdefault("category_ids", [category.id for category in self.categories])
        super().__init__(**context)


class ConnectionFailure(VotingError):
    code = "CONNECTION_ERROR"
    user_message = "Unable to reach the voting service. Please check your connection and try again."
    retryable = True


NON_RETRYABLE_ERRORS = (
    InvalidOption,
    InvalidCategoryId,
    InvalidCategory,
    CategoryLocked,
    CategoryNotFound,
    DuplicateVote,
    UnlockConflict,
    MultipleActiveCategories,
)
