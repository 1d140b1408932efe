"""
Shared data models for the awards night voting system.

This module contains:
- Category: an award category with its four nominees
- Vote: an immutable ballot for one category
- Tally: per-option counts derived from votes
- ChangeEvent: a change notification emitted by the data store
- Validation helpers used by the gateway and the controller
"""

import uuid
from dataclasses import dataclass, asdict, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List

from pydantic import TypeAdapter


class VoteOption(str, Enum):
    """Valid vote options (one per nominee slot)."""
    A = "A"
    B = "B"
    C = "C"
    D = "D"


VOTE_OPTIONS = tuple(option.value for option in VoteOption)


class ChangeType(str, Enum):
    """Kind of row change carried by a notification."""
    INSERT = "INSERT"
    UPDATE = "UPDATE"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Category:
    """
    An award category.

    Attributes:
        id: Stable positive identifier
        title: Display title
        nominees: Mapping of option key (A-D) to nominee name
        is_unlocked: Whether the category currently accepts votes
        updated_at: Time of the last store-side change
    """
    id: int
    title: str
    nominees: Dict[str, str]
    is_unlocked: bool = False
    updated_at: Optional[datetime] = None

    def validate(self) -> tuple[bool, Optional[str]]:
        """
        Validate category data.

        Returns:
            tuple: (is_valid, error_message)
        """
        if not is_valid_category_id(self.id):
            return False, "Category ID must be a positive integer"

        if not self.title or not self.title.strip():
            return False, "Category title is required"

        if sorted(self.nominees.keys()) != list(VOTE_OPTIONS):
            return False, "Category must have exactly four nominees keyed A, B, C and D"

        return True, None

    def merge(self, changes: Dict[str, Any]) -> 'Category':
        """Return a copy with the known fields from ``changes`` applied."""
        known = {
            key: value for key, value in changes.items()
            if key in ('title', 'nominees', 'is_unlocked', 'updated_at')
        }
        return replace(self, **known)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data['updated_at'] = self.updated_at.isoformat() if self.updated_at else None
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Category':
        """Create Category from a store row or a notification payload."""
        updated_at = data.get('updated_at')
        if isinstance(updated_at, str):
            updated_at = parse_timestamp(updated_at)
        unlocked = data.get('is_unlocked', data.get('unlocked', False))
        return cls(
            id=int(data['id']),
            title=data['title'],
            nominees=dict(data['nominees']),
            is_unlocked=bool(unlocked),
            updated_at=updated_at,
        )


@dataclass(frozen=True)
class Vote:
    """
    A single ballot.

    Attributes:
        id: Globally unique identifier
        category_id: Category voted in
        option: Chosen option key (A-D)
        identity: Primary device fingerprint of the voter
        submitted_at: Creation time
        browser_fingerprint: Secondary characteristic hash (diagnostic only)
        session_id: Session token (diagnostic only)
        user_agent: Reported user agent (diagnostic only)
    """
    category_id: int
    option: str
    identity: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    submitted_at: datetime = field(default_factory=utcnow)
    browser_fingerprint: Optional[str] = None
    session_id: Optional[str] = None
    user_agent: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data['submitted_at'] = self.submitted_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Vote':
        """Create Vote from a store row or a notification payload."""
        submitted_at = data.get('submitted_at') or data.get('timestamp')
        if isinstance(submitted_at, str):
            submitted_at = parse_timestamp(submitted_at)
        return cls(
            id=str(data['id']),
            category_id=int(data['category_id']),
            option=data['option'],
            identity=data.get('identity') or data['device_id'],
            submitted_at=submitted_at or utcnow(),
            browser_fingerprint=data.get('browser_fingerprint'),
            session_id=data.get('session_id'),
            user_agent=data.get('user_agent'),
        )


@dataclass
class Tally:
    """Vote counts for one category, always derived from the stored votes."""
    category_id: int
    A: int = 0
    B: int = 0
    C: int = 0
    D: int = 0

    @property
    def total(self) -> int:
        return self.A + self.B + self.C + self.D

    def __getitem__(self, option: str) -> int:
        if option == 'total':
            return self.total
        if option not in VOTE_OPTIONS:
            raise KeyError(option)
        return getattr(self, option)

    def winners(self) -> List[str]:
        """Options sharing the highest count; empty while nobody has voted."""
        if self.total == 0:
            return []
        best = max(self[option] for option in VOTE_OPTIONS)
        return [option for option in VOTE_OPTIONS if self[option] == best]

    def to_dict(self) -> Dict[str, int]:
        counts = {option: self[option] for option in VOTE_OPTIONS}
        counts['total'] = self.total
        return counts

    @classmethod
    def zero(cls, category_id: int) -> 'Tally':
        return cls(category_id=category_id)

    @classmethod
    def from_votes(cls, category_id: int, votes) -> 'Tally':
        """Count votes for ``category_id``; foreign or unknown options are ignored."""
        tally = cls(category_id=category_id)
        for vote in votes:
            if vote.category_id != category_id or vote.option not in VOTE_OPTIONS:
                continue
            setattr(tally, vote.option, getattr(tally, vote.option) + 1)
        return tally


@dataclass(frozen=True)
class ChangeEvent:
    """
    Change notification delivered by a data store subscription.

    Attributes:
        table: Collection that changed (categories or votes)
        type: INSERT or UPDATE
        new: Row after the change
        old: Row before the change (empty for inserts)
    """
    table: str
    type: ChangeType
    new: Dict[str, Any]
    old: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ChangeEvent':
        return cls(
            table=data['table'],
            type=ChangeType(data['type']),
            new=data.get('new') or {},
            old=data.get('old') or {},
        )


def is_valid_category_id(category_id: Any) -> bool:
    """
    Validate category ID format.

    Args:
        category_id: Value to validate

    Returns:
        bool: True for a positive int (bool is rejected)
    """
    return isinstance(category_id, int) and not isinstance(category_id, bool) and category_id > 0


def validate_vote_option(option: Any) -> bool:
    """
    Validate vote option.

    Args:
        option: Option key to validate

    Returns:
        bool: True if the option is one of A, B, C or D
    """
    return isinstance(option, str) and option in VOTE_OPTIONS


_timestamp_adapter = TypeAdapter(datetime)


def parse_timestamp(value: str) -> datetime:
    """
    Parse an ISO timestamp, treating naive values as UTC.

    PostgreSQL's row_to_json trims trailing zeros from fractional seconds
    (e.g. ``20:15:00.12345+00:00``), so any fraction length is accepted.

    Raises:
        ValueError: the value is not a timestamp
    """
    parsed = _timestamp_adapter.validate_python(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
