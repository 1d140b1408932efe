"""Pydantic models for request/response validation."""
from datetime import datetime
from typing import Dict, List, Literal, Optional, Any

from pydantic import BaseModel, Field, field_validator

from ..shared.models import Category, Tally, Vote


class VoteRequest(BaseModel):
    """Vote submission request model."""

    category_id: int = Field(..., description="Category being voted in")
    option: str = Field(..., description="Vote option: A, B, C or D")
    device_id: Optional[str] = Field(default=None, description="Device fingerprint computed on the client")
    browser_fingerprint: Optional[str] = Field(
        default=None,
        description="Characteristic hash computed on the client, used when no characteristics are sent"
    )
    characteristics: Dict[str, Any] = Field(default_factory=dict, description="Browser characteristics")
    session_id: Optional[str] = Field(default=None, description="Client session token")
    user_agent: Optional[str] = Field(default=None, description="Client user agent")

    @field_validator("option")
    @classmethod
    def normalize_option(cls, v):
        """Accept lower case option keys."""
        return v.strip().upper()

    model_config = {
        "json_schema_extra": {
            "example": {
                "category_id": 5,
                "option": "B",
                "device_id": "8f14e45fceea167a5a36dedd4bea2543",
                "characteristics": {"userAgent": "Mozilla/5.0", "language": "en-US"},
                "session_id": "session_1760828700000_k3j9x0a2b"
            }
        }
    }


class CategoryResponse(BaseModel):
    """Category model."""

    id: int
    title: str
    nominees: Dict[str, str]
    is_unlocked: bool
    updated_at: Optional[datetime] = None

    @classmethod
    def from_category(cls, category: Category) -> 'CategoryResponse':
        return cls(
            id=category.id,
            title=category.title,
            nominees=category.nominees,
            is_unlocked=category.is_unlocked,
            updated_at=category.updated_at,
        )


class ActiveCategoryResponse(BaseModel):
    """Currently unlocked category, or null while participants wait."""

    category: Optional[CategoryResponse] = None
    consistency_warning: bool = Field(
        default=False,
        description="True when more than one category was found unlocked"
    )


class TallyResponse(BaseModel):
    """Vote counts for one category."""

    category_id: int
    A: int
    B: int
    C: int
    D: int
    total: int
    winners: List[str] = Field(default_factory=list)

    @classmethod
    def from_tally(cls, tally: Tally) -> 'TallyResponse':
        return cls(category_id=tally.category_id, winners=tally.winners(), **tally.to_dict())


class VoteResponse(BaseModel):
    """Vote submission response model."""

    id: str
    category_id: int
    option: str
    submitted_at: datetime
    message: str = "Vote submitted successfully"

    @classmethod
    def from_vote(cls, vote: Vote) -> 'VoteResponse':
        return cls(
            id=vote.id,
            category_id=vote.category_id,
            option=vote.option,
            submitted_at=vote.submitted_at,
        )


class AdminCategoryResponse(BaseModel):
    """Category with its live tally, for the admin board."""

    category: CategoryResponse
    tally: TallyResponse


class AdminBoardResponse(BaseModel):
    """All categories with tallies and the grand total."""

    categories: List[AdminCategoryResponse]
    total_votes: int


class HealthResponse(BaseModel):
    """Health check response model."""

    status: Literal["healthy", "unhealthy"] = Field(..., description="Overall health status")
    services: dict = Field(..., description="Status of individual services")
    timestamp: datetime = Field(..., description="Health check timestamp")


class ErrorResponse(BaseModel):
    """Error response model."""

    error: str = Field(..., description="Error code")
    message: str = Field(..., description="Human readable message")
    details: dict = Field(default_factory=dict, description="Additional error details")
