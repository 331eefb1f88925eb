"""Pydantic schemas for interests."""

from datetime import datetime

from pydantic import BaseModel, Field


class Interest(BaseModel):
    """A user's open request for a listing.

    Derived from the underlying thread; the id is the thread id.
    """

    id: str
    listing_id: str
    interested_user_id: str
    owner_id: str
    created_at: datetime
    has_pending_proposal: bool = False


class InterestSummary(BaseModel):
    """Badge counts for an owner's open requests."""

    total_count: int = 0
    unique_people: int = 0
    unique_posts: int = 0
    interests: list[Interest] = Field(default_factory=list)
