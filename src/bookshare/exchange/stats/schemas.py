"""Pydantic schemas for exchange statistics."""

from enum import Enum

from pydantic import BaseModel


class StatCounter(str, Enum):
    """Counters kept on a user profile."""

    BOOKS_GIVEN = "books_given"
    BOOKS_RECEIVED = "books_received"
    BOOKS_LOANED = "books_loaned"
    BOOKS_BORROWED = "books_borrowed"
    BOOKS_TRADED = "books_traded"
    BOOKSHARES = "bookshares"


class UserStatsResponse(BaseModel):
    """Schema for user statistics."""

    user_id: str
    books_given: int = 0
    books_received: int = 0
    books_loaned: int = 0
    books_borrowed: int = 0
    books_traded: int = 0
    bookshares: int = 0

    model_config = {"from_attributes": True}
