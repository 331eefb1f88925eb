"""Pydantic schemas for listings."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from ..db.schemas import ListingStatus, LoanPreset, Modality


class AgreedExchange(BaseModel):
    """The paired listing a trade was agreed against."""

    counterparty_user_id: str
    counterparty_listing_id: str


class ListingCreate(BaseModel):
    """Schema for creating a listing."""

    owner_id: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1, max_length=500)
    author: Optional[str] = Field(None, max_length=500)
    modality: Modality
    loan_duration_days: Optional[int] = None

    @model_validator(mode="after")
    def check_loan_duration(self):
        """Loan duration is only meaningful for loans and must be a preset."""
        if self.loan_duration_days is None:
            return self
        if self.modality != Modality.LOAN:
            raise ValueError("loan_duration_days is only allowed for loan listings")
        if self.loan_duration_days not in {p.value for p in LoanPreset}:
            raise ValueError("loan_duration_days must be 30, 60 or 90")
        return self


class ListingResponse(BaseModel):
    """Schema for listing responses."""

    id: str
    owner_id: str
    title: str
    author: Optional[str]
    modality: Modality
    loan_duration_days: Optional[int]
    status: ListingStatus
    agreed_exchange: Optional[AgreedExchange] = None
    given_to: Optional[str] = None
    archived_at: Optional[datetime] = None
    created_at: datetime

    @classmethod
    def from_model(cls, listing) -> "ListingResponse":
        exchange = listing.get_agreed_exchange()
        return cls(
            id=listing.id,
            owner_id=listing.owner_id,
            title=listing.title,
            author=listing.author,
            modality=Modality(listing.modality),
            loan_duration_days=listing.loan_duration_days,
            status=ListingStatus(listing.status),
            agreed_exchange=AgreedExchange(**exchange) if exchange else None,
            given_to=listing.given_to,
            archived_at=listing.archived_at,
            created_at=listing.created_at,
        )
