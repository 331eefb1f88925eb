"""Pydantic schemas for trade proposals."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel

from ..db.schemas import ProposalStatus
from ..threads.schemas import ThreadResponse


class ProposalDecision(str, Enum):
    """Requester's answer to a proposal."""

    ACCEPT = "accept"
    DECLINE = "decline"


class ProposalResponse(BaseModel):
    """Schema for proposal responses."""

    id: str
    thread_id: str
    sender_id: str
    offered_listing_id: str
    requested_listing_id: str
    proposal_status: ProposalStatus
    created_at: datetime

    @classmethod
    def from_model(cls, message) -> "ProposalResponse":
        return cls(
            id=message.id,
            thread_id=message.thread_id,
            sender_id=message.sender_id,
            offered_listing_id=message.offered_listing_id,
            requested_listing_id=message.requested_listing_id,
            proposal_status=ProposalStatus(message.proposal_status),
            created_at=message.created_at,
        )


class ProposalResult(BaseModel):
    """A proposal after the requester answered it, with its thread."""

    proposal: ProposalResponse
    thread: ThreadResponse
