"""Pydantic schemas for completion results."""

from typing import Optional

from pydantic import BaseModel

from ..db.schemas import ListingStatus, ParticipantRole, ResolutionOutcome
from ..threads.schemas import ThreadResponse


class CompletionResult(BaseModel):
    """Outcome of one side confirming a hand-off or a loan return.

    ``both_completed`` is False while the other party has yet to confirm and
    True once the exchange is resolved.
    """

    thread_id: str
    actor_role: ParticipantRole
    both_completed: bool
    outcome: Optional[ResolutionOutcome] = None
    listing_status: ListingStatus
    thread: ThreadResponse
