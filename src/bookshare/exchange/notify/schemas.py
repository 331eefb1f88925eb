"""Pydantic schemas for notification events."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class EventKind(str, Enum):
    """Kinds of events the engine emits."""

    BOOK_REQUESTED = "book_requested"
    REQUEST_DECISION = "request_decision"
    NEW_MESSAGE = "new_message"
    TRADE_PROPOSAL = "trade_proposal"
    LOAN_OFFERED = "loan_offered"
    REQUEST_CANCELLED = "request_cancelled"
    PROPOSAL_RESPONSE = "proposal_response"
    EXCHANGE_COMPLETED = "exchange_completed"


class NotificationEvent(BaseModel):
    """A single notification for one recipient."""

    kind: EventKind
    recipient_user_id: str
    payload: dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}
