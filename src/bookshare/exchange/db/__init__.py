"""Database module for the exchange store."""

from .models import Base, Listing, Message, MessageThread
from .schemas import (
    ListingStatus,
    LoanPreset,
    MessageType,
    Modality,
    ParticipantRole,
    ProposalStatus,
    ResolutionOutcome,
    SystemMessageType,
    ThreadStatus,
)
from .sqlite import Database, get_db, reset_db

__all__ = [
    "Base",
    "Listing",
    "Message",
    "MessageThread",
    "ListingStatus",
    "LoanPreset",
    "MessageType",
    "Modality",
    "ParticipantRole",
    "ProposalStatus",
    "ResolutionOutcome",
    "SystemMessageType",
    "ThreadStatus",
    "Database",
    "get_db",
    "reset_db",
]
