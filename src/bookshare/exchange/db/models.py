"""SQLAlchemy ORM models for the exchange store.

Tables:
- listings: Book postings offered as gift, trade or loan
- message_threads: One negotiation per (listing, requester)
- messages: User, system and trade-proposal messages within a thread
"""

import json
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from .schemas import ListingStatus, ParticipantRole, ThreadStatus

if TYPE_CHECKING:
    from ..threads.schemas import ThreadState


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def generate_uuid() -> str:
    """Generate a UUID string for primary keys."""
    return str(uuid4())


def utcnow_iso() -> str:
    """Current UTC time as an ISO string."""
    return datetime.now(timezone.utc).isoformat()


class Listing(Base):
    """A single book posting offered as a gift, trade or loan."""

    __tablename__ = "listings"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    owner_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    # Book
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    author: Mapped[Optional[str]] = mapped_column(String(500))

    # Sharing
    modality: Mapped[str] = mapped_column(String(10), nullable=False, index=True)
    loan_duration_days: Mapped[Optional[int]] = mapped_column(Integer)

    # Lifecycle
    status: Mapped[str] = mapped_column(
        String(20), default=ListingStatus.ACTIVE.value, index=True
    )
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    # Set once a trade is agreed (JSON: counterparty_user_id, counterparty_listing_id)
    agreed_exchange: Mapped[Optional[str]] = mapped_column(Text)
    given_to: Mapped[Optional[str]] = mapped_column(String(36))
    archived_at: Mapped[Optional[str]] = mapped_column(String(32))

    # Timestamps
    created_at: Mapped[str] = mapped_column(String(32), default=utcnow_iso)
    updated_at: Mapped[str] = mapped_column(
        String(32), default=utcnow_iso, onupdate=utcnow_iso
    )

    def __repr__(self) -> str:
        return (
            f"<Listing(id={self.id}, modality={self.modality}, status={self.status})>"
        )

    def get_agreed_exchange(self) -> Optional[dict]:
        """Get agreed exchange as dict."""
        if self.agreed_exchange:
            return json.loads(self.agreed_exchange)
        return None

    @property
    def is_active(self) -> bool:
        return self.status == ListingStatus.ACTIVE.value


class MessageThread(Base):
    """Negotiation between a listing's owner and one requester."""

    __tablename__ = "message_threads"
    __table_args__ = (
        UniqueConstraint("listing_id", "requester_id", name="uq_thread_listing_requester"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    listing_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("listings.id"),
        nullable=False,
        index=True,
    )
    owner_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    requester_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)

    status: Mapped[str] = mapped_column(
        String(30), default=ThreadStatus.ACTIVE.value, index=True
    )

    # Gift / trade completion
    owner_completed: Mapped[bool] = mapped_column(Boolean, default=False)
    requester_completed: Mapped[bool] = mapped_column(Boolean, default=False)

    # Loan
    loan_due_date: Mapped[Optional[str]] = mapped_column(String(10))  # ISO date
    owner_confirmed_return: Mapped[bool] = mapped_column(Boolean, default=False)
    requester_confirmed_return: Mapped[bool] = mapped_column(Boolean, default=False)
    relist_on_return: Mapped[Optional[bool]] = mapped_column(Boolean)

    # Set once resolved
    outcome: Mapped[Optional[str]] = mapped_column(String(20))

    # Conversation bookkeeping
    last_message_at: Mapped[str] = mapped_column(String(32), default=utcnow_iso, index=True)
    unread_counts: Mapped[Optional[str]] = mapped_column(Text)  # JSON {user_id: count}
    message_count: Mapped[int] = mapped_column(Integer, default=0)

    # Timestamps
    created_at: Mapped[str] = mapped_column(String(32), default=utcnow_iso)
    updated_at: Mapped[str] = mapped_column(
        String(32), default=utcnow_iso, onupdate=utcnow_iso
    )

    def __repr__(self) -> str:
        return f"<MessageThread(id={self.id}, listing_id={self.listing_id}, status={self.status})>"

    # -------------------------------------------------------------------------
    # Participants
    # -------------------------------------------------------------------------

    def role_of(self, user_id: str) -> Optional[ParticipantRole]:
        """Role of a user in this thread, or None for outsiders."""
        if user_id == self.owner_id:
            return ParticipantRole.OWNER
        if user_id == self.requester_id:
            return ParticipantRole.REQUESTER
        return None

    def other_participant(self, user_id: str) -> str:
        return self.requester_id if user_id == self.owner_id else self.owner_id

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def state(self) -> "ThreadState":
        """Typed view of the status columns."""
        from ..threads.schemas import state_from_columns

        return state_from_columns(
            status=self.status,
            owner_completed=self.owner_completed,
            requester_completed=self.requester_completed,
            loan_due_date=self.loan_due_date,
            owner_confirmed_return=self.owner_confirmed_return,
            requester_confirmed_return=self.requester_confirmed_return,
            relist_on_return=self.relist_on_return,
            outcome=self.outcome,
        )

    # -------------------------------------------------------------------------
    # Unread counts
    # -------------------------------------------------------------------------

    def get_unread_counts(self) -> dict[str, int]:
        """Get unread counts as dict."""
        if self.unread_counts:
            return json.loads(self.unread_counts)
        return {}

    def set_unread_counts(self, counts: dict[str, int]) -> None:
        """Set unread counts from dict."""
        self.unread_counts = json.dumps(counts) if counts else None


class Message(Base):
    """A message in a thread. Trade proposals are a message subtype."""

    __tablename__ = "messages"
    __table_args__ = (
        # At most one pending proposal per thread
        Index(
            "uq_messages_pending_proposal",
            "thread_id",
            unique=True,
            sqlite_where=text("proposal_status = 'pending'"),
            postgresql_where=text("proposal_status = 'pending'"),
        ),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)
    thread_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("message_threads.id"),
        nullable=False,
        index=True,
    )
    seq: Mapped[int] = mapped_column(Integer, nullable=False)
    sender_id: Mapped[str] = mapped_column(String(36), nullable=False)
    content: Mapped[str] = mapped_column(Text, default="")

    message_type: Mapped[str] = mapped_column(String(20), default="user", index=True)
    system_message_type: Mapped[Optional[str]] = mapped_column(String(30))

    # Trade proposal fields (message_type == "trade_proposal")
    offered_listing_id: Mapped[Optional[str]] = mapped_column(String(36))
    requested_listing_id: Mapped[Optional[str]] = mapped_column(String(36))
    proposal_status: Mapped[Optional[str]] = mapped_column(String(10))

    created_at: Mapped[str] = mapped_column(String(32), default=utcnow_iso)

    def __repr__(self) -> str:
        return f"<Message(id={self.id}, thread_id={self.thread_id}, type={self.message_type})>"
