"""Trade proposal rules.

A proposal is the owner's pick of one of the requester's own listings to
swap against the listing under negotiation. Only one proposal may be pending
per thread; a second one is rejected rather than superseding the first.
"""

from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ..db.models import Listing, Message, MessageThread
from ..db.schemas import (
    ListingStatus,
    MessageType,
    Modality,
    ParticipantRole,
    ProposalStatus,
    ThreadStatus,
)
from ..db.sqlite import Database, get_db
from ..errors import (
    InvalidActionError,
    NotFoundError,
    NotParticipantError,
    ProposalPendingError,
    ProposalTargetUnavailableError,
    StaleStateError,
)
from .schemas import ProposalResponse

logger = structlog.get_logger(__name__)


class ProposalManager:
    """Validates and records trade proposals."""

    def __init__(self, db: Optional[Database] = None):
        """Initialize proposal manager.

        Args:
            db: Database instance
        """
        self.db = db or get_db()

    def create(
        self,
        session: Session,
        thread: MessageThread,
        listing: Listing,
        actor_id: str,
        requested_listing_id: str,
        now: datetime,
        content: str = "",
    ) -> Message:
        """Record a new pending proposal on a trade thread.

        Args:
            session: Open transaction
            thread: Thread being negotiated
            listing: The thread's listing (the owner's offered book)
            actor_id: Acting user, must be the owner
            requested_listing_id: Requester's listing the owner wants
            now: Creation time
            content: Optional note to go with the proposal

        Returns:
            The proposal message
        """
        if thread.role_of(actor_id) != ParticipantRole.OWNER:
            raise NotParticipantError("Only the owner can propose a trade")
        if listing.modality != Modality.TRADE.value:
            raise InvalidActionError("Proposals are only for trade listings")
        if thread.status != ThreadStatus.ACTIVE.value or not listing.is_active:
            raise StaleStateError("This request is no longer open")
        if self.db.get_pending_proposal(thread.id, session) is not None:
            raise ProposalPendingError("A proposal is already waiting for an answer")

        self._check_target(session, thread, listing.id, requested_listing_id)

        proposal = self.db.add_message(
            session,
            thread,
            sender_id=actor_id,
            content=content,
            message_type=MessageType.TRADE_PROPOSAL,
            offered_listing_id=listing.id,
            requested_listing_id=requested_listing_id,
            created_at=now.isoformat(),
        )
        logger.info(
            "proposal_created",
            proposal_id=proposal.id,
            thread_id=thread.id,
            requested_listing_id=requested_listing_id,
        )
        return proposal

    def get_for_response(
        self,
        session: Session,
        thread: MessageThread,
        proposal_id: str,
        actor_id: str,
    ) -> Message:
        """Load a pending proposal the actor is allowed to answer."""
        proposal = session.get(Message, proposal_id)
        if (
            proposal is None
            or proposal.thread_id != thread.id
            or proposal.message_type != MessageType.TRADE_PROPOSAL.value
        ):
            raise NotFoundError("Trade proposal not found")
        if thread.role_of(actor_id) != ParticipantRole.REQUESTER:
            raise NotParticipantError("Only the requester can answer a proposal")
        if proposal.proposal_status != ProposalStatus.PENDING.value:
            raise StaleStateError("This proposal has already been answered")
        return proposal

    def target_listing(
        self, session: Session, thread: MessageThread, proposal: Message
    ) -> Listing:
        """The requester's listing a proposal points at, if still available."""
        return self._check_target(
            session, thread, proposal.offered_listing_id, proposal.requested_listing_id
        )

    def settle(self, session: Session, proposal: Message, status: ProposalStatus) -> None:
        """Move a pending proposal to accepted or declined."""
        result = session.execute(
            update(Message)
            .where(
                Message.id == proposal.id,
                Message.proposal_status == ProposalStatus.PENDING.value,
            )
            .values(proposal_status=status.value)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise StaleStateError("This proposal has already been answered")
        session.expire(proposal)
        logger.info("proposal_settled", proposal_id=proposal.id, status=status.value)

    def list_proposals(self, thread_id: str, user_id: str) -> list[ProposalResponse]:
        """All proposals on a thread, oldest first.

        Args:
            thread_id: Thread ID
            user_id: Acting user, must be a participant

        Returns:
            List of proposals
        """
        with self.db.get_session() as session:
            thread = self.db.get_thread(thread_id, session)
            if not thread:
                raise NotFoundError("Thread not found")
            if thread.role_of(user_id) is None:
                raise NotParticipantError("Only participants can see proposals")
            stmt = (
                select(Message)
                .where(
                    Message.thread_id == thread_id,
                    Message.message_type == MessageType.TRADE_PROPOSAL.value,
                )
                .order_by(Message.seq)
            )
            return [
                ProposalResponse.from_model(m) for m in session.execute(stmt).scalars()
            ]

    def _check_target(
        self,
        session: Session,
        thread: MessageThread,
        offered_listing_id: str,
        requested_listing_id: str,
    ) -> Listing:
        if requested_listing_id == offered_listing_id:
            raise InvalidActionError("A listing cannot be traded for itself")
        target = self.db.get_listing(requested_listing_id, session)
        if target is None:
            raise ProposalTargetUnavailableError("The requested book no longer exists")
        if target.owner_id != thread.requester_id:
            raise InvalidActionError("Proposals must pick one of the requester's books")
        if target.status != ListingStatus.ACTIVE.value:
            raise ProposalTargetUnavailableError("The requested book is no longer available")
        return target
