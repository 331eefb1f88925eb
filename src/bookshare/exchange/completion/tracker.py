"""Dual-confirmation tracking for hand-offs and loan returns.

Gifts and trades finish when both sides mark the hand-off complete; loans
finish when both sides confirm the book came back. The flag for each side is
set with a conditional update, and the resolution itself is a second
conditional update from "both flags set" to ``resolved``. Only the call that
wins that second update applies listing changes and statistics, so they
happen exactly once however the two confirmations interleave.
"""

from datetime import datetime
from typing import Optional, Union

import structlog
from sqlalchemy.orm import Session

from ..db.models import Listing, MessageThread
from ..db.schemas import (
    ListingStatus,
    Modality,
    ParticipantRole,
    ResolutionOutcome,
    ThreadStatus,
)
from ..db.sqlite import Database
from ..errors import (
    AlreadyCompletedError,
    ExchangeIntegrityError,
    NotParticipantError,
    StaleStateError,
)
from ..stats.schemas import StatCounter
from ..stats.sink import StatsSink
from ..threads import machine
from ..threads.schemas import AcceptedState, OnLoanState

logger = structlog.get_logger(__name__)

# (owner counter, requester counter) per outcome
_COUNTERS = {
    ResolutionOutcome.GIFT: (StatCounter.BOOKS_GIVEN, StatCounter.BOOKS_RECEIVED),
    ResolutionOutcome.TRADE: (StatCounter.BOOKS_TRADED, StatCounter.BOOKS_TRADED),
    ResolutionOutcome.LOAN_RELISTED: (StatCounter.BOOKS_LOANED, StatCounter.BOOKS_BORROWED),
    ResolutionOutcome.LOAN_ARCHIVED: (StatCounter.BOOKS_LOANED, StatCounter.BOOKS_BORROWED),
}


class CompletionTracker:
    """Records confirmations and resolves fully confirmed exchanges."""

    def __init__(self, db: Database, stats: StatsSink):
        self.db = db
        self.stats = stats

    def record(
        self,
        session: Session,
        thread: MessageThread,
        actor_id: str,
        expected_status: ThreadStatus,
        relist: Optional[bool] = None,
    ) -> tuple[ParticipantRole, Union[AcceptedState, OnLoanState]]:
        """Set the actor's confirmation flag.

        Args:
            session: Open transaction
            thread: Thread being confirmed
            actor_id: Acting user
            expected_status: ACCEPTED for hand-offs, ON_LOAN for returns
            relist: Owner's choice to relist after a loan return

        Returns:
            The actor's role and the thread state after recording
        """
        role = thread.role_of(actor_id)
        if role is None:
            raise NotParticipantError("Only participants can confirm an exchange")

        current = thread.state
        if current.status == ThreadStatus.RESOLVED:
            raise AlreadyCompletedError("This exchange is already complete")
        if current.status != expected_status:
            raise StaleStateError(
                f"Thread is {current.status.value}; expected {expected_status.value}"
            )

        updated = machine.mark_complete(current, role)
        if isinstance(updated, OnLoanState) and role == ParticipantRole.OWNER:
            updated = updated.model_copy(update={"relist_on_return": bool(relist)})

        if not self.db.transition_thread(session, thread.id, current, updated):
            # Lost a race; report what actually happened
            latest = self.db.get_thread(thread.id, session).state
            if latest.status == ThreadStatus.RESOLVED or (
                latest.status == expected_status and latest.completed_by(role)
            ):
                raise AlreadyCompletedError(
                    f"The {role.value} has already confirmed this exchange"
                )
            raise StaleStateError("Thread changed; refresh and try again")

        logger.info(
            "completion_recorded",
            thread_id=thread.id,
            role=role.value,
            status=expected_status.value,
            both_completed=updated.both_completed,
        )
        return role, updated

    def resolve(
        self,
        session: Session,
        thread: MessageThread,
        state: Union[AcceptedState, OnLoanState],
        listing: Listing,
        now: datetime,
    ) -> Optional[ResolutionOutcome]:
        """Finish a fully confirmed exchange.

        Args:
            session: Open transaction
            thread: Thread to resolve
            state: Its current state, with both flags set
            listing: The thread's listing
            now: Resolution time

        Returns:
            The outcome, or None if another call already resolved it
        """
        outcome = self._outcome_for(listing, state)
        resolved = machine.resolve(state, outcome)
        if not self.db.transition_thread(session, thread.id, state, resolved):
            logger.info("resolution_skipped", thread_id=thread.id)
            return None

        stamp = now.isoformat()
        if outcome == ResolutionOutcome.LOAN_RELISTED:
            self._finish_listing(
                session, listing.id, status=ListingStatus.ACTIVE.value, given_to=None
            )
        else:
            self._finish_listing(
                session,
                listing.id,
                status=ListingStatus.ARCHIVED.value,
                archived_at=stamp,
                given_to=(
                    thread.requester_id if outcome != ResolutionOutcome.LOAN_ARCHIVED else None
                ),
            )

        if outcome == ResolutionOutcome.TRADE:
            exchange = listing.get_agreed_exchange() or {}
            paired_id = exchange.get("counterparty_listing_id")
            if not paired_id:
                raise ExchangeIntegrityError(
                    f"Trade thread {thread.id} resolved without an agreed exchange"
                )
            self._finish_listing(
                session,
                paired_id,
                status=ListingStatus.ARCHIVED.value,
                archived_at=stamp,
                given_to=thread.owner_id,
            )

        owner_counter, requester_counter = _COUNTERS[outcome]
        self.stats.increment(thread.owner_id, owner_counter, session=session)
        self.stats.increment(thread.requester_id, requester_counter, session=session)
        self.stats.increment(thread.owner_id, StatCounter.BOOKSHARES, session=session)
        self.stats.increment(thread.requester_id, StatCounter.BOOKSHARES, session=session)

        logger.info(
            "exchange_resolved",
            thread_id=thread.id,
            listing_id=listing.id,
            outcome=outcome.value,
        )
        return outcome

    @staticmethod
    def _outcome_for(
        listing: Listing, state: Union[AcceptedState, OnLoanState]
    ) -> ResolutionOutcome:
        if isinstance(state, OnLoanState):
            if state.relist_on_return:
                return ResolutionOutcome.LOAN_RELISTED
            return ResolutionOutcome.LOAN_ARCHIVED
        if listing.modality == Modality.TRADE.value:
            return ResolutionOutcome.TRADE
        return ResolutionOutcome.GIFT

    def _finish_listing(self, session: Session, listing_id: str, **values) -> None:
        if not self.db.transition_listing(
            session, listing_id, [ListingStatus.PENDING_RESOLUTION], **values
        ):
            logger.error("listing_not_pending_at_resolution", listing_id=listing_id)
            raise ExchangeIntegrityError(
                f"Listing {listing_id} was not pending resolution"
            )
