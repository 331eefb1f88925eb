"""Exchange coordinator.

The single entry point for moving a listing from "available" to a resolved
gift, trade or loan. Every public method:

- takes the per-listing lock(s) for the listings it may touch,
- opens one transaction and re-reads the thread and listing inside it,
- applies its changes with conditional updates (a precondition that no
  longer holds raises ``StaleStateError`` and rolls everything back),
- queues notifications and sends them only after the commit.

Picking a winner for a listing always goes through ``_claim``, which moves
the listing to ``pending_resolution``, moves the winning thread, and closes
every other open request on the listing in the same transaction.
"""

import threading
from contextlib import contextmanager
from datetime import date, datetime, timezone
from typing import Callable, Generator, Iterable, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .completion.schemas import CompletionResult
from .completion.tracker import CompletionTracker
from .config import get_config
from .db.models import Listing, Message, MessageThread
from .db.schemas import (
    ListingStatus,
    MessageType,
    Modality,
    ParticipantRole,
    ProposalStatus,
    ResolutionOutcome,
    SystemMessageType,
    ThreadStatus,
)
from .db.sqlite import Database, get_db
from .errors import (
    ExchangeIntegrityError,
    InvalidActionError,
    NotFoundError,
    NotParticipantError,
    StaleStateError,
)
from .interests.registry import InterestRegistry
from .interests.schemas import Interest, InterestSummary
from .listings.schemas import AgreedExchange, ListingResponse
from .notify.notifier import DebouncingNotifier, LoggingNotifier, Notifier
from .notify.schemas import EventKind, NotificationEvent
from .proposals.manager import ProposalManager
from .proposals.schemas import ProposalDecision, ProposalResponse, ProposalResult
from .stats.sink import DatabaseStatsSink, StatsSink
from .threads import machine
from .threads.schemas import (
    LoanTerms,
    MessageResponse,
    ThreadResponse,
    ThreadState,
)

logger = structlog.get_logger(__name__)

_COMPLETION_MESSAGES = {
    ResolutionOutcome.GIFT: (SystemMessageType.GIFT_COMPLETED, "Gift completed!"),
    ResolutionOutcome.TRADE: (SystemMessageType.EXCHANGE_COMPLETED, "Trade completed!"),
    ResolutionOutcome.LOAN_RELISTED: (
        SystemMessageType.LOAN_RETURNED,
        "Book returned and relisted! The loan is complete.",
    ),
    ResolutionOutcome.LOAN_ARCHIVED: (
        SystemMessageType.LOAN_RETURNED,
        "Book returned! The loan is complete.",
    ),
}

# A given_to_other thread on an active listing means the book came back
_REOPEN_ON_INTEREST = (ThreadStatus.CANCELLED_BY_REQUESTER, ThreadStatus.GIVEN_TO_OTHER)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Coordinator:
    """Orchestrates interests, negotiations, proposals and completion."""

    def __init__(
        self,
        db: Optional[Database] = None,
        notifier: Optional[Notifier] = None,
        stats: Optional[StatsSink] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize the coordinator.

        Args:
            db: Database instance
            notifier: Where events go (defaults to structured logging, with
                new-message events debounced over the configured window)
            stats: Statistics sink (defaults to the user_stats table)
            clock: Returns the current UTC time
        """
        self.db = db or get_db()
        self.notifier = notifier or DebouncingNotifier(
            LoggingNotifier(), window_seconds=get_config().notify_debounce_seconds
        )
        self.stats = stats or DatabaseStatsSink(self.db)
        self._clock = clock or _utcnow

        self.interests = InterestRegistry(self.db)
        self.proposals = ProposalManager(self.db)
        self.completion = CompletionTracker(self.db, self.stats)

        # listing_id -> [lock, number of callers holding or waiting on it]
        self._locks: dict[str, list] = {}
        self._locks_guard = threading.Lock()

    # =========================================================================
    # Interests
    # =========================================================================

    def express_interest(
        self, listing_id: str, user_id: str, message: Optional[str] = None
    ) -> ThreadResponse:
        """Ask for a listing, creating the negotiation thread if needed.

        Calling again for the same (listing, user) returns the same thread.
        While the listing is available, a request that was cancelled, or
        that lost to another requester before the book came back on the
        market, is re-opened.

        Args:
            listing_id: Listing being requested
            user_id: Interested user
            message: Optional opening message to the owner

        Returns:
            The thread
        """
        with self._operation(listing_id) as (session, outbox):
            now = self._clock()
            listing = self._load_listing(session, listing_id)

            existing = self.db.find_thread(listing_id, user_id, session=session)
            if existing is None and not listing.is_active:
                raise StaleStateError("This book is no longer available")

            thread, created = self.interests.register(session, listing, user_id, now)
            if not created:
                self._reopen_request(
                    session, thread, listing, user_id, outbox, statuses=_REOPEN_ON_INTEREST
                )

            if message:
                self._post_user_message(session, thread, listing, user_id, message, now, outbox)
            elif created:
                outbox.append(self._book_requested(thread, listing, user_id, None))

            return self._thread_response(self.db.get_thread(thread.id, session))

    def summarize(self, owner_id: str) -> InterestSummary:
        """Open-request badge counts across an owner's listings."""
        return self.interests.summarize(owner_id)

    def interests_for_listing(self, listing_id: str, owner_id: str) -> list[Interest]:
        """Open requests on one of the owner's listings."""
        return self.interests.interests_for_listing(listing_id, owner_id)

    # =========================================================================
    # Owner decisions
    # =========================================================================

    def accept_gift(self, thread_id: str, owner_id: str) -> ThreadResponse:
        """Give the book to this requester.

        Args:
            thread_id: Thread to accept
            owner_id: Acting user, must own the listing

        Returns:
            The accepted thread
        """
        listing_id = self._listing_id_for(thread_id)
        with self._operation(listing_id) as (session, outbox):
            thread, listing = self._load(session, thread_id, owner_id)
            if listing.modality != Modality.GIFT.value:
                raise InvalidActionError(
                    "Only gift listings can be accepted as a gift; "
                    "use a trade proposal or a loan offer instead"
                )
            new_state = machine.accept(thread.state, thread.role_of(owner_id), Modality.GIFT)
            self._claim(session, thread, [listing], new_state, outbox)
            return self._thread_response(self.db.get_thread(thread_id, session))

    def offer_loan(self, thread_id: str, owner_id: str, terms: LoanTerms) -> ThreadResponse:
        """Lend the book to this requester until a due date.

        Args:
            thread_id: Thread to accept
            owner_id: Acting user, must own the listing
            terms: A 30/60/90-day preset or an explicit due date

        Returns:
            The thread, now on loan
        """
        listing_id = self._listing_id_for(thread_id)
        with self._operation(listing_id) as (session, outbox):
            thread, listing = self._load(session, thread_id, owner_id)
            if listing.modality != Modality.LOAN.value:
                raise InvalidActionError("Only loan listings can be lent")

            due = terms.resolve_due_date(self._today(), listing.loan_duration_days)
            new_state = machine.accept(
                thread.state, thread.role_of(owner_id), Modality.LOAN, loan_due_date=due
            )
            self._claim(session, thread, [listing], new_state, outbox)
            outbox.append(
                NotificationEvent(
                    kind=EventKind.LOAN_OFFERED,
                    recipient_user_id=thread.requester_id,
                    payload={
                        "thread_id": thread_id,
                        "listing_id": listing_id,
                        "title": listing.title,
                        "due_date": due.isoformat(),
                    },
                )
            )
            return self._thread_response(self.db.get_thread(thread_id, session))

    def convert_loan_to_gift(self, thread_id: str, owner_id: str) -> ThreadResponse:
        """Give a loan listing away for good to this requester.

        The listing becomes a gift and the thread follows the gift path, with
        no due date.

        Args:
            thread_id: Thread to accept
            owner_id: Acting user, must own the listing

        Returns:
            The accepted thread
        """
        listing_id = self._listing_id_for(thread_id)
        with self._operation(listing_id) as (session, outbox):
            thread, listing = self._load(session, thread_id, owner_id)
            if listing.modality != Modality.LOAN.value:
                raise InvalidActionError("Only loan listings can be converted to a gift")

            new_state = machine.accept(thread.state, thread.role_of(owner_id), Modality.GIFT)
            if not self.db.transition_listing(
                session,
                listing_id,
                [ListingStatus.ACTIVE],
                modality=Modality.GIFT.value,
                loan_duration_days=None,
            ):
                raise StaleStateError("This book is no longer available")

            listing = self._load_listing(session, listing_id)
            self._claim(session, thread, [listing], new_state, outbox)
            logger.info("loan_converted_to_gift", thread_id=thread_id, listing_id=listing_id)
            return self._thread_response(self.db.get_thread(thread_id, session))

    def decline(self, thread_id: str, owner_id: str) -> ThreadResponse:
        """Turn this requester down."""
        listing_id = self._listing_id_for(thread_id)
        with self._operation(listing_id) as (session, outbox):
            thread, listing = self._load(session, thread_id, owner_id)
            current = thread.state
            self._transition(session, thread, current, machine.decline(current, thread.role_of(owner_id)))
            self._close_pending_proposal(session, thread_id)
            outbox.append(
                self._decision_event(thread, listing, ThreadStatus.DECLINED_BY_OWNER)
            )
            logger.info("thread_declined", thread_id=thread_id)
            return self._thread_response(self.db.get_thread(thread_id, session))

    # =========================================================================
    # Requester decisions
    # =========================================================================

    def cancel(self, thread_id: str, requester_id: str) -> ThreadResponse:
        """Withdraw a request."""
        listing_id = self._listing_id_for(thread_id)
        with self._operation(listing_id) as (session, outbox):
            now = self._clock()
            thread, listing = self._load(session, thread_id, requester_id)
            current = thread.state
            self._transition(
                session, thread, current, machine.cancel(current, thread.role_of(requester_id))
            )
            self._close_pending_proposal(session, thread_id)
            self.db.add_message(
                session,
                self.db.get_thread(thread_id, session),
                sender_id=requester_id,
                content="Request cancelled",
                message_type=MessageType.SYSTEM,
                system_message_type=SystemMessageType.REQUEST_CANCELLED,
                created_at=now.isoformat(),
            )
            outbox.append(
                NotificationEvent(
                    kind=EventKind.REQUEST_CANCELLED,
                    recipient_user_id=thread.owner_id,
                    payload={
                        "thread_id": thread_id,
                        "listing_id": listing_id,
                        "title": listing.title,
                        "requester_id": requester_id,
                    },
                )
            )
            logger.info("thread_cancelled", thread_id=thread_id)
            return self._thread_response(self.db.get_thread(thread_id, session))

    def dismiss(self, thread_id: str, requester_id: str) -> ThreadResponse:
        """Acknowledge a decline, or that the book went to someone else."""
        listing_id = self._listing_id_for(thread_id)
        with self._operation(listing_id) as (session, _outbox):
            thread, _listing = self._load(session, thread_id, requester_id)
            current = thread.state
            self._transition(
                session, thread, current, machine.dismiss(current, thread.role_of(requester_id))
            )
            logger.info("thread_dismissed", thread_id=thread_id)
            return self._thread_response(self.db.get_thread(thread_id, session))

    # =========================================================================
    # Trade proposals
    # =========================================================================

    def accept_trade(
        self,
        thread_id: str,
        owner_id: str,
        requested_listing_id: str,
        note: str = "",
    ) -> ProposalResponse:
        """Owner accepts a trade request by picking the requester's book to swap for.

        The exchange is agreed once the requester accepts the proposal.

        Args:
            thread_id: Thread being negotiated
            owner_id: Acting user, must own the listing
            requested_listing_id: One of the requester's listings
            note: Optional message to go with the proposal

        Returns:
            The pending proposal
        """
        listing_id = self._listing_id_for(thread_id)
        with self._operation(listing_id, requested_listing_id) as (session, outbox):
            now = self._clock()
            thread, listing = self._load(session, thread_id, owner_id)
            proposal = self.proposals.create(
                session, thread, listing, owner_id, requested_listing_id, now, content=note
            )
            self._touch(thread, owner_id, now)
            outbox.append(
                NotificationEvent(
                    kind=EventKind.TRADE_PROPOSAL,
                    recipient_user_id=thread.requester_id,
                    payload={
                        "thread_id": thread_id,
                        "proposal_id": proposal.id,
                        "offered_listing_id": listing_id,
                        "requested_listing_id": requested_listing_id,
                        "title": listing.title,
                    },
                )
            )
            return ProposalResponse.from_model(proposal)

    def respond_to_proposal(
        self,
        thread_id: str,
        proposal_id: str,
        requester_id: str,
        decision: ProposalDecision,
    ) -> ProposalResult:
        """Requester accepts or declines the owner's trade proposal.

        Accepting agrees the trade: both listings become pending with a
        reciprocal ``agreed_exchange`` and every other open request on either
        listing is closed. Declining leaves the thread open for a new
        proposal.

        Args:
            thread_id: Thread being negotiated
            proposal_id: Proposal to answer
            requester_id: Acting user, must be the requester
            decision: Accept or decline

        Returns:
            The answered proposal and the thread
        """
        listing_id = self._listing_id_for(thread_id)
        target_id = self._proposal_target_for(proposal_id)
        with self._operation(listing_id, target_id) as (session, outbox):
            now = self._clock()
            thread, listing = self._load(session, thread_id, requester_id)
            proposal = self.proposals.get_for_response(session, thread, proposal_id, requester_id)

            if decision == ProposalDecision.DECLINE:
                self.proposals.settle(session, proposal, ProposalStatus.DECLINED)
                self.db.add_message(
                    session,
                    thread,
                    sender_id=requester_id,
                    content="Exchange proposal declined.",
                    message_type=MessageType.SYSTEM,
                    system_message_type=SystemMessageType.EXCHANGE_DECLINED,
                    created_at=now.isoformat(),
                )
            else:
                target = self.proposals.target_listing(session, thread, proposal)
                if not listing.is_active:
                    raise StaleStateError("This book is no longer available")
                new_state = machine.accept(thread.state, ParticipantRole.OWNER, Modality.TRADE)
                self.proposals.settle(session, proposal, ProposalStatus.ACCEPTED)

                self._claim(
                    session,
                    thread,
                    [listing, target],
                    new_state,
                    outbox,
                    listing_values={
                        listing.id: {
                            "agreed_exchange": AgreedExchange(
                                counterparty_user_id=thread.requester_id,
                                counterparty_listing_id=target.id,
                            ).model_dump_json(),
                        },
                        target.id: {
                            "modality": Modality.TRADE.value,
                            "agreed_exchange": AgreedExchange(
                                counterparty_user_id=thread.owner_id,
                                counterparty_listing_id=listing.id,
                            ).model_dump_json(),
                        },
                    },
                )
                self.db.add_message(
                    session,
                    self.db.get_thread(thread_id, session),
                    sender_id=requester_id,
                    content=(
                        "Exchange accepted! Both books are now pending exchange. "
                        "Coordinate the handoff via messages, then mark as complete."
                    ),
                    message_type=MessageType.SYSTEM,
                    system_message_type=SystemMessageType.EXCHANGE_PROPOSED,
                    created_at=now.isoformat(),
                )

            outbox.append(
                NotificationEvent(
                    kind=EventKind.PROPOSAL_RESPONSE,
                    recipient_user_id=thread.owner_id,
                    payload={
                        "thread_id": thread_id,
                        "proposal_id": proposal_id,
                        "decision": decision.value,
                    },
                )
            )
            proposal = session.get(Message, proposal_id)
            return ProposalResult(
                proposal=ProposalResponse.from_model(proposal),
                thread=self._thread_response(self.db.get_thread(thread_id, session)),
            )

    def list_proposals(self, thread_id: str, user_id: str) -> list[ProposalResponse]:
        """All proposals on a thread."""
        return self.proposals.list_proposals(thread_id, user_id)

    # =========================================================================
    # Completion
    # =========================================================================

    def mark_complete(self, thread_id: str, actor_id: str) -> CompletionResult:
        """One side confirms a gift or trade hand-off happened.

        Args:
            thread_id: Accepted thread
            actor_id: Owner or requester

        Returns:
            CompletionResult; ``both_completed`` tells whether the exchange
            is now resolved or still waiting on the other party
        """
        return self._confirm(thread_id, actor_id, ThreadStatus.ACCEPTED)

    def confirm_return(
        self, thread_id: str, actor_id: str, relist: Optional[bool] = None
    ) -> CompletionResult:
        """One side confirms a lent book came back.

        Args:
            thread_id: Thread on loan
            actor_id: Owner or borrower
            relist: Owner only; put the listing back on the market (True)
                or archive it (False, the default)

        Returns:
            CompletionResult; ``both_completed`` tells whether the loan is
            now resolved or still waiting on the other party
        """
        return self._confirm(thread_id, actor_id, ThreadStatus.ON_LOAN, relist=relist)

    def _confirm(
        self,
        thread_id: str,
        actor_id: str,
        expected_status: ThreadStatus,
        relist: Optional[bool] = None,
    ) -> CompletionResult:
        listing_id = self._listing_id_for(thread_id)
        paired_id = self._paired_listing_for(listing_id)
        with self._operation(listing_id, paired_id) as (session, outbox):
            now = self._clock()
            thread, listing = self._load(session, thread_id, actor_id)
            role, state = self.completion.record(
                session, thread, actor_id, expected_status, relist=relist
            )

            outcome = None
            if state.both_completed:
                outcome = self.completion.resolve(session, thread, state, listing, now)
                if outcome is not None:
                    message_type, content = _COMPLETION_MESSAGES[outcome]
                    self.db.add_message(
                        session,
                        self.db.get_thread(thread_id, session),
                        sender_id=actor_id,
                        content=content,
                        message_type=MessageType.SYSTEM,
                        system_message_type=message_type,
                        created_at=now.isoformat(),
                    )
                    for recipient in (thread.owner_id, thread.requester_id):
                        outbox.append(
                            NotificationEvent(
                                kind=EventKind.EXCHANGE_COMPLETED,
                                recipient_user_id=recipient,
                                payload={
                                    "thread_id": thread_id,
                                    "listing_id": listing_id,
                                    "outcome": outcome.value,
                                },
                            )
                        )

            thread = self.db.get_thread(thread_id, session)
            listing = self._load_listing(session, listing_id)
            return CompletionResult(
                thread_id=thread_id,
                actor_role=role,
                both_completed=state.both_completed,
                outcome=outcome,
                listing_status=ListingStatus(listing.status),
                thread=self._thread_response(thread),
            )

    # =========================================================================
    # Listings
    # =========================================================================

    def archive_listing(self, listing_id: str, owner_id: str) -> ListingResponse:
        """Take an active listing off the market.

        Open requests on it are closed as given to someone else, and each of
        those requesters is told, so nobody is left waiting on a listing that
        is gone.

        Args:
            listing_id: Listing ID
            owner_id: Acting user, must own the listing

        Returns:
            Archived listing
        """
        with self._operation(listing_id) as (session, outbox):
            listing = self._load_listing(session, listing_id)
            if listing.owner_id != owner_id:
                raise NotParticipantError("Only the owner can change this listing")
            if listing.status == ListingStatus.ARCHIVED.value:
                return ListingResponse.from_model(listing)

            if not self.db.transition_listing(
                session,
                listing_id,
                [ListingStatus.ACTIVE],
                status=ListingStatus.ARCHIVED.value,
                archived_at=self._clock().isoformat(),
            ):
                raise StaleStateError("Listing has an exchange in progress")

            listing = self._load_listing(session, listing_id)
            closed = self._close_open_requests(session, [listing], outbox)
            logger.info("listing_archived", listing_id=listing_id, closed_threads=closed)
            return ListingResponse.from_model(listing)

    # =========================================================================
    # Messaging
    # =========================================================================

    def send_message(self, thread_id: str, sender_id: str, content: str) -> MessageResponse:
        """Post a message to a thread.

        Args:
            thread_id: Thread ID
            sender_id: Acting user, must be a participant
            content: Message text

        Returns:
            The stored message
        """
        listing_id = self._listing_id_for(thread_id)
        with self._operation(listing_id) as (session, outbox):
            now = self._clock()
            thread, listing = self._load(session, thread_id, sender_id)
            self._reopen_request(session, thread, listing, sender_id, outbox)
            message = self._post_user_message(
                session, thread, listing, sender_id, content, now, outbox
            )
            return MessageResponse.model_validate(message)

    def mark_read(self, thread_id: str, user_id: str) -> ThreadResponse:
        """Reset a participant's unread count."""
        listing_id = self._listing_id_for(thread_id)
        with self._operation(listing_id) as (session, _outbox):
            thread, _listing = self._load(session, thread_id, user_id)
            counts = thread.get_unread_counts()
            counts[user_id] = 0
            thread.set_unread_counts(counts)
            session.flush()
            return self._thread_response(thread)

    def get_thread(self, thread_id: str, user_id: str) -> ThreadResponse:
        """A thread, for one of its participants."""
        with self.db.get_session() as session:
            thread, _listing = self._load(session, thread_id, user_id)
            return self._thread_response(thread)

    def get_messages(self, thread_id: str, user_id: str) -> list[MessageResponse]:
        """A thread's history, oldest first."""
        with self.db.get_session() as session:
            self._load(session, thread_id, user_id)
            return [
                MessageResponse.model_validate(m)
                for m in self.db.get_messages(thread_id, session)
            ]

    def list_threads(self, user_id: str) -> list[ThreadResponse]:
        """A user's inbox, newest activity first; cancelled requests are hidden."""
        with self.db.get_session() as session:
            return [
                self._thread_response(t)
                for t in self.db.get_threads_for_user(user_id, session)
                if t.status != ThreadStatus.CANCELLED_BY_REQUESTER.value
            ]

    def overdue_loans(self, user_id: Optional[str] = None) -> list[ThreadResponse]:
        """Loans past their due date. Being overdue never changes a thread's status.

        Args:
            user_id: Only loans where this user is lender or borrower

        Returns:
            Overdue threads, most overdue first
        """
        today = self._today().isoformat()
        with self.db.get_session() as session:
            stmt = select(MessageThread).where(
                MessageThread.status == ThreadStatus.ON_LOAN.value,
                MessageThread.loan_due_date.isnot(None),
                MessageThread.loan_due_date < today,
            )
            if user_id:
                stmt = stmt.where(
                    (MessageThread.owner_id == user_id)
                    | (MessageThread.requester_id == user_id)
                )
            stmt = stmt.order_by(MessageThread.loan_due_date)
            return [self._thread_response(t) for t in session.execute(stmt).scalars()]

    # =========================================================================
    # Internals
    # =========================================================================

    def _claim(
        self,
        session: Session,
        thread: MessageThread,
        listings: list[Listing],
        new_state: ThreadState,
        outbox: list[NotificationEvent],
        listing_values: Optional[dict[str, dict]] = None,
    ) -> None:
        """Make ``thread`` the single winner of ``listings``.

        Moves each listing to pending_resolution, moves the thread to
        ``new_state``, and closes every other open request on those listings
        as given_to_other, all in the caller's transaction.
        """
        listing_values = listing_values or {}
        current = thread.state
        thread_id = thread.id
        listing_ids = [listing.id for listing in listings]

        for listing_id in listing_ids:
            claimed = self.db.transition_listing(
                session,
                listing_id,
                [ListingStatus.ACTIVE],
                status=ListingStatus.PENDING_RESOLUTION.value,
                **listing_values.get(listing_id, {}),
            )
            if not claimed:
                raise StaleStateError("This book is no longer available")

        self._transition(session, thread, current, new_state)
        closed = self._close_open_requests(session, listings, outbox)

        for listing_id in listing_ids:
            winners = self.db.count_winning_threads(session, listing_id)
            # The paired listing in a trade is won through the other thread
            expected = 1 if listing_id == listing_ids[0] else 0
            if winners != expected:
                logger.error(
                    "single_winner_violation",
                    listing_id=listing_id,
                    thread_id=thread_id,
                    winners=winners,
                )
                raise ExchangeIntegrityError(
                    f"Listing {listing_id} has {winners} winning threads"
                )

        winner = self.db.get_thread(thread_id, session)
        listing = self.db.get_listing(listing_ids[0], session)
        outbox.append(self._decision_event(winner, listing, new_state.status))
        logger.info(
            "thread_accepted",
            thread_id=thread_id,
            listing_ids=listing_ids,
            status=new_state.status.value,
            closed_siblings=closed,
        )

    def _close_open_requests(
        self,
        session: Session,
        listings: list[Listing],
        outbox: list[NotificationEvent],
    ) -> int:
        """Move every still-active thread on ``listings`` to given_to_other.

        Each closed requester is notified and any pending trade proposal on
        their thread is declined. Returns how many threads were closed.
        """
        titles = {listing.id: listing.title for listing in listings}
        open_threads = self.db.get_threads_for_listings(
            list(titles), statuses=[ThreadStatus.ACTIVE], session=session
        )
        closed = 0
        for other in open_threads:
            other_state = other.state
            if not self.db.transition_thread(
                session, other.id, other_state, machine.give_to_other(other_state)
            ):
                continue
            self._close_pending_proposal(session, other.id)
            outbox.append(
                NotificationEvent(
                    kind=EventKind.REQUEST_DECISION,
                    recipient_user_id=other.requester_id,
                    payload={
                        "thread_id": other.id,
                        "listing_id": other.listing_id,
                        "title": titles.get(other.listing_id),
                        "decision": ThreadStatus.GIVEN_TO_OTHER.value,
                        "status": ThreadStatus.GIVEN_TO_OTHER.value,
                    },
                )
            )
            closed += 1
        return closed

    def _transition(
        self,
        session: Session,
        thread: MessageThread,
        current: ThreadState,
        new_state: ThreadState,
    ) -> None:
        if not self.db.transition_thread(session, thread.id, current, new_state):
            raise StaleStateError("Thread changed; refresh and try again")

    def _reopen_request(
        self,
        session: Session,
        thread: MessageThread,
        listing: Listing,
        user_id: str,
        outbox: list[NotificationEvent],
        statuses: tuple[ThreadStatus, ...] = (ThreadStatus.CANCELLED_BY_REQUESTER,),
    ) -> None:
        if thread.status not in {s.value for s in statuses}:
            return
        if thread.role_of(user_id) != ParticipantRole.REQUESTER or not listing.is_active:
            return
        current = thread.state
        self._transition(session, thread, current, machine.reopen(current, ParticipantRole.REQUESTER))
        thread = self.db.get_thread(thread.id, session)
        outbox.append(self._book_requested(thread, listing, user_id, None))
        logger.info("thread_reopened", thread_id=thread.id)

    def _post_user_message(
        self,
        session: Session,
        thread: MessageThread,
        listing: Listing,
        sender_id: str,
        content: str,
        now: datetime,
        outbox: list[NotificationEvent],
    ) -> Message:
        if not content or not content.strip():
            raise InvalidActionError("Message content is required")

        previous = session.execute(
            select(func.count()).where(
                Message.thread_id == thread.id,
                Message.message_type == MessageType.USER.value,
            )
        ).scalar() or 0

        message = self.db.add_message(
            session, thread, sender_id=sender_id, content=content, created_at=now.isoformat()
        )
        self._touch(thread, sender_id, now)

        if previous == 0 and thread.role_of(sender_id) == ParticipantRole.REQUESTER:
            outbox.append(self._book_requested(thread, listing, sender_id, content))
        else:
            recipient = thread.other_participant(sender_id)
            outbox.append(
                NotificationEvent(
                    kind=EventKind.NEW_MESSAGE,
                    recipient_user_id=recipient,
                    payload={
                        "thread_id": thread.id,
                        "listing_id": listing.id,
                        "title": listing.title,
                        "sender_id": sender_id,
                        "content": content,
                        "recipient_role": thread.role_of(recipient).value,
                    },
                )
            )
        return message

    def _touch(self, thread: MessageThread, sender_id: str, now: datetime) -> None:
        """Bump activity time and the other participant's unread count."""
        thread.last_message_at = now.isoformat()
        counts = thread.get_unread_counts()
        other = thread.other_participant(sender_id)
        counts[other] = counts.get(other, 0) + 1
        thread.set_unread_counts(counts)

    def _close_pending_proposal(self, session: Session, thread_id: str) -> None:
        pending = self.db.get_pending_proposal(thread_id, session)
        if pending is not None:
            self.proposals.settle(session, pending, ProposalStatus.DECLINED)

    def _book_requested(
        self,
        thread: MessageThread,
        listing: Listing,
        requester_id: str,
        content: Optional[str],
    ) -> NotificationEvent:
        return NotificationEvent(
            kind=EventKind.BOOK_REQUESTED,
            recipient_user_id=thread.owner_id,
            payload={
                "thread_id": thread.id,
                "listing_id": listing.id,
                "title": listing.title,
                "modality": listing.modality,
                "requester_id": requester_id,
                "content": content,
            },
        )

    def _decision_event(
        self, thread: MessageThread, listing: Listing, status: ThreadStatus
    ) -> NotificationEvent:
        decision = "declined" if status == ThreadStatus.DECLINED_BY_OWNER else "accepted"
        return NotificationEvent(
            kind=EventKind.REQUEST_DECISION,
            recipient_user_id=thread.requester_id,
            payload={
                "thread_id": thread.id,
                "listing_id": listing.id,
                "title": listing.title,
                "decision": decision,
                "status": status.value,
            },
        )

    def _load(
        self, session: Session, thread_id: str, actor_id: str
    ) -> tuple[MessageThread, Listing]:
        thread = self.db.get_thread(thread_id, session)
        if thread is None:
            raise NotFoundError("Thread not found")
        if thread.role_of(actor_id) is None:
            raise NotParticipantError("Only participants can act on this conversation")
        return thread, self._load_listing(session, thread.listing_id)

    def _load_listing(self, session: Session, listing_id: str) -> Listing:
        listing = self.db.get_listing(listing_id, session)
        if listing is None:
            raise NotFoundError("Listing not found")
        return listing

    def _listing_id_for(self, thread_id: str) -> str:
        thread = self.db.get_thread(thread_id)
        if thread is None:
            raise NotFoundError("Thread not found")
        return thread.listing_id

    def _proposal_target_for(self, proposal_id: str) -> Optional[str]:
        with self.db.get_session() as session:
            proposal = session.get(Message, proposal_id)
            return proposal.requested_listing_id if proposal else None

    def _paired_listing_for(self, listing_id: str) -> Optional[str]:
        listing = self.db.get_listing(listing_id)
        exchange = listing.get_agreed_exchange() if listing else None
        return exchange.get("counterparty_listing_id") if exchange else None

    def _thread_response(self, thread: MessageThread) -> ThreadResponse:
        return ThreadResponse.from_model(thread, today=self._today())

    def _today(self) -> date:
        return self._clock().date()

    @contextmanager
    def _locked(self, listing_ids: Iterable[Optional[str]]) -> Generator[None, None, None]:
        """Hold the per-listing locks, always taken in sorted order."""
        keys = sorted({key for key in listing_ids if key})
        with self._locks_guard:
            entries = [self._locks.setdefault(key, [threading.Lock(), 0]) for key in keys]
            for entry in entries:
                entry[1] += 1
        try:
            for lock, _users in entries:
                lock.acquire()
            try:
                yield
            finally:
                for lock, _users in reversed(entries):
                    lock.release()
        finally:
            with self._locks_guard:
                for key, entry in zip(keys, entries):
                    entry[1] -= 1
                    if entry[1] == 0:
                        del self._locks[key]

    @contextmanager
    def _operation(
        self, *listing_ids: Optional[str]
    ) -> Generator[tuple[Session, list[NotificationEvent]], None, None]:
        """Lock, run one transaction, then send queued notifications."""
        outbox: list[NotificationEvent] = []
        with self._locked(listing_ids):
            with self.db.get_session() as session:
                yield session, outbox
        self._dispatch(outbox)

    def _dispatch(self, events: list[NotificationEvent]) -> None:
        for event in events:
            try:
                self.notifier.notify(event)
            except Exception:
                # Delivery problems never undo a committed transition
                logger.exception(
                    "notification_failed",
                    kind=event.kind.value,
                    recipient_user_id=event.recipient_user_id,
                )
