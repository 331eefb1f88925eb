"""Tests for Coordinator decisions, messaging and invariants."""

from datetime import date, timedelta

import pytest

from bookshare.exchange.db.schemas import (
    ListingStatus,
    LoanPreset,
    Modality,
    ResolutionOutcome,
    ThreadStatus,
)
from bookshare.exchange.errors import (
    ExchangeIntegrityError,
    InvalidActionError,
    InvalidLoanTermsError,
    NotFoundError,
    NotParticipantError,
    StaleStateError,
)
from bookshare.exchange.notify import EventKind, Notifier
from bookshare.exchange.threads import LoanTerms


class ExplodingNotifier(Notifier):
    """Fails on every event."""

    def notify(self, event):
        raise RuntimeError("mail server down")


class TestAcceptGift:
    """Tests for picking a gift recipient."""

    def test_single_winner(self, coordinator, listings, notifier, gift_listing):
        """Accepting one request closes the others on the listing."""
        alice = coordinator.express_interest(gift_listing.id, "alice")
        bob = coordinator.express_interest(gift_listing.id, "bob")
        carol = coordinator.express_interest(gift_listing.id, "carol")
        notifier.clear()

        accepted = coordinator.accept_gift(alice.id, "owner-1")
        assert accepted.status == ThreadStatus.ACCEPTED
        assert listings.get_listing(gift_listing.id).status == ListingStatus.PENDING_RESOLUTION
        for other in (bob, carol):
            thread = coordinator.get_thread(other.id, other.requester_id)
            assert thread.status == ThreadStatus.GIVEN_TO_OTHER

        decisions = {
            e.recipient_user_id: e.payload["decision"]
            for e in notifier.of_kind(EventKind.REQUEST_DECISION)
        }
        assert decisions == {
            "alice": "accepted",
            "bob": "given_to_other",
            "carol": "given_to_other",
        }

    def test_second_accept_is_stale(self, coordinator, gift_listing):
        """The listing can only be won once."""
        alice = coordinator.express_interest(gift_listing.id, "alice")
        bob = coordinator.express_interest(gift_listing.id, "bob")
        coordinator.accept_gift(alice.id, "owner-1")
        with pytest.raises(StaleStateError):
            coordinator.accept_gift(bob.id, "owner-1")

    def test_listing_taken_underneath(self, coordinator, db, gift_listing):
        """A listing that stopped being active fails the conditional update."""
        thread = coordinator.express_interest(gift_listing.id, "alice")
        with db.get_session() as session:
            db.transition_listing(
                session,
                gift_listing.id,
                [ListingStatus.ACTIVE],
                status=ListingStatus.PENDING_RESOLUTION.value,
            )
        with pytest.raises(StaleStateError):
            coordinator.accept_gift(thread.id, "owner-1")
        assert coordinator.get_thread(thread.id, "alice").status == ThreadStatus.ACTIVE

    def test_requester_cannot_accept(self, coordinator, gift_listing):
        """Only the owner accepts."""
        thread = coordinator.express_interest(gift_listing.id, "alice")
        with pytest.raises(NotParticipantError):
            coordinator.accept_gift(thread.id, "alice")

    def test_outsider(self, coordinator, gift_listing):
        """People outside the thread cannot act on it."""
        thread = coordinator.express_interest(gift_listing.id, "alice")
        with pytest.raises(NotParticipantError):
            coordinator.accept_gift(thread.id, "mallory")

    def test_wrong_modality(self, coordinator, loan_listing):
        """Loan listings are lent or converted, not accepted as gifts."""
        thread = coordinator.express_interest(loan_listing.id, "alice")
        with pytest.raises(InvalidActionError):
            coordinator.accept_gift(thread.id, "owner-1")

    def test_unknown_thread(self, coordinator):
        """Unknown threads raise NotFoundError."""
        with pytest.raises(NotFoundError):
            coordinator.accept_gift("nope", "owner-1")


class TestAtomicity:
    """Tests for all-or-nothing acceptance."""

    def test_integrity_failure_rolls_back(self, coordinator, db, listings, monkeypatch, gift_listing):
        """A broken post-write check undoes the whole acceptance."""
        alice = coordinator.express_interest(gift_listing.id, "alice")
        bob = coordinator.express_interest(gift_listing.id, "bob")
        monkeypatch.setattr(db, "count_winning_threads", lambda session, listing_id: 2)

        with pytest.raises(ExchangeIntegrityError):
            coordinator.accept_gift(alice.id, "owner-1")

        assert listings.get_listing(gift_listing.id).status == ListingStatus.ACTIVE
        assert coordinator.get_thread(alice.id, "alice").status == ThreadStatus.ACTIVE
        assert coordinator.get_thread(bob.id, "bob").status == ThreadStatus.ACTIVE

    def test_no_notifications_on_rollback(
        self, coordinator, db, notifier, monkeypatch, gift_listing
    ):
        """Events queued in a failed transaction are never sent."""
        alice = coordinator.express_interest(gift_listing.id, "alice")
        coordinator.express_interest(gift_listing.id, "bob")
        notifier.clear()
        monkeypatch.setattr(db, "count_winning_threads", lambda session, listing_id: 0)

        with pytest.raises(ExchangeIntegrityError):
            coordinator.accept_gift(alice.id, "owner-1")
        assert notifier.events == []

    def test_notifier_failure_does_not_undo(self, db, clock, listings, gift_listing):
        """A failing notifier never fails the transition."""
        from bookshare.exchange.coordinator import Coordinator

        coordinator = Coordinator(db, notifier=ExplodingNotifier(), clock=clock)
        thread = coordinator.express_interest(gift_listing.id, "alice")
        accepted = coordinator.accept_gift(thread.id, "owner-1")
        assert accepted.status == ThreadStatus.ACCEPTED
        assert listings.get_listing(gift_listing.id).status == ListingStatus.PENDING_RESOLUTION


class TestLoans:
    """Tests for lending."""

    def test_offer_with_explicit_date(self, coordinator, notifier, loan_listing):
        """An explicit future due date is kept as given."""
        thread = coordinator.express_interest(loan_listing.id, "alice")
        loaned = coordinator.offer_loan(thread.id, "owner-1", LoanTerms(due_date=date(2025, 6, 1)))
        assert loaned.status == ThreadStatus.ON_LOAN
        assert loaned.state.loan_due_date == date(2025, 6, 1)

        offered = notifier.of_kind(EventKind.LOAN_OFFERED)
        assert offered[0].recipient_user_id == "alice"
        assert offered[0].payload["due_date"] == "2025-06-01"

    def test_listing_duration_is_default(self, coordinator, loan_listing):
        """Without terms the listing's own duration applies."""
        thread = coordinator.express_interest(loan_listing.id, "alice")
        loaned = coordinator.offer_loan(thread.id, "owner-1", LoanTerms())
        assert loaned.state.loan_due_date == date(2025, 3, 31)

    def test_due_today_rejected(self, coordinator, listings, loan_listing):
        """A due date of today changes nothing."""
        thread = coordinator.express_interest(loan_listing.id, "alice")
        with pytest.raises(InvalidLoanTermsError):
            coordinator.offer_loan(thread.id, "owner-1", LoanTerms(due_date=date(2025, 3, 1)))
        assert listings.get_listing(loan_listing.id).status == ListingStatus.ACTIVE
        assert coordinator.get_thread(thread.id, "alice").status == ThreadStatus.ACTIVE

    @pytest.mark.parametrize("preset", list(LoanPreset))
    def test_presets_succeed(self, coordinator, loan_listing, preset):
        """Every preset is accepted."""
        thread = coordinator.express_interest(loan_listing.id, "alice")
        loaned = coordinator.offer_loan(thread.id, "owner-1", LoanTerms(preset=preset))
        assert loaned.state.loan_due_date == date(2025, 3, 1) + timedelta(days=preset.value)

    def test_gift_listing_cannot_be_lent(self, coordinator, gift_listing):
        """Only loan listings are lent."""
        thread = coordinator.express_interest(gift_listing.id, "alice")
        with pytest.raises(InvalidActionError):
            coordinator.offer_loan(thread.id, "owner-1", LoanTerms(preset=LoanPreset.DAYS_30))

    def test_overdue_is_derived(self, coordinator, clock, loan_listing):
        """An overdue loan is flagged but keeps its status."""
        thread = coordinator.express_interest(loan_listing.id, "alice")
        coordinator.offer_loan(thread.id, "owner-1", LoanTerms(preset=LoanPreset.DAYS_30))
        assert coordinator.overdue_loans() == []

        clock.advance(timedelta(days=31))
        overdue = coordinator.overdue_loans()
        assert [t.id for t in overdue] == [thread.id]
        assert overdue[0].is_overdue
        assert overdue[0].status == ThreadStatus.ON_LOAN
        assert coordinator.overdue_loans(user_id="bob") == []


class TestConvertLoanToGift:
    """Tests for giving a loan listing away for good."""

    def test_follows_gift_path(self, coordinator, listings, stats, loan_listing):
        """No due date, and completion counts as a gift."""
        thread = coordinator.express_interest(loan_listing.id, "alice")
        coordinator.express_interest(loan_listing.id, "bob")

        converted = coordinator.convert_loan_to_gift(thread.id, "owner-1")
        assert converted.status == ThreadStatus.ACCEPTED
        assert not hasattr(converted.state, "loan_due_date")

        listing = listings.get_listing(loan_listing.id)
        assert listing.modality == Modality.GIFT
        assert listing.loan_duration_days is None
        assert listing.status == ListingStatus.PENDING_RESOLUTION
        assert coordinator.summarize("owner-1").total_count == 0

        coordinator.mark_complete(thread.id, "owner-1")
        result = coordinator.mark_complete(thread.id, "alice")
        assert result.outcome == ResolutionOutcome.GIFT
        assert stats.get_stats("owner-1").books_given == 1
        assert stats.get_stats("alice").books_received == 1

    def test_only_loans(self, coordinator, gift_listing):
        """Gift listings are already gifts."""
        thread = coordinator.express_interest(gift_listing.id, "alice")
        with pytest.raises(InvalidActionError):
            coordinator.convert_loan_to_gift(thread.id, "owner-1")


class TestDeclineCancelDismiss:
    """Tests for the side exits from an open request."""

    def test_decline(self, coordinator, listings, notifier, gift_listing):
        """Declining notifies the requester and keeps the listing open."""
        thread = coordinator.express_interest(gift_listing.id, "alice")
        declined = coordinator.decline(thread.id, "owner-1")
        assert declined.status == ThreadStatus.DECLINED_BY_OWNER
        assert listings.get_listing(gift_listing.id).status == ListingStatus.ACTIVE

        event = notifier.of_kind(EventKind.REQUEST_DECISION)[-1]
        assert event.recipient_user_id == "alice"
        assert event.payload["decision"] == "declined"

    def test_decline_accepted_is_stale(self, coordinator, gift_listing):
        """Only open requests can be declined."""
        thread = coordinator.express_interest(gift_listing.id, "alice")
        coordinator.accept_gift(thread.id, "owner-1")
        with pytest.raises(StaleStateError):
            coordinator.decline(thread.id, "owner-1")

    def test_cancel(self, coordinator, notifier, gift_listing):
        """Cancelling notifies the owner and leaves a system message."""
        thread = coordinator.express_interest(gift_listing.id, "alice")
        cancelled = coordinator.cancel(thread.id, "alice")
        assert cancelled.status == ThreadStatus.CANCELLED_BY_REQUESTER

        event = notifier.of_kind(EventKind.REQUEST_CANCELLED)[0]
        assert event.recipient_user_id == "owner-1"
        messages = coordinator.get_messages(thread.id, "owner-1")
        assert messages[-1].system_message_type.value == "request_cancelled"

    def test_owner_cannot_cancel(self, coordinator, gift_listing):
        """Owners decline instead."""
        thread = coordinator.express_interest(gift_listing.id, "alice")
        with pytest.raises(NotParticipantError):
            coordinator.cancel(thread.id, "owner-1")

    def test_dismiss_after_decline(self, coordinator, gift_listing):
        """A declined requester can clear the thread."""
        thread = coordinator.express_interest(gift_listing.id, "alice")
        coordinator.decline(thread.id, "owner-1")
        assert coordinator.dismiss(thread.id, "alice").status == ThreadStatus.DISMISSED

    def test_dismiss_after_losing(self, coordinator, gift_listing):
        """A requester who lost the race can clear the thread."""
        alice = coordinator.express_interest(gift_listing.id, "alice")
        bob = coordinator.express_interest(gift_listing.id, "bob")
        coordinator.accept_gift(alice.id, "owner-1")
        assert coordinator.dismiss(bob.id, "bob").status == ThreadStatus.DISMISSED

    def test_dismiss_open_request(self, coordinator, gift_listing):
        """Open requests are cancelled, not dismissed."""
        thread = coordinator.express_interest(gift_listing.id, "alice")
        with pytest.raises(StaleStateError):
            coordinator.dismiss(thread.id, "alice")


class TestMessaging:
    """Tests for messages, unread counts and the inbox."""

    def test_first_message_is_a_request(self, coordinator, notifier, gift_listing):
        """The requester's first message goes out as a book request."""
        thread = coordinator.express_interest(gift_listing.id, "alice")
        notifier.clear()
        coordinator.send_message(thread.id, "alice", "Is it still available?")
        assert [e.kind for e in notifier.events] == [EventKind.BOOK_REQUESTED]

    def test_replies_are_new_messages(self, coordinator, notifier, gift_listing):
        """Later messages notify the other participant."""
        thread = coordinator.express_interest(gift_listing.id, "alice", message="Hi")
        notifier.clear()
        coordinator.send_message(thread.id, "owner-1", "Yes it is")
        coordinator.send_message(thread.id, "alice", "Great")

        events = notifier.of_kind(EventKind.NEW_MESSAGE)
        assert [e.recipient_user_id for e in events] == ["alice", "owner-1"]
        assert events[0].payload["recipient_role"] == "requester"

    def test_unread_counts(self, coordinator, gift_listing):
        """Unread counts track the other side until read."""
        thread = coordinator.express_interest(gift_listing.id, "alice", message="Hi")
        coordinator.send_message(thread.id, "alice", "Anyone?")
        assert coordinator.get_thread(thread.id, "owner-1").unread_counts == {"owner-1": 2}

        read = coordinator.mark_read(thread.id, "owner-1")
        assert read.unread_counts.get("owner-1", 0) == 0

    def test_mark_read_holds_listing_lock(self, coordinator, monkeypatch, gift_listing):
        """Resetting unread counts is serialized with new messages."""
        thread = coordinator.express_interest(gift_listing.id, "alice", message="Hi")
        locked = []
        original = coordinator._locked

        def recording_locked(listing_ids):
            listing_ids = list(listing_ids)
            locked.append(listing_ids)
            return original(listing_ids)

        monkeypatch.setattr(coordinator, "_locked", recording_locked)
        coordinator.mark_read(thread.id, "owner-1")
        assert locked == [[gift_listing.id]]

    def test_history_in_order(self, coordinator, gift_listing):
        """Messages come back oldest first."""
        thread = coordinator.express_interest(gift_listing.id, "alice", message="one")
        coordinator.send_message(thread.id, "owner-1", "two")
        coordinator.send_message(thread.id, "alice", "three")
        contents = [m.content for m in coordinator.get_messages(thread.id, "alice")]
        assert contents == ["one", "two", "three"]

    def test_empty_message(self, coordinator, gift_listing):
        """Blank messages are rejected."""
        thread = coordinator.express_interest(gift_listing.id, "alice")
        with pytest.raises(InvalidActionError):
            coordinator.send_message(thread.id, "alice", "   ")

    def test_outsider_cannot_post(self, coordinator, gift_listing):
        """Only participants post."""
        thread = coordinator.express_interest(gift_listing.id, "alice")
        with pytest.raises(NotParticipantError):
            coordinator.send_message(thread.id, "mallory", "hello")

    def test_message_reopens_cancelled(self, coordinator, gift_listing):
        """A requester messaging after cancelling re-opens the request."""
        thread = coordinator.express_interest(gift_listing.id, "alice")
        coordinator.cancel(thread.id, "alice")
        coordinator.send_message(thread.id, "alice", "Actually, I'd still like it")
        assert coordinator.get_thread(thread.id, "alice").status == ThreadStatus.ACTIVE

    def test_owner_message_does_not_reopen(self, coordinator, gift_listing):
        """Only the requester can re-open their request."""
        thread = coordinator.express_interest(gift_listing.id, "alice")
        coordinator.cancel(thread.id, "alice")
        coordinator.send_message(thread.id, "owner-1", "Sure?")
        status = coordinator.get_thread(thread.id, "alice").status
        assert status == ThreadStatus.CANCELLED_BY_REQUESTER

    def test_inbox_hides_cancelled(self, coordinator, gift_listing, loan_listing):
        """Cancelled requests drop out of the inbox."""
        kept = coordinator.express_interest(gift_listing.id, "alice")
        dropped = coordinator.express_interest(loan_listing.id, "alice")
        coordinator.cancel(dropped.id, "alice")
        assert [t.id for t in coordinator.list_threads("alice")] == [kept.id]

    def test_inbox_newest_first(self, coordinator, clock, gift_listing, loan_listing):
        """Threads are sorted by last activity."""
        older = coordinator.express_interest(gift_listing.id, "alice")
        clock.advance(timedelta(minutes=5))
        newer = coordinator.express_interest(loan_listing.id, "alice")
        assert [t.id for t in coordinator.list_threads("alice")] == [newer.id, older.id]

        clock.advance(timedelta(minutes=5))
        coordinator.send_message(older.id, "owner-1", "ping")
        assert [t.id for t in coordinator.list_threads("owner-1")] == [older.id, newer.id]


class TestListingLocks:
    """Tests for the per-listing lock registry."""

    def test_released_locks_are_dropped(self, coordinator, gift_listing, loan_listing):
        """No lock outlives the operations using it."""
        thread = coordinator.express_interest(gift_listing.id, "alice")
        coordinator.express_interest(loan_listing.id, "bob")
        coordinator.accept_gift(thread.id, "owner-1")
        assert coordinator._locks == {}

    def test_lock_kept_while_held(self, coordinator, gift_listing):
        """The entry lives as long as someone holds it."""
        with coordinator._locked([gift_listing.id]):
            assert list(coordinator._locks) == [gift_listing.id]
        assert coordinator._locks == {}

    def test_failed_operation_releases(self, coordinator, gift_listing):
        """Errors inside an operation still drop the lock."""
        thread = coordinator.express_interest(gift_listing.id, "alice")
        with pytest.raises(NotParticipantError):
            coordinator.accept_gift(thread.id, "alice")
        assert coordinator._locks == {}
