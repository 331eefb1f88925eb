"""Interest registry.

An interest is the discoverable side of a negotiation thread: it exists
exactly when a thread exists, and counts toward an owner's badge while that
thread is still active. Summaries are recomputed on every call.
"""

from datetime import datetime
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..db.models import Listing, MessageThread
from ..db.schemas import ThreadStatus
from ..db.sqlite import Database, get_db
from ..errors import NotFoundError, NotParticipantError, SelfInterestError
from .schemas import Interest, InterestSummary

logger = structlog.get_logger(__name__)


class InterestRegistry:
    """Records interest in listings and aggregates it for owners."""

    def __init__(self, db: Optional[Database] = None):
        """Initialize interest registry.

        Args:
            db: Database instance
        """
        self.db = db or get_db()

    def register(
        self,
        session: Session,
        listing: Listing,
        user_id: str,
        now: datetime,
    ) -> tuple[MessageThread, bool]:
        """Create the thread for (listing, user) unless it already exists.

        Args:
            session: Open transaction
            listing: Listing being requested
            user_id: Interested user
            now: Creation time

        Returns:
            The thread and whether it was created by this call
        """
        if user_id == listing.owner_id:
            raise SelfInterestError("You cannot request your own listing")

        existing = self.db.find_thread(listing.id, user_id, session=session)
        if existing:
            return existing, False

        stamp = now.isoformat()
        thread = MessageThread(
            listing_id=listing.id,
            owner_id=listing.owner_id,
            requester_id=user_id,
            status=ThreadStatus.ACTIVE.value,
            last_message_at=stamp,
            created_at=stamp,
            message_count=0,
        )
        session.add(thread)
        session.flush()

        logger.info(
            "interest_registered",
            listing_id=listing.id,
            thread_id=thread.id,
            user_id=user_id,
        )
        return thread, True

    def summarize(self, owner_id: str) -> InterestSummary:
        """Aggregate open requests across all of an owner's listings.

        Args:
            owner_id: Listing owner

        Returns:
            InterestSummary with counts and the individual interests
        """
        with self.db.get_session() as session:
            listing_ids = list(
                session.execute(
                    select(Listing.id).where(Listing.owner_id == owner_id)
                ).scalars()
            )
            threads = self.db.get_threads_for_listings(
                listing_ids, statuses=[ThreadStatus.ACTIVE], session=session
            )
            interests = [self._to_interest(thread) for thread in threads]

        return InterestSummary(
            total_count=len(interests),
            unique_people=len({i.interested_user_id for i in interests}),
            unique_posts=len({i.listing_id for i in interests}),
            interests=interests,
        )

    def interests_for_listing(self, listing_id: str, owner_id: str) -> list[Interest]:
        """Open requests on one listing, flagged when a proposal awaits an answer.

        Args:
            listing_id: Listing ID
            owner_id: Acting user, must own the listing

        Returns:
            List of interests, oldest first
        """
        with self.db.get_session() as session:
            listing = self.db.get_listing(listing_id, session)
            if not listing:
                raise NotFoundError("Listing not found")
            if listing.owner_id != owner_id:
                raise NotParticipantError("Only the owner can see who asked for this book")

            threads = self.db.get_threads_for_listings(
                [listing_id], statuses=[ThreadStatus.ACTIVE], session=session
            )
            return [
                self._to_interest(
                    thread,
                    has_pending_proposal=self.db.get_pending_proposal(thread.id, session)
                    is not None,
                )
                for thread in threads
            ]

    @staticmethod
    def _to_interest(thread: MessageThread, has_pending_proposal: bool = False) -> Interest:
        return Interest(
            id=thread.id,
            listing_id=thread.listing_id,
            interested_user_id=thread.requester_id,
            owner_id=thread.owner_id,
            created_at=thread.created_at,
            has_pending_proposal=has_pending_proposal,
        )
