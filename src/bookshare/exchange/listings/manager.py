"""Listing manager for book posting operations."""

from typing import Optional

import structlog
from sqlalchemy import func, select

from ..db.models import Listing, MessageThread
from ..db.schemas import ListingStatus, Modality
from ..db.sqlite import Database, get_db
from ..errors import InvalidActionError, NotFoundError, NotParticipantError, StaleStateError
from .schemas import ListingCreate, ListingResponse

logger = structlog.get_logger(__name__)


class ListingManager:
    """Manages book listings outside of a negotiation."""

    def __init__(self, db: Optional[Database] = None):
        """Initialize listing manager.

        Args:
            db: Database instance
        """
        self.db = db or get_db()

    def create_listing(self, data: ListingCreate) -> ListingResponse:
        """Create a new listing.

        Args:
            data: Listing creation data

        Returns:
            Created listing
        """
        with self.db.get_session() as session:
            listing = Listing(
                owner_id=data.owner_id,
                title=data.title,
                author=data.author,
                modality=data.modality.value,
                loan_duration_days=data.loan_duration_days,
                status=ListingStatus.ACTIVE.value,
            )
            session.add(listing)
            session.flush()
            logger.info(
                "listing_created",
                listing_id=listing.id,
                owner_id=listing.owner_id,
                modality=listing.modality,
            )
            return ListingResponse.from_model(listing)

    def get_listing(self, listing_id: str) -> Optional[ListingResponse]:
        """Get a listing by ID.

        Args:
            listing_id: Listing ID

        Returns:
            Listing or None
        """
        listing = self.db.get_listing(listing_id)
        return ListingResponse.from_model(listing) if listing else None

    def list_listings(
        self,
        owner_id: Optional[str] = None,
        status: Optional[ListingStatus] = None,
        modality: Optional[Modality] = None,
    ) -> list[ListingResponse]:
        """List listings with optional filters.

        Args:
            owner_id: Filter by owner
            status: Filter by status
            modality: Filter by modality

        Returns:
            List of listings, newest first
        """
        with self.db.get_session() as session:
            stmt = select(Listing)
            if owner_id:
                stmt = stmt.where(Listing.owner_id == owner_id)
            if status:
                stmt = stmt.where(Listing.status == status.value)
            if modality:
                stmt = stmt.where(Listing.modality == modality.value)
            stmt = stmt.order_by(Listing.created_at.desc(), Listing.id)

            listings = session.execute(stmt).scalars().all()
            return [ListingResponse.from_model(listing) for listing in listings]

    def relist_listing(self, listing_id: str, owner_id: str) -> ListingResponse:
        """Put an archived listing back on the market.

        Args:
            listing_id: Listing ID
            owner_id: Acting user, must own the listing

        Returns:
            Active listing
        """
        with self.db.get_session() as session:
            self._get_owned(session, listing_id, owner_id)
            relisted = self.db.transition_listing(
                session,
                listing_id,
                [ListingStatus.ARCHIVED],
                status=ListingStatus.ACTIVE.value,
                archived_at=None,
                agreed_exchange=None,
                given_to=None,
            )
            if not relisted:
                raise StaleStateError("Only archived listings can be relisted")
            logger.info("listing_relisted", listing_id=listing_id)
            return ListingResponse.from_model(self.db.get_listing(listing_id, session))

    def delete_listing(self, listing_id: str, owner_id: str) -> bool:
        """Delete a listing nobody has asked about.

        Threads are kept for history, so a listing with any thread can only
        be archived.

        Args:
            listing_id: Listing ID
            owner_id: Acting user, must own the listing

        Returns:
            True if deleted
        """
        with self.db.get_session() as session:
            listing = self._get_owned(session, listing_id, owner_id)
            if listing.status == ListingStatus.PENDING_RESOLUTION.value:
                raise StaleStateError("Listing has an exchange in progress")
            thread_count = session.execute(
                select(func.count()).where(MessageThread.listing_id == listing_id)
            ).scalar() or 0
            if thread_count:
                raise InvalidActionError(
                    "Listings with requests cannot be deleted; archive it instead"
                )
            session.delete(listing)
            logger.info("listing_deleted", listing_id=listing_id)
            return True

    def _get_owned(self, session, listing_id: str, owner_id: str) -> Listing:
        listing = self.db.get_listing(listing_id, session)
        if not listing:
            raise NotFoundError("Listing not found")
        if listing.owner_id != owner_id:
            raise NotParticipantError("Only the owner can change this listing")
        return listing
