"""SQLite database operations.

Handles database connection, session management, lookups, and the atomic
conditional updates the exchange invariants rely on.
"""

import os
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Iterable, Optional

from sqlalchemy import and_, create_engine, func, or_, select, update
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..threads.schemas import ThreadState
from .models import Base, Listing, Message, MessageThread, utcnow_iso
from .schemas import (
    ListingStatus,
    MessageType,
    ProposalStatus,
    SystemMessageType,
    ThreadStatus,
    WINNING_STATUSES,
)


class Database:
    """Database connection and operations manager."""

    def __init__(self, db_path: Optional[str] = None):
        """Initialize database connection.

        Args:
            db_path: Path to SQLite database file. If None, uses
                     BOOKSHARE_DB_PATH env var or default location.
        """
        if db_path is None:
            db_path = os.environ.get(
                "BOOKSHARE_DB_PATH",
                str(Path.home() / ".bookshare" / "exchange.db"),
            )

        self.db_path = Path(db_path)
        self._is_memory = str(db_path) == ":memory:"

        if not self._is_memory:
            self._ensure_directory()

        # For in-memory databases, use StaticPool to reuse the same connection
        # This ensures all sessions share the same in-memory database
        if self._is_memory:
            self.engine = create_engine(
                "sqlite:///:memory:",
                echo=False,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            self.engine = create_engine(
                f"sqlite:///{self.db_path}",
                echo=False,
                connect_args={"check_same_thread": False, "timeout": 30},
            )
        self.SessionLocal = sessionmaker(
            bind=self.engine, autocommit=False, autoflush=False, expire_on_commit=False
        )

    def _ensure_directory(self) -> None:
        """Ensure the database directory exists."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def create_tables(self) -> None:
        """Create all database tables."""
        # Import stats models to register them with Base
        from ..stats.models import UserStats  # noqa: F401

        Base.metadata.create_all(self.engine)

    def drop_tables(self) -> None:
        """Drop all database tables. Use with caution!"""
        Base.metadata.drop_all(self.engine)

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """Get a database session context manager."""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ========================================================================
    # Lookups
    # ========================================================================

    def get_listing(
        self, listing_id: str, session: Optional[Session] = None
    ) -> Optional[Listing]:
        """Get a listing by ID."""

        def _get(s: Session) -> Optional[Listing]:
            return s.get(Listing, listing_id)

        if session:
            return _get(session)
        else:
            with self.get_session() as s:
                listing = _get(s)
                if listing:
                    s.expunge(listing)
                return listing

    def get_thread(
        self, thread_id: str, session: Optional[Session] = None
    ) -> Optional[MessageThread]:
        """Get a thread by ID."""

        def _get(s: Session) -> Optional[MessageThread]:
            return s.get(MessageThread, thread_id)

        if session:
            return _get(session)
        else:
            with self.get_session() as s:
                thread = _get(s)
                if thread:
                    s.expunge(thread)
                return thread

    def find_thread(
        self, listing_id: str, requester_id: str, session: Optional[Session] = None
    ) -> Optional[MessageThread]:
        """Get the thread for a (listing, requester) pair."""

        def _find(s: Session) -> Optional[MessageThread]:
            stmt = select(MessageThread).where(
                MessageThread.listing_id == listing_id,
                MessageThread.requester_id == requester_id,
            )
            return s.execute(stmt).scalar_one_or_none()

        if session:
            return _find(session)
        else:
            with self.get_session() as s:
                thread = _find(s)
                if thread:
                    s.expunge(thread)
                return thread

    def get_threads_for_listings(
        self,
        listing_ids: Iterable[str],
        statuses: Optional[Iterable[ThreadStatus]] = None,
        session: Optional[Session] = None,
    ) -> list[MessageThread]:
        """Get threads on any of the given listings."""
        listing_ids = list(listing_ids)

        def _get(s: Session) -> list[MessageThread]:
            if not listing_ids:
                return []
            stmt = select(MessageThread).where(MessageThread.listing_id.in_(listing_ids))
            if statuses is not None:
                stmt = stmt.where(MessageThread.status.in_([st.value for st in statuses]))
            stmt = stmt.order_by(MessageThread.created_at, MessageThread.id)
            return list(s.execute(stmt).scalars().all())

        if session:
            return _get(session)
        else:
            with self.get_session() as s:
                threads = _get(s)
                for thread in threads:
                    s.expunge(thread)
                return threads

    def get_threads_for_user(
        self, user_id: str, session: Optional[Session] = None
    ) -> list[MessageThread]:
        """Get all threads a user participates in, newest activity first."""

        def _get(s: Session) -> list[MessageThread]:
            stmt = (
                select(MessageThread)
                .where(
                    or_(
                        MessageThread.owner_id == user_id,
                        MessageThread.requester_id == user_id,
                    )
                )
                .order_by(MessageThread.last_message_at.desc(), MessageThread.id)
            )
            return list(s.execute(stmt).scalars().all())

        if session:
            return _get(session)
        else:
            with self.get_session() as s:
                threads = _get(s)
                for thread in threads:
                    s.expunge(thread)
                return threads

    def get_messages(
        self, thread_id: str, session: Optional[Session] = None
    ) -> list[Message]:
        """Get a thread's messages in order."""

        def _get(s: Session) -> list[Message]:
            stmt = select(Message).where(Message.thread_id == thread_id).order_by(Message.seq)
            return list(s.execute(stmt).scalars().all())

        if session:
            return _get(session)
        else:
            with self.get_session() as s:
                messages = _get(s)
                for message in messages:
                    s.expunge(message)
                return messages

    def get_pending_proposal(
        self, thread_id: str, session: Optional[Session] = None
    ) -> Optional[Message]:
        """Get the pending trade proposal on a thread, if any."""

        def _get(s: Session) -> Optional[Message]:
            stmt = select(Message).where(
                Message.thread_id == thread_id,
                Message.message_type == MessageType.TRADE_PROPOSAL.value,
                Message.proposal_status == ProposalStatus.PENDING.value,
            )
            return s.execute(stmt).scalar_one_or_none()

        if session:
            return _get(session)
        else:
            with self.get_session() as s:
                message = _get(s)
                if message:
                    s.expunge(message)
                return message

    def count_winning_threads(self, session: Session, listing_id: str) -> int:
        """Threads on a listing currently holding it (accepted or on loan)."""
        stmt = select(func.count()).where(
            MessageThread.listing_id == listing_id,
            MessageThread.status.in_([st.value for st in WINNING_STATUSES]),
        )
        return session.execute(stmt).scalar() or 0

    # ========================================================================
    # Conditional updates
    # ========================================================================

    def transition_listing(
        self,
        session: Session,
        listing_id: str,
        expected: Iterable[ListingStatus],
        **values,
    ) -> bool:
        """Update a listing only if its status is one of ``expected``.

        Returns:
            True if the row was updated
        """
        stmt = (
            update(Listing)
            .where(
                Listing.id == listing_id,
                Listing.status.in_([st.value for st in expected]),
            )
            .values(version=Listing.version + 1, updated_at=utcnow_iso(), **values)
            .execution_options(synchronize_session=False)
        )
        session.flush()
        updated = session.execute(stmt).rowcount == 1
        if updated:
            session.expire_all()
        return updated

    def transition_thread(
        self,
        session: Session,
        thread_id: str,
        expected: ThreadState,
        new: ThreadState,
    ) -> bool:
        """Move a thread from ``expected`` to ``new`` if it still holds ``expected``.

        Every status column is compared, so a concurrent change to any
        completion flag also makes the update miss.

        Returns:
            True if the row was updated
        """
        clauses = [MessageThread.id == thread_id]
        for name, value in expected.to_columns().items():
            column = getattr(MessageThread, name)
            clauses.append(column.is_(None) if value is None else column == value)

        stmt = (
            update(MessageThread)
            .where(and_(*clauses))
            .values(updated_at=utcnow_iso(), **new.to_columns())
            .execution_options(synchronize_session=False)
        )
        session.flush()
        updated = session.execute(stmt).rowcount == 1
        if updated:
            session.expire_all()
        return updated

    # ========================================================================
    # Messages
    # ========================================================================

    def add_message(
        self,
        session: Session,
        thread: MessageThread,
        sender_id: str,
        content: str = "",
        message_type: MessageType = MessageType.USER,
        system_message_type: Optional[SystemMessageType] = None,
        offered_listing_id: Optional[str] = None,
        requested_listing_id: Optional[str] = None,
        created_at: Optional[str] = None,
    ) -> Message:
        """Append a message to a thread."""
        thread.message_count = (thread.message_count or 0) + 1
        message = Message(
            thread_id=thread.id,
            seq=thread.message_count,
            sender_id=sender_id,
            content=content,
            message_type=message_type.value,
            system_message_type=system_message_type.value if system_message_type else None,
            offered_listing_id=offered_listing_id,
            requested_listing_id=requested_listing_id,
            proposal_status=(
                ProposalStatus.PENDING.value
                if message_type == MessageType.TRADE_PROPOSAL
                else None
            ),
            created_at=created_at or utcnow_iso(),
        )
        session.add(message)
        session.flush()
        return message


# Global database instance
_db: Optional[Database] = None


def get_db(db_path: Optional[str] = None) -> Database:
    """Get or create the global database instance."""
    global _db
    if _db is None:
        _db = Database(db_path)
        _db.create_tables()
    return _db


def reset_db() -> None:
    """Reset the global database instance. Used for testing."""
    global _db
    _db = None
