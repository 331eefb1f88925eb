"""Pytest configuration and shared fixtures.

This module provides fixtures for testing the exchange engine: an in-memory
database, a frozen clock, a recording notifier, and a few sample listings.
"""

import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator

import pytest

from bookshare.exchange.config import reset_config
from bookshare.exchange.coordinator import Coordinator
from bookshare.exchange.db.schemas import Modality
from bookshare.exchange.db.sqlite import Database, reset_db
from bookshare.exchange.listings import ListingCreate, ListingManager, ListingResponse
from bookshare.exchange.notify import RecordingNotifier
from bookshare.exchange.stats import DatabaseStatsSink

OWNER = "owner-1"
ALICE = "alice"
BOB = "bob"
CAROL = "carol"


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta) -> None:
        self.now = self.now + delta


# ============================================================================
# Database Fixtures
# ============================================================================


@pytest.fixture(scope="function")
def db() -> Generator[Database, None, None]:
    """Create an in-memory database for testing."""
    reset_db()
    reset_config()
    database = Database(":memory:")
    database.create_tables()
    yield database
    reset_db()


@pytest.fixture(scope="function")
def file_db() -> Generator[Database, None, None]:
    """Create a file-backed database, for tests that use several threads."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)
    database = Database(str(db_path))
    database.create_tables()
    yield database
    database.engine.dispose()
    if db_path.exists():
        db_path.unlink()


# ============================================================================
# Engine Fixtures
# ============================================================================


@pytest.fixture
def clock() -> FrozenClock:
    """A clock frozen at 2025-03-01 12:00 UTC."""
    return FrozenClock(datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def notifier() -> RecordingNotifier:
    """Collect notifications instead of sending them."""
    return RecordingNotifier()


@pytest.fixture
def stats(db: Database) -> DatabaseStatsSink:
    """Statistics sink over the test database."""
    return DatabaseStatsSink(db)


@pytest.fixture
def coordinator(
    db: Database, notifier: RecordingNotifier, stats: DatabaseStatsSink, clock: FrozenClock
) -> Coordinator:
    """Coordinator wired to the test database, notifier and clock."""
    return Coordinator(db, notifier=notifier, stats=stats, clock=clock)


@pytest.fixture
def listings(db: Database) -> ListingManager:
    """Listing manager over the test database."""
    return ListingManager(db)


# ============================================================================
# Sample Data Fixtures
# ============================================================================


@pytest.fixture
def gift_listing(listings: ListingManager) -> ListingResponse:
    """An active gift listing owned by OWNER."""
    return listings.create_listing(
        ListingCreate(owner_id=OWNER, title="Dune", author="Frank Herbert", modality=Modality.GIFT)
    )


@pytest.fixture
def loan_listing(listings: ListingManager) -> ListingResponse:
    """An active 30-day loan listing owned by OWNER."""
    return listings.create_listing(
        ListingCreate(
            owner_id=OWNER,
            title="The Left Hand of Darkness",
            author="Ursula K. Le Guin",
            modality=Modality.LOAN,
            loan_duration_days=30,
        )
    )


@pytest.fixture
def trade_listing(listings: ListingManager) -> ListingResponse:
    """An active trade listing owned by OWNER."""
    return listings.create_listing(
        ListingCreate(
            owner_id=OWNER, title="Neuromancer", author="William Gibson", modality=Modality.TRADE
        )
    )


@pytest.fixture
def cli_env() -> Generator[Path, None, None]:
    """Point the CLI at a fresh database file."""
    reset_db()
    reset_config()
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)
    os.environ["BOOKSHARE_DB_PATH"] = str(db_path)

    yield db_path

    reset_db()
    reset_config()
    del os.environ["BOOKSHARE_DB_PATH"]
    if db_path.exists():
        db_path.unlink()
