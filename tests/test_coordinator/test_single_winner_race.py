"""Concurrent acceptance on a file-backed database."""

import threading
from datetime import datetime, timezone

from bookshare.exchange.coordinator import Coordinator
from bookshare.exchange.db.schemas import ListingStatus, Modality, ThreadStatus
from bookshare.exchange.errors import StaleStateError
from bookshare.exchange.listings import ListingCreate, ListingManager
from bookshare.exchange.notify import RecordingNotifier


class TestConcurrentAccept:
    """Two owners' clicks racing on one listing."""

    def test_only_one_accept_wins(self, file_db):
        """Exactly one accept succeeds; the other sees StaleStateError."""
        coordinator = Coordinator(
            file_db,
            notifier=RecordingNotifier(),
            clock=lambda: datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc),
        )
        listing = ListingManager(file_db).create_listing(
            ListingCreate(owner_id="owner-1", title="Dune", modality=Modality.GIFT)
        )
        threads = [
            coordinator.express_interest(listing.id, user) for user in ("alice", "bob", "carol")
        ]

        barrier = threading.Barrier(len(threads))
        outcomes: dict[str, object] = {}

        def accept(thread_id: str) -> None:
            barrier.wait()
            try:
                outcomes[thread_id] = coordinator.accept_gift(thread_id, "owner-1")
            except StaleStateError as e:
                outcomes[thread_id] = e

        workers = [threading.Thread(target=accept, args=(t.id,)) for t in threads]
        for worker in workers:
            worker.start()
        for worker in workers:
            worker.join(timeout=30)

        winners = [v for v in outcomes.values() if not isinstance(v, Exception)]
        losers = [v for v in outcomes.values() if isinstance(v, StaleStateError)]
        assert len(winners) == 1
        assert len(losers) == 2

        statuses = sorted(
            coordinator.get_thread(t.id, t.requester_id).status.value for t in threads
        )
        assert statuses == sorted(
            [ThreadStatus.ACCEPTED.value] + [ThreadStatus.GIVEN_TO_OTHER.value] * 2
        )
        stored = ListingManager(file_db).get_listing(listing.id)
        assert stored.status == ListingStatus.PENDING_RESOLUTION
