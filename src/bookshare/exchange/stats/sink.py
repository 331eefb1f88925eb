"""Statistics sinks.

The engine only ever increments counters; it never reads them back to make
decisions.
"""

from abc import ABC, abstractmethod
from typing import Optional

import structlog
from sqlalchemy import update
from sqlalchemy.orm import Session

from ..db.sqlite import Database
from .models import UserStats
from .schemas import StatCounter, UserStatsResponse

logger = structlog.get_logger(__name__)


class StatsSink(ABC):
    """Receives counter increments for user profiles."""

    @abstractmethod
    def increment(
        self,
        user_id: str,
        counter: StatCounter,
        amount: int = 1,
        session: Optional[Session] = None,
    ) -> None:
        """Add ``amount`` to a user's counter.

        Args:
            user_id: Profile to update
            counter: Which counter
            amount: How much to add
            session: Open transaction to join, if the sink shares the store
        """


class DatabaseStatsSink(StatsSink):
    """Keeps counters in the ``user_stats`` table."""

    def __init__(self, db: Database):
        self.db = db

    def increment(
        self,
        user_id: str,
        counter: StatCounter,
        amount: int = 1,
        session: Optional[Session] = None,
    ) -> None:
        def _increment(s: Session) -> None:
            column = getattr(UserStats, counter.value)
            result = s.execute(
                update(UserStats)
                .where(UserStats.user_id == user_id)
                .values({column: column + amount})
            )
            if result.rowcount == 0:
                s.add(UserStats(user_id=user_id, **{counter.value: amount}))
                s.flush()
            logger.debug(
                "stat_incremented", user_id=user_id, counter=counter.value, amount=amount
            )

        if session:
            _increment(session)
        else:
            with self.db.get_session() as s:
                _increment(s)

    def get_stats(self, user_id: str) -> UserStatsResponse:
        """Current counters for display."""
        with self.db.get_session() as session:
            stats = session.get(UserStats, user_id)
            if stats is None:
                return UserStatsResponse(user_id=user_id)
            return UserStatsResponse.model_validate(stats)
