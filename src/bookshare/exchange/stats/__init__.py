"""Exchange statistics on user profiles."""

from .models import UserStats
from .schemas import StatCounter, UserStatsResponse
from .sink import DatabaseStatsSink, StatsSink

__all__ = [
    "UserStats",
    "StatCounter",
    "UserStatsResponse",
    "DatabaseStatsSink",
    "StatsSink",
]
