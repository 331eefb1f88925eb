"""Interest registry and owner-facing summaries."""

from .registry import InterestRegistry
from .schemas import Interest, InterestSummary

__all__ = ["InterestRegistry", "Interest", "InterestSummary"]
