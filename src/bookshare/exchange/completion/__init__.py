"""Dual-confirmation completion tracking."""

from .schemas import CompletionResult
from .tracker import CompletionTracker

__all__ = ["CompletionResult", "CompletionTracker"]
