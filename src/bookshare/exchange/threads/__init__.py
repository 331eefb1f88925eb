"""Negotiation thread states and transition rules."""

from . import machine
from .schemas import (
    AcceptedState,
    ActiveState,
    ClosedState,
    LoanTerms,
    MessageResponse,
    OnLoanState,
    ResolvedState,
    ThreadResponse,
    ThreadState,
    state_from_columns,
)

__all__ = [
    "machine",
    "AcceptedState",
    "ActiveState",
    "ClosedState",
    "LoanTerms",
    "MessageResponse",
    "OnLoanState",
    "ResolvedState",
    "ThreadResponse",
    "ThreadState",
    "state_from_columns",
]
