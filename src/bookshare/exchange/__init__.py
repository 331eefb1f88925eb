"""Book exchange coordination engine."""

from .coordinator import Coordinator
from .errors import (
    AlreadyCompletedError,
    ExchangeError,
    ExchangeIntegrityError,
    InvalidActionError,
    InvalidLoanTermsError,
    NotFoundError,
    NotParticipantError,
    ProposalPendingError,
    ProposalTargetUnavailableError,
    SelfInterestError,
    StaleStateError,
)

__version__ = "0.1.0"

__all__ = [
    "Coordinator",
    "AlreadyCompletedError",
    "ExchangeError",
    "ExchangeIntegrityError",
    "InvalidActionError",
    "InvalidLoanTermsError",
    "NotFoundError",
    "NotParticipantError",
    "ProposalPendingError",
    "ProposalTargetUnavailableError",
    "SelfInterestError",
    "StaleStateError",
]
