"""Exceptions raised by the exchange engine.

Every ``ExchangeError`` is user-facing: the caller shows the message and lets
the user retry or refresh. ``ExchangeIntegrityError`` is not one of them; it
signals a data-integrity bug and always aborts the enclosing transaction.
"""


class ExchangeError(Exception):
    """Base class for recoverable exchange errors."""

    code = "EXCHANGE_ERROR"


class NotFoundError(ExchangeError):
    """Listing, thread or proposal does not exist."""

    code = "NOT_FOUND"


class SelfInterestError(ExchangeError):
    """A user tried to request their own listing."""

    code = "SELF_INTEREST"


class NotParticipantError(ExchangeError):
    """Actor is not a participant, or lacks authority for the action."""

    code = "NOT_PARTICIPANT"


class StaleStateError(ExchangeError):
    """A precondition no longer holds; the caller should refresh."""

    code = "STALE_STATE"


class InvalidLoanTermsError(ExchangeError):
    """Loan terms are malformed or the due date is not in the future."""

    code = "INVALID_LOAN_TERMS"


class AlreadyCompletedError(ExchangeError):
    """The actor already marked this hand-off complete."""

    code = "ALREADY_COMPLETED"


class ProposalTargetUnavailableError(ExchangeError):
    """The listing a trade proposal points at is archived, taken or gone."""

    code = "PROPOSAL_TARGET_UNAVAILABLE"


class ProposalPendingError(ExchangeError):
    """A proposal is already awaiting an answer on this thread."""

    code = "PROPOSAL_PENDING"


class InvalidActionError(ExchangeError):
    """Action is not valid for this listing or input."""

    code = "INVALID_ACTION"


class ExchangeIntegrityError(Exception):
    """Cross-entity invariant found broken after a write."""

    code = "INTEGRITY_VIOLATION"
