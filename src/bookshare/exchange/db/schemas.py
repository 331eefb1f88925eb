"""Shared enumerations for the exchange store."""

from enum import Enum, IntEnum


class Modality(str, Enum):
    """How a listing is shared."""

    GIFT = "gift"
    TRADE = "trade"
    LOAN = "loan"


class ListingStatus(str, Enum):
    """Lifecycle status of a listing."""

    ACTIVE = "active"
    PENDING_RESOLUTION = "pending_resolution"
    ARCHIVED = "archived"


class ThreadStatus(str, Enum):
    """Status of a negotiation thread."""

    ACTIVE = "active"
    ACCEPTED = "accepted"
    ON_LOAN = "on_loan"
    DECLINED_BY_OWNER = "declined_by_owner"
    CANCELLED_BY_REQUESTER = "cancelled_by_requester"
    GIVEN_TO_OTHER = "given_to_other"
    DISMISSED = "dismissed"
    RESOLVED = "resolved"


# A listing may have at most one thread in one of these at a time
WINNING_STATUSES = (ThreadStatus.ACCEPTED, ThreadStatus.ON_LOAN)


class ResolutionOutcome(str, Enum):
    """How a resolved thread ended."""

    GIFT = "gift"
    TRADE = "trade"
    LOAN_RELISTED = "loan_relisted"
    LOAN_ARCHIVED = "loan_archived"


class MessageType(str, Enum):
    """Kind of message stored in a thread."""

    USER = "user"
    SYSTEM = "system"
    TRADE_PROPOSAL = "trade_proposal"


class SystemMessageType(str, Enum):
    """Subtype for system messages."""

    REQUEST_CANCELLED = "request_cancelled"
    EXCHANGE_PROPOSED = "exchange_proposed"
    EXCHANGE_DECLINED = "exchange_declined"
    EXCHANGE_COMPLETED = "exchange_completed"
    GIFT_COMPLETED = "gift_completed"
    LOAN_RETURNED = "loan_returned"


class ProposalStatus(str, Enum):
    """Status of a trade proposal."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"


class LoanPreset(IntEnum):
    """Loan duration presets in days."""

    DAYS_30 = 30
    DAYS_60 = 60
    DAYS_90 = 90


class ParticipantRole(str, Enum):
    """Role of an actor within a thread."""

    OWNER = "owner"
    REQUESTER = "requester"
