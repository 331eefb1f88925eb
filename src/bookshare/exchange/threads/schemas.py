"""Pydantic schemas for negotiation threads.

The thread status is modelled as a discriminated union so that each status
carries only the flags that make sense for it: completion flags exist only on
``AcceptedState``, return confirmations only on ``OnLoanState``. Writing a
state back to the ORM row resets every column the state does not own.
"""

from datetime import date, datetime, timedelta
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from ..db.schemas import (
    LoanPreset,
    MessageType,
    ParticipantRole,
    ResolutionOutcome,
    SystemMessageType,
    ThreadStatus,
)
from ..errors import InvalidLoanTermsError

_BLANK_COLUMNS = {
    "owner_completed": False,
    "requester_completed": False,
    "loan_due_date": None,
    "owner_confirmed_return": False,
    "requester_confirmed_return": False,
    "relist_on_return": None,
    "outcome": None,
}


class _State(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: ThreadStatus

    def _own_columns(self) -> dict:
        return {}

    def to_columns(self) -> dict:
        """Flat column values for this state."""
        columns = dict(_BLANK_COLUMNS, status=self.status.value)
        columns.update(self._own_columns())
        return columns


class ActiveState(_State):
    """Open negotiation, nobody accepted yet."""

    status: Literal[ThreadStatus.ACTIVE] = ThreadStatus.ACTIVE


class AcceptedState(_State):
    """Gift or trade agreed; waiting for both sides to mark the hand-off."""

    status: Literal[ThreadStatus.ACCEPTED] = ThreadStatus.ACCEPTED
    owner_completed: bool = False
    requester_completed: bool = False

    def completed_by(self, role: ParticipantRole) -> bool:
        if role == ParticipantRole.OWNER:
            return self.owner_completed
        return self.requester_completed

    def mark(self, role: ParticipantRole) -> "AcceptedState":
        field = "owner_completed" if role == ParticipantRole.OWNER else "requester_completed"
        return self.model_copy(update={field: True})

    @property
    def both_completed(self) -> bool:
        return self.owner_completed and self.requester_completed

    def _own_columns(self) -> dict:
        return {
            "owner_completed": self.owner_completed,
            "requester_completed": self.requester_completed,
        }


class OnLoanState(_State):
    """Book is with the borrower until both sides confirm the return."""

    status: Literal[ThreadStatus.ON_LOAN] = ThreadStatus.ON_LOAN
    loan_due_date: date
    owner_confirmed_return: bool = False
    requester_confirmed_return: bool = False
    relist_on_return: Optional[bool] = None

    def completed_by(self, role: ParticipantRole) -> bool:
        if role == ParticipantRole.OWNER:
            return self.owner_confirmed_return
        return self.requester_confirmed_return

    def mark(self, role: ParticipantRole) -> "OnLoanState":
        field = (
            "owner_confirmed_return"
            if role == ParticipantRole.OWNER
            else "requester_confirmed_return"
        )
        return self.model_copy(update={field: True})

    @property
    def both_completed(self) -> bool:
        return self.owner_confirmed_return and self.requester_confirmed_return

    def is_overdue(self, today: date) -> bool:
        return self.loan_due_date < today

    def days_until_due(self, today: date) -> int:
        """Days until due (negative if overdue)."""
        return (self.loan_due_date - today).days

    def _own_columns(self) -> dict:
        return {
            "loan_due_date": self.loan_due_date.isoformat(),
            "owner_confirmed_return": self.owner_confirmed_return,
            "requester_confirmed_return": self.requester_confirmed_return,
            "relist_on_return": self.relist_on_return,
        }


class ClosedState(_State):
    """Negotiation ended without a hand-off."""

    status: Literal[
        ThreadStatus.DECLINED_BY_OWNER,
        ThreadStatus.CANCELLED_BY_REQUESTER,
        ThreadStatus.GIVEN_TO_OTHER,
        ThreadStatus.DISMISSED,
    ]


class ResolvedState(_State):
    """Exchange finished; kept for history."""

    status: Literal[ThreadStatus.RESOLVED] = ThreadStatus.RESOLVED
    outcome: ResolutionOutcome
    loan_due_date: Optional[date] = None

    def _own_columns(self) -> dict:
        return {
            "outcome": self.outcome.value,
            "loan_due_date": self.loan_due_date.isoformat() if self.loan_due_date else None,
        }


ThreadState = Annotated[
    Union[ActiveState, AcceptedState, OnLoanState, ClosedState, ResolvedState],
    Field(discriminator="status"),
]

_state_adapter = TypeAdapter(ThreadState)


def state_from_columns(
    status: str,
    owner_completed: bool = False,
    requester_completed: bool = False,
    loan_due_date: Optional[str] = None,
    owner_confirmed_return: bool = False,
    requester_confirmed_return: bool = False,
    relist_on_return: Optional[bool] = None,
    outcome: Optional[str] = None,
) -> ThreadState:
    """Build the typed state from flat column values."""
    status = ThreadStatus(status)
    data: dict = {"status": status}

    if status == ThreadStatus.ACCEPTED:
        data.update(
            owner_completed=bool(owner_completed),
            requester_completed=bool(requester_completed),
        )
    elif status == ThreadStatus.ON_LOAN:
        data.update(
            loan_due_date=loan_due_date,
            owner_confirmed_return=bool(owner_confirmed_return),
            requester_confirmed_return=bool(requester_confirmed_return),
            relist_on_return=relist_on_return,
        )
    elif status == ThreadStatus.RESOLVED:
        data.update(outcome=outcome, loan_due_date=loan_due_date)

    return _state_adapter.validate_python(data)


class ThreadResponse(BaseModel):
    """Schema for thread responses."""

    id: str
    listing_id: str
    owner_id: str
    requester_id: str
    state: ThreadState
    is_overdue: bool
    last_message_at: datetime
    unread_counts: dict[str, int]
    created_at: datetime

    @property
    def status(self) -> ThreadStatus:
        return self.state.status

    @classmethod
    def from_model(cls, thread, today: Optional[date] = None) -> "ThreadResponse":
        state = thread.state
        overdue = (
            state.is_overdue(today or date.today())
            if isinstance(state, OnLoanState)
            else False
        )
        return cls(
            id=thread.id,
            listing_id=thread.listing_id,
            owner_id=thread.owner_id,
            requester_id=thread.requester_id,
            state=state,
            is_overdue=overdue,
            last_message_at=thread.last_message_at,
            unread_counts=thread.get_unread_counts(),
            created_at=thread.created_at,
        )


class MessageResponse(BaseModel):
    """Schema for message responses."""

    id: str
    thread_id: str
    sender_id: str
    content: str
    message_type: MessageType
    system_message_type: Optional[SystemMessageType] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class LoanTerms(BaseModel):
    """How long a loan runs: a preset duration or an explicit due date."""

    preset: Optional[LoanPreset] = None
    due_date: Optional[date] = None

    def resolve_due_date(self, today: date, default_days: Optional[int] = None) -> date:
        """Due date for a loan accepted on ``today``.

        Falls back to ``default_days`` (the listing's own duration) when
        neither a preset nor a date was chosen.
        """
        if self.preset is not None and self.due_date is not None:
            raise InvalidLoanTermsError("Choose a loan duration or a due date, not both")
        if self.due_date is not None:
            if self.due_date < today + timedelta(days=1):
                raise InvalidLoanTermsError("The due date must be tomorrow or later")
            return self.due_date
        days = self.preset.value if self.preset is not None else default_days
        if days is None:
            raise InvalidLoanTermsError("Choose a loan duration or a due date")
        return today + timedelta(days=days)
