"""Transition rules for negotiation threads.

Each function takes the current typed state and the acting role and returns
the next state, or raises. Nothing here touches the database; the
Coordinator persists the result with a conditional update so that the
transition only lands if the row still holds the state it was computed from.

    active ──accept──> accepted ──both complete──> resolved
       │   └─accept loan─> on_loan ──both confirm return──> resolved
       ├──decline──> declined_by_owner ──dismiss──> dismissed
       ├──cancel───> cancelled_by_requester ──reopen──> active
       └──(sibling accepted)──> given_to_other ──dismiss──> dismissed
                                      └──reopen (listing back on market)──> active
"""

from datetime import date
from typing import Optional, Union

from ..db.schemas import Modality, ParticipantRole, ResolutionOutcome, ThreadStatus
from ..errors import AlreadyCompletedError, NotParticipantError, StaleStateError
from .schemas import (
    AcceptedState,
    ActiveState,
    ClosedState,
    OnLoanState,
    ResolvedState,
    ThreadState,
)

DISMISSABLE = (ThreadStatus.DECLINED_BY_OWNER, ThreadStatus.GIVEN_TO_OTHER)
REOPENABLE = (ThreadStatus.CANCELLED_BY_REQUESTER, ThreadStatus.GIVEN_TO_OTHER)


def _require_role(role: ParticipantRole, expected: ParticipantRole, action: str) -> None:
    if role != expected:
        raise NotParticipantError(f"Only the {expected.value} can {action}")


def _require_status(state: ThreadState, *statuses: ThreadStatus) -> None:
    if state.status not in statuses:
        allowed = ", ".join(s.value for s in statuses)
        raise StaleStateError(
            f"Thread is {state.status.value}; expected {allowed}"
        )


def accept(
    state: ThreadState,
    role: ParticipantRole,
    modality: Modality,
    loan_due_date: Optional[date] = None,
) -> Union[AcceptedState, OnLoanState]:
    """Owner accepts the requester."""
    _require_role(role, ParticipantRole.OWNER, "accept")
    _require_status(state, ThreadStatus.ACTIVE)
    if modality == Modality.LOAN:
        if loan_due_date is None:
            raise ValueError("loan_due_date is required to accept a loan")
        return OnLoanState(loan_due_date=loan_due_date)
    return AcceptedState()


def decline(state: ThreadState, role: ParticipantRole) -> ClosedState:
    """Owner turns the requester down."""
    _require_role(role, ParticipantRole.OWNER, "decline")
    _require_status(state, ThreadStatus.ACTIVE)
    return ClosedState(status=ThreadStatus.DECLINED_BY_OWNER)


def cancel(state: ThreadState, role: ParticipantRole) -> ClosedState:
    """Requester withdraws their request."""
    _require_role(role, ParticipantRole.REQUESTER, "cancel")
    _require_status(state, ThreadStatus.ACTIVE)
    return ClosedState(status=ThreadStatus.CANCELLED_BY_REQUESTER)


def dismiss(state: ThreadState, role: ParticipantRole) -> ClosedState:
    """Requester acknowledges a decline or a lost race."""
    _require_role(role, ParticipantRole.REQUESTER, "dismiss")
    _require_status(state, *DISMISSABLE)
    return ClosedState(status=ThreadStatus.DISMISSED)


def give_to_other(state: ThreadState) -> ClosedState:
    """Another requester won the listing."""
    _require_status(state, ThreadStatus.ACTIVE)
    return ClosedState(status=ThreadStatus.GIVEN_TO_OTHER)


def reopen(state: ThreadState, role: ParticipantRole) -> ActiveState:
    """Requester asks again after cancelling, or after the book came back."""
    _require_role(role, ParticipantRole.REQUESTER, "reopen a request")
    _require_status(state, *REOPENABLE)
    return ActiveState()


def mark_complete(
    state: ThreadState, role: ParticipantRole
) -> Union[AcceptedState, OnLoanState]:
    """Record one side's confirmation of a hand-off or a loan return."""
    _require_status(state, ThreadStatus.ACCEPTED, ThreadStatus.ON_LOAN)
    if state.completed_by(role):
        raise AlreadyCompletedError(
            f"The {role.value} has already confirmed this exchange"
        )
    return state.mark(role)


def resolve(state: ThreadState, outcome: ResolutionOutcome) -> ResolvedState:
    """Close a fully confirmed exchange."""
    _require_status(state, ThreadStatus.ACCEPTED, ThreadStatus.ON_LOAN)
    if not state.both_completed:
        raise StaleStateError("Both parties must confirm before resolving")
    due = state.loan_due_date if isinstance(state, OnLoanState) else None
    return ResolvedState(outcome=outcome, loan_due_date=due)
