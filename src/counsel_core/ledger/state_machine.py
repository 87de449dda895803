from __future__ import annotations

from counsel_core.errors import InvalidTransitionError
from counsel_core.ledger.pricing import check_split
from counsel_core.store.models import Session, SessionStatus

TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.PENDING: frozenset({SessionStatus.PAID, SessionStatus.CANCELLED}),
    SessionStatus.PAID: frozenset({SessionStatus.COMPLETED, SessionStatus.REFUNDED}),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.CANCELLED: frozenset(),
    SessionStatus.REFUNDED: frozenset(),
}

TERMINAL = frozenset(status for status, targets in TRANSITIONS.items() if not targets)

# Which timestamp a transition stamps, if any.
STAMPS: dict[SessionStatus, str] = {
    SessionStatus.PAID: "paid_at",
    SessionStatus.COMPLETED: "completed_at",
}


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    return target in TRANSITIONS[current]


def check_transition(session: Session, target: SessionStatus) -> None:
    check_split(session.amount, session.commission, session.counselor_payout)
    if not can_transition(session.status, target):
        raise InvalidTransitionError(session.id, session.status.value, target.value)


def unlocks_chat(status: SessionStatus) -> bool:
    return status in (SessionStatus.PAID, SessionStatus.COMPLETED)
