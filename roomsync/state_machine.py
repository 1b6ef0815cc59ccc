# Booking state machine: the single authority on which status transitions are legal,
# who may request them, and which side effects a committed transition produces.
# Pure functions only; persistence and serialization live in coordinator.py.
from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, FrozenSet, List, Mapping, Optional

from .errors import AuthorizationError, InvalidStateError, ValidationError
from .models import BookingStatus, EventKind

# Loyalty points credited to the requester per confirmed booking
LOYALTY_POINTS_PER_BOOKING = int(os.getenv("LOYALTY_POINTS_PER_BOOKING", "10"))
# Reputation delta applied to the owner per confirmed booking
REPUTATION_DELTA_PER_BOOKING = int(os.getenv("REPUTATION_DELTA_PER_BOOKING", "1"))

TRANSITIONS: Mapping[BookingStatus, FrozenSet[BookingStatus]] = {
    BookingStatus.PENDING: frozenset(
        {BookingStatus.CONFIRMED, BookingStatus.REJECTED, BookingStatus.CANCELLED}
    ),
    BookingStatus.CONFIRMED: frozenset(),
    BookingStatus.REJECTED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
}

DECISIONS: FrozenSet[BookingStatus] = frozenset({BookingStatus.CONFIRMED, BookingStatus.REJECTED})

# cancel_reason values
REASON_CANCELLED = "cancelled"
REASON_EXPIRED = "expired"


def is_terminal(current: BookingStatus) -> bool:
    return not TRANSITIONS[current]


def transition(current: BookingStatus | str, target: BookingStatus | str) -> bool:
    """
    Check a requested transition.

    Returns True when the booking must move to 'target', False when it is already there
    (idempotent re-application). Raises InvalidStateError for anything else, including any
    attempt to leave a terminal state.
    """
    current = BookingStatus(current)
    target = BookingStatus(target)
    if current == target and is_terminal(current):
        return False
    if target not in TRANSITIONS[current]:
        raise InvalidStateError(
            f"Booking is already {current.value}; cannot move to {target.value}",
            current_status=current.value,
        )
    return True


def parse_decision(decision: BookingStatus | str) -> BookingStatus:
    try:
        value = BookingStatus(decision)
    except ValueError:
        raise ValidationError(f"Unknown decision: {decision!r}") from None
    if value not in DECISIONS:
        raise ValidationError("Decision must be 'confirmed' or 'rejected'")
    return value


def validate_submission(
    *,
    requester_id: int,
    owner_id: int,
    requested_date: date,
    num_of_people: int,
    today: Optional[date] = None,
) -> None:
    today = today or date.today()
    if num_of_people is None or num_of_people < 1:
        raise ValidationError("num_of_people must be at least 1")
    if requested_date < today:
        raise ValidationError("requested_date cannot be in the past")
    if owner_id == requester_id:
        raise ValidationError("You cannot book your own listing")


def authorize_decision(*, is_owner: bool, is_admin: bool) -> None:
    if not (is_owner or is_admin):
        raise AuthorizationError("Only the listing owner or an admin can confirm or reject")


def authorize_cancel(*, requester_id: int, actor_id: int) -> None:
    if requester_id != actor_id:
        raise AuthorizationError("Only the requester can cancel this booking")


@dataclass(frozen=True)
class SideEffect:
    """An event emitted by a committed transition, keyed for idempotent delivery."""

    booking_id: int
    kind: EventKind
    subject_id: int
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def idempotency_key(self) -> str:
        return f"booking:{self.booking_id}:{self.kind.value}:{self.subject_id}"


def _notify(booking_id: int, user_id: int, template: str, role: str, base: Dict[str, Any]) -> SideEffect:
    payload = dict(base, template_kind=template, recipient_role=role)
    return SideEffect(booking_id, EventKind.NOTIFY, user_id, payload)


def side_effects(
    *,
    booking_id: int,
    accommodation_id: int,
    requester_id: int,
    owner_id: int,
    target: BookingStatus,
    cancel_reason: Optional[str] = None,
) -> List[SideEffect]:
    """
    Ordered events for a transition into 'target'.

    - confirmed: notify requester and owner, reputation delta for the owner, loyalty credit for the requester
    - rejected: notify the requester
    - cancelled: notify the owner, or the requester when the expiry sweep cancelled it
    """
    base = {"booking_id": booking_id, "accommodation_id": accommodation_id, "status": target.value}
    if target == BookingStatus.CONFIRMED:
        return [
            _notify(booking_id, requester_id, "booking_confirmed", "requester", base),
            _notify(booking_id, owner_id, "booking_confirmed", "owner", base),
            SideEffect(
                booking_id,
                EventKind.REPUTATION_DELTA,
                owner_id,
                {"delta": REPUTATION_DELTA_PER_BOOKING, "reason": "booking fulfilled"},
            ),
            SideEffect(
                booking_id,
                EventKind.LOYALTY_CREDIT,
                requester_id,
                {"points": LOYALTY_POINTS_PER_BOOKING, "reason": "booking confirmed"},
            ),
        ]
    if target == BookingStatus.REJECTED:
        return [_notify(booking_id, requester_id, "booking_rejected", "requester", base)]
    if target == BookingStatus.CANCELLED:
        if cancel_reason == REASON_EXPIRED:
            return [_notify(booking_id, requester_id, "booking_expired", "requester", base)]
        return [_notify(booking_id, owner_id, "booking_cancelled", "owner", base)]
    return []
