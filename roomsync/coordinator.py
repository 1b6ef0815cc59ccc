# Reconciliation coordinator: applies booking transitions and occupancy changes so that the
# booking status, the room status and the property's counters commit as one unit.
#
# Each operation runs a bounded read-validate-commit loop under the property's serialization
# unit (Redis lock, fail-open). Every write is a version compare-and-swap, so a writer that lost a
# race (or ran without the lock) rolls back and re-reads instead of overwriting.
from __future__ import annotations

import logging
import os
import random
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Callable, List, Optional, TypeVar

from sqlalchemy.orm import Session

from . import models
from . import occupancy as occ
from .collaborators import Authorizer, DbAuthorizer
from .errors import AuthorizationError, ConflictError, InvalidStateError, ValidationError
from .locks import redis_try_lock
from .models import AccommodationStatus, BookingStatus
from .state_machine import (
    REASON_CANCELLED,
    REASON_EXPIRED,
    SideEffect,
    authorize_cancel,
    authorize_decision,
    parse_decision,
    side_effects,
    transition,
    validate_submission,
)

logger = logging.getLogger("roomsync.coordinator")

# Read-validate-commit cycles before giving up with ConflictError
RECONCILE_MAX_ATTEMPTS = int(os.getenv("RECONCILE_MAX_ATTEMPTS", "3"))
# Base backoff between cycles; doubled per attempt with full jitter
RECONCILE_BACKOFF_MS = int(os.getenv("RECONCILE_BACKOFF_MS", "20"))

T = TypeVar("T")


@dataclass
class TransitionResult:
    """Committed booking state plus the outbox events to hand to the dispatcher."""

    booking: models.Booking
    changed: bool
    events: List[SideEffect] = field(default_factory=list)
    event_ids: List[int] = field(default_factory=list)


class _Retry(Exception):
    """Internal signal: a compare-and-swap missed; roll back and run the cycle again."""


class ReconciliationCoordinator:
    def __init__(
        self,
        authorizer: Optional[Authorizer] = None,
        max_attempts: int = RECONCILE_MAX_ATTEMPTS,
        backoff_ms: int = RECONCILE_BACKOFF_MS,
        lock=redis_try_lock,
    ) -> None:
        self.authorizer = authorizer or DbAuthorizer()
        self.max_attempts = max(1, max_attempts)
        self.backoff_ms = backoff_ms
        self.lock = lock

    # ----------------
    # Retry loop
    # ----------------
    def _run(self, db: Session, key: str, op: str, cycle: Callable[[int], T]) -> T:
        """
        Run 'cycle' under the serialization unit 'key', committing its writes on success.

        cycle(attempt) reads fresh rows, validates, writes, and either returns a result or raises
        _Retry on a compare-and-swap miss. Domain errors and persistence errors roll back and
        propagate unchanged.

        The lock call itself waits for a concurrent holder; only a wait that times out ends the
        operation early. max_attempts bounds compare-and-swap misses.
        """
        for attempt in range(1, self.max_attempts + 1):
            with self.lock(key) as locked:
                if not locked:
                    raise ConflictError(f"Could not {op}: property is busy; please retry")
                try:
                    result = cycle(attempt)
                    db.commit()
                    return result
                except _Retry:
                    db.rollback()
                except Exception:
                    db.rollback()
                    raise
            logger.warning(
                "reconcile.retry",
                extra={"op": op, "key": key, "attempt": attempt, "reason": "version conflict"},
            )
            if attempt < self.max_attempts:
                self._backoff(attempt)
        raise ConflictError(f"Could not {op} after {self.max_attempts} attempts (version conflict); please retry")

    def _backoff(self, attempt: int) -> None:
        if self.backoff_ms <= 0:
            return
        ceiling = self.backoff_ms * (2 ** (attempt - 1))
        time.sleep(random.uniform(0, ceiling) / 1000.0)

    def _key_for_booking(self, db: Session, booking_id: int) -> str:
        booking = occ.get_booking(db, booking_id)
        acc = occ.get_accommodation(db, booking.accommodation_id)
        return occ.serialization_key(acc.property_id, acc.id)

    @staticmethod
    def _record_events(db: Session, events: List[SideEffect]) -> List[int]:
        rows = [
            models.OutboxEvent(
                booking_id=e.booking_id,
                kind=e.kind.value,
                subject_id=e.subject_id,
                payload=e.payload,
                idempotency_key=e.idempotency_key,
                status=models.OutboxStatus.PENDING.value,
                attempts=0,
            )
            for e in events
        ]
        db.add_all(rows)
        db.flush()
        return [r.id for r in rows]

    # ----------------
    # Booking operations
    # ----------------
    def submit(
        self,
        db: Session,
        *,
        accommodation_id: int,
        requester_id: int,
        requested_date: date,
        num_of_people: int = 1,
        phone_number: Optional[str] = None,
        note: Optional[str] = None,
        today: Optional[date] = None,
    ) -> models.Booking:
        """Create a pending booking. Touches no occupancy state, so no serialization unit is needed."""
        acc = occ.get_accommodation(db, accommodation_id)
        validate_submission(
            requester_id=requester_id,
            owner_id=acc.owner_id,
            requested_date=requested_date,
            num_of_people=num_of_people,
            today=today,
        )
        obj = models.Booking(
            accommodation_id=accommodation_id,
            requester_id=requester_id,
            status=BookingStatus.PENDING.value,
            requested_date=requested_date,
            num_of_people=num_of_people,
            phone_number=phone_number,
            note=note,
            version=1,
        )
        try:
            db.add(obj)
            db.commit()
        except Exception:
            db.rollback()
            raise
        db.refresh(obj)
        logger.info(
            "booking.submitted",
            extra={"booking_id": obj.id, "accommodation_id": accommodation_id, "requester_id": requester_id},
        )
        return obj

    def apply_transition(
        self,
        db: Session,
        booking_id: int,
        decision: BookingStatus | str,
        actor_id: int,
        today: Optional[date] = None,
    ) -> TransitionResult:
        """
        Confirm or reject a pending booking on behalf of the owner or an admin.

        Confirmation also marks the room rented and bumps the property's occupied_rooms, in the
        same commit. Re-issuing the decision a booking already carries returns it unchanged;
        losing a race to a competing decision raises InvalidStateError.
        A pending booking whose requested_date has passed can no longer be confirmed; it is left
        for the expiry sweep (rejecting it is still allowed).
        """
        target = parse_decision(decision)
        today = today or date.today()
        booking = occ.get_booking(db, booking_id)
        authorize_decision(
            is_owner=self.authorizer.is_owner(db, booking.accommodation_id, actor_id),
            is_admin=self.authorizer.is_admin(db, actor_id),
        )
        key = self._key_for_booking(db, booking_id)
        seen_pending = booking.status == BookingStatus.PENDING.value

        def cycle(attempt: int) -> TransitionResult:
            snap = occ.load_snapshot(db, booking_id)
            current = snap.booking.status
            if not transition(current, target):
                if seen_pending:
                    raise InvalidStateError(
                        "Booking was already decided by another request", current_status=current
                    )
                return TransitionResult(booking=snap.booking, changed=False)
            if target == BookingStatus.CONFIRMED:
                if snap.booking.requested_date < today:
                    raise InvalidStateError(
                        "Requested viewing date has passed; the request has lapsed",
                        current_status=current,
                        requested_date=snap.booking.requested_date.isoformat(),
                    )
                occ.check_capacity(snap)
            if not occ.cas_booking(
                db,
                booking_id,
                snap.booking_version,
                BookingStatus.PENDING.value,
                status=target.value,
                decided_at=datetime.now(timezone.utc),
                decided_by=actor_id,
            ):
                raise _Retry()
            if target == BookingStatus.CONFIRMED and not occ.occupy(db, snap):
                raise _Retry()
            events = side_effects(
                booking_id=booking_id,
                accommodation_id=snap.accommodation.id,
                requester_id=snap.booking.requester_id,
                owner_id=snap.accommodation.owner_id,
                target=target,
            )
            event_ids = self._record_events(db, events)
            return TransitionResult(booking=snap.booking, changed=True, events=events, event_ids=event_ids)

        result = self._run(db, key, f"{target.value} booking {booking_id}", cycle)
        db.refresh(result.booking)
        logger.info(
            "booking.decided",
            extra={
                "booking_id": booking_id,
                "decision": target.value,
                "actor_id": actor_id,
                "changed": result.changed,
                "events": len(result.event_ids),
            },
        )
        return result

    def decide(
        self,
        db: Session,
        booking_id: int,
        decision: BookingStatus | str,
        decider_id: int,
        today: Optional[date] = None,
    ) -> TransitionResult:
        return self.apply_transition(db, booking_id, decision, decider_id, today=today)

    def cancel(self, db: Session, booking_id: int, requester_id: int) -> TransitionResult:
        """Requester withdraws a pending booking. Cancelling twice returns the cancelled booking."""
        booking = occ.get_booking(db, booking_id)
        authorize_cancel(requester_id=booking.requester_id, actor_id=requester_id)
        return self._cancel(db, booking_id, REASON_CANCELLED, actor_id=requester_id)

    def expire(self, db: Session, booking_id: int, today: Optional[date] = None) -> TransitionResult:
        """System cancellation of a pending booking whose requested_date has passed."""
        today = today or date.today()
        return self._cancel(db, booking_id, REASON_EXPIRED, actor_id=None, expired_before=today)

    def _cancel(
        self,
        db: Session,
        booking_id: int,
        reason: str,
        actor_id: Optional[int],
        expired_before: Optional[date] = None,
    ) -> TransitionResult:
        key = self._key_for_booking(db, booking_id)

        def cycle(attempt: int) -> TransitionResult:
            snap = occ.load_snapshot(db, booking_id)
            booking = snap.booking
            if expired_before is not None and (
                booking.status != BookingStatus.PENDING.value or booking.requested_date >= expired_before
            ):
                # Decided or rescheduled since the sweep selected it
                return TransitionResult(booking=booking, changed=False)
            if not transition(booking.status, BookingStatus.CANCELLED):
                return TransitionResult(booking=booking, changed=False)
            if not occ.cas_booking(
                db,
                booking_id,
                snap.booking_version,
                BookingStatus.PENDING.value,
                status=BookingStatus.CANCELLED.value,
                cancel_reason=reason,
                decided_at=datetime.now(timezone.utc),
            ):
                raise _Retry()
            events = side_effects(
                booking_id=booking_id,
                accommodation_id=snap.accommodation.id,
                requester_id=booking.requester_id,
                owner_id=snap.accommodation.owner_id,
                target=BookingStatus.CANCELLED,
                cancel_reason=reason,
            )
            event_ids = self._record_events(db, events)
            return TransitionResult(booking=booking, changed=True, events=events, event_ids=event_ids)

        result = self._run(db, key, f"cancel booking {booking_id}", cycle)
        db.refresh(result.booking)
        logger.info(
            "booking.cancelled",
            extra={"booking_id": booking_id, "reason": reason, "actor_id": actor_id, "changed": result.changed},
        )
        return result

    # ----------------
    # Occupancy operations
    # ----------------
    def _authorize_landlord(self, db: Session, landlord_id: int, actor_id: int) -> None:
        if landlord_id != actor_id and not self.authorizer.is_admin(db, actor_id):
            raise AuthorizationError("Only the property's landlord or an admin can change its rooms")

    def attach_accommodation(
        self,
        db: Session,
        *,
        property_id: Optional[int],
        actor_id: int,
        title: str,
        price: Decimal | int | float = 0,
        status: AccommodationStatus | str = AccommodationStatus.AVAILABLE,
    ) -> models.Accommodation:
        """Create a room; under a property, total_rooms grows in the same commit."""
        status = AccommodationStatus(status)
        if status == AccommodationStatus.RENTED:
            raise ValidationError("New rooms start available or pending; rooms become rented through a booking")

        if property_id is None:
            acc = models.Accommodation(owner_id=actor_id, title=title, price=price, status=status.value, version=1)
            try:
                db.add(acc)
                db.commit()
            except Exception:
                db.rollback()
                raise
            db.refresh(acc)
            return acc

        prop = occ.get_property(db, property_id)
        self._authorize_landlord(db, prop.landlord_id, actor_id)

        def cycle(attempt: int) -> models.Accommodation:
            prop = occ.get_property(db, property_id)
            acc = models.Accommodation(
                property_id=property_id,
                owner_id=prop.landlord_id,
                title=title,
                price=price,
                status=status.value,
                version=1,
            )
            if not occ.cas_property_rooms(
                db, property_id, prop.version, total=prop.total_rooms + 1, occupied=prop.occupied_rooms
            ):
                raise _Retry()
            db.add(acc)
            db.flush()
            return acc

        acc = self._run(db, occ.serialization_key(property_id, 0), f"attach room to property {property_id}", cycle)
        db.refresh(acc)
        return acc

    def release_accommodation(self, db: Session, accommodation_id: int, actor_id: int) -> models.Accommodation:
        """Owner/admin marks a rented room available again; occupied_rooms drops by one. No-op otherwise."""
        acc = occ.get_accommodation(db, accommodation_id)
        if acc.owner_id != actor_id and not self.authorizer.is_admin(db, actor_id):
            raise AuthorizationError("Only the owner or an admin can release this room")
        key = occ.serialization_key(acc.property_id, acc.id)

        def cycle(attempt: int) -> models.Accommodation:
            acc = occ.get_accommodation(db, accommodation_id)
            if acc.status != AccommodationStatus.RENTED.value:
                return acc
            prop = occ.get_property(db, acc.property_id) if acc.property_id is not None else None
            if not occ.vacate(db, acc, acc.version, prop, prop.version if prop is not None else None):
                raise _Retry()
            return acc

        acc = self._run(db, key, f"release room {accommodation_id}", cycle)
        db.refresh(acc)
        logger.info("room.released", extra={"accommodation_id": accommodation_id, "actor_id": actor_id})
        return acc

    def reconcile_property(self, db: Session, property_id: int) -> bool:
        """
        Recompute total_rooms/occupied_rooms from the accommodation rows.

        Returns True when the cached counters had drifted and were repaired.
        """
        occ.get_property(db, property_id)

        def cycle(attempt: int) -> bool:
            prop = occ.get_property(db, property_id)
            total, rented = occ.count_rooms(db, property_id)
            if prop.total_rooms == total and prop.occupied_rooms == rented:
                return False
            logger.warning(
                "occupancy.drift",
                extra={
                    "property_id": property_id,
                    "cached_total": prop.total_rooms,
                    "cached_occupied": prop.occupied_rooms,
                    "total": total,
                    "occupied": rented,
                },
            )
            if not occ.cas_property_rooms(db, property_id, prop.version, total=total, occupied=rented):
                raise _Retry()
            return True

        return self._run(db, occ.serialization_key(property_id, 0), f"reconcile property {property_id}", cycle)


_coordinator: Optional[ReconciliationCoordinator] = None


def get_coordinator() -> ReconciliationCoordinator:
    """Process-wide coordinator (FastAPI dependency; override in tests)."""
    global _coordinator
    if _coordinator is None:
        _coordinator = ReconciliationCoordinator()
    return _coordinator
