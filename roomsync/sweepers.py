# Background sweepers for periodic maintenance: expiring stale pending bookings and
# redelivering outbox events whose first dispatch failed.
# These utilities are invoked from the startup thread in main.py or from a scheduler job.
from __future__ import annotations

import logging
from datetime import date
from typing import List, Optional

from sqlalchemy.orm import Session

from .coordinator import ReconciliationCoordinator, get_coordinator
from .db import SessionLocal
from .dispatcher import Dispatcher, get_dispatcher
from .errors import BookingError
from . import models

logger = logging.getLogger("roomsync.sweepers")


def sweep_expired_bookings(
    db: Optional[Session] = None,
    coordinator: Optional[ReconciliationCoordinator] = None,
    dispatcher: Optional[Dispatcher] = None,
    today: Optional[date] = None,
) -> int:
    """
    Cancel 'pending' bookings whose requested_date is already in the past (cancel_reason='expired').

    Semantics:
    - Candidates are selected by SQL predicate; each one still goes through the coordinator, so a
      booking decided between selection and cancellation is left alone.
    - Idempotent across repeated runs.
    - Requesters are notified after commit.
    - Accepts an optional Session; otherwise creates and cleans up its own.

    Returns:
    - Number of bookings cancelled by this run.
    """
    created_session = False
    if db is None:
        db = SessionLocal()
        created_session = True
    coordinator = coordinator or get_coordinator()
    dispatcher = dispatcher or get_dispatcher()
    today = today or date.today()

    try:
        ids = [
            row.id
            for row in db.query(models.Booking.id)
            .filter(
                models.Booking.status == models.BookingStatus.PENDING.value,
                models.Booking.requested_date < today,
            )
            .order_by(models.Booking.id.asc())
            .all()
        ]
        expired = 0
        event_ids: List[int] = []
        for booking_id in ids:
            try:
                result = coordinator.expire(db, booking_id, today=today)
            except BookingError as exc:
                # Lost a race or ran out of retries; the next run picks it up again
                logger.warning("sweep.expire_skipped", extra={"booking_id": booking_id, "error": exc.code})
                continue
            if result.changed:
                expired += 1
                event_ids.extend(result.event_ids)
        if expired:
            logger.info("sweep.expired", extra={"count": expired})
        dispatcher.deliver(event_ids)
        return expired
    finally:
        if created_session:
            db.close()


def sweep_outbox(dispatcher: Optional[Dispatcher] = None, limit: int = 100) -> int:
    """Retry pending side-effect deliveries. Returns how many were delivered."""
    dispatcher = dispatcher or get_dispatcher()
    delivered = dispatcher.redeliver_pending(limit=limit)
    if delivered:
        logger.info("sweep.redelivered", extra={"count": delivered})
    return delivered
