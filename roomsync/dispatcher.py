# Side-effect dispatcher: delivers outbox events written by committed transitions to the
# notification, reputation and loyalty collaborators.
# Runs strictly after commit and outside the property lock. A failed delivery never touches
# booking/occupancy state; the row stays pending and the redelivery sweep retries it.
from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from sqlalchemy.orm import Session

from . import models
from .collaborators import (
    DbLoyaltyLedger,
    DbNotifier,
    DbReputationLedger,
    LoyaltyLedger,
    Notifier,
    ReputationLedger,
)
from .db import SessionLocal
from .models import EventKind, OutboxStatus

logger = logging.getLogger("roomsync.dispatcher")

# Rows that failed this many times are left for an operator instead of being retried forever
OUTBOX_MAX_ATTEMPTS = int(os.getenv("OUTBOX_MAX_ATTEMPTS", "10"))


class Dispatcher:
    def __init__(
        self,
        notifier: Notifier,
        reputation: ReputationLedger,
        loyalty: LoyaltyLedger,
        session_factory=SessionLocal,
        max_attempts: int = OUTBOX_MAX_ATTEMPTS,
    ) -> None:
        self.notifier = notifier
        self.reputation = reputation
        self.loyalty = loyalty
        self.session_factory = session_factory
        self.max_attempts = max_attempts

    def deliver(self, event_ids: Iterable[int]) -> int:
        """
        Deliver the given outbox events in id order (the order the transition emitted them).

        Returns the number delivered. Never raises: failures are recorded on the row.
        """
        ids = sorted(set(event_ids))
        if not ids:
            return 0
        db = self.session_factory()
        try:
            events = (
                db.query(models.OutboxEvent)
                .filter(
                    models.OutboxEvent.id.in_(ids),
                    models.OutboxEvent.status == OutboxStatus.PENDING.value,
                )
                .order_by(models.OutboxEvent.id.asc())
                .all()
            )
            return self._deliver_all(db, events)
        except Exception:
            logger.exception("dispatch.failed", extra={"event_ids": ids})
            db.rollback()
            return 0
        finally:
            db.close()

    def redeliver_pending(self, limit: int = 100) -> int:
        """Retry pending rows oldest first; rows past max_attempts are skipped and logged."""
        db = self.session_factory()
        try:
            events = (
                db.query(models.OutboxEvent)
                .filter(
                    models.OutboxEvent.status == OutboxStatus.PENDING.value,
                    models.OutboxEvent.attempts < self.max_attempts,
                )
                .order_by(models.OutboxEvent.id.asc())
                .limit(limit)
                .all()
            )
            stuck = (
                db.query(models.OutboxEvent.id)
                .filter(
                    models.OutboxEvent.status == OutboxStatus.PENDING.value,
                    models.OutboxEvent.attempts >= self.max_attempts,
                )
                .count()
            )
            if stuck:
                logger.error("dispatch.stuck_events", extra={"count": stuck, "max_attempts": self.max_attempts})
            return self._deliver_all(db, events)
        except Exception:
            logger.exception("redelivery.failed")
            db.rollback()
            return 0
        finally:
            db.close()

    def _deliver_all(self, db: Session, events: List[models.OutboxEvent]) -> int:
        delivered = 0
        for event in events:
            # Each row commits on its own so one bad recipient does not block the rest
            error = self._send(event)
            event.attempts = (event.attempts or 0) + 1
            if error is None:
                event.status = OutboxStatus.DELIVERED.value
                event.delivered_at = datetime.now(timezone.utc)
                event.last_error = None
                delivered += 1
            else:
                event.last_error = error[:1000]
                logger.warning(
                    "dispatch.retry_scheduled",
                    extra={
                        "event_id": event.id,
                        "booking_id": event.booking_id,
                        "kind": event.kind,
                        "attempts": event.attempts,
                        "error": error,
                    },
                )
            db.add(event)
            db.commit()
        return delivered

    def _send(self, event: models.OutboxEvent) -> Optional[str]:
        payload = dict(event.payload or {})
        try:
            kind = EventKind(event.kind)
            if kind == EventKind.NOTIFY:
                template = payload.get("template_kind", "booking_update")
                self.notifier.notify(event.subject_id, template, payload, event.idempotency_key)
            elif kind == EventKind.REPUTATION_DELTA:
                self.reputation.apply_delta(
                    event.subject_id, int(payload.get("delta", 0)), payload.get("reason", ""), event.idempotency_key
                )
            elif kind == EventKind.LOYALTY_CREDIT:
                self.loyalty.credit_points(
                    event.subject_id, int(payload.get("points", 0)), payload.get("reason", ""), event.idempotency_key
                )
        except Exception as exc:
            return f"{type(exc).__name__}: {exc}"
        return None


_dispatcher: Optional[Dispatcher] = None


def get_dispatcher() -> Dispatcher:
    """Process-wide dispatcher wired to the in-database collaborators (FastAPI dependency)."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = Dispatcher(
            notifier=DbNotifier(SessionLocal),
            reputation=DbReputationLedger(SessionLocal),
            loyalty=DbLoyaltyLedger(SessionLocal),
        )
    return _dispatcher
