# Interfaces of the services this core calls into, plus the default in-database implementations.
# Notification, reputation and loyalty delivery is idempotent per idempotency key: a duplicate insert
# means an earlier attempt already landed, which counts as delivered.
from __future__ import annotations

import logging
from typing import Any, Dict, Protocol

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import models

logger = logging.getLogger("roomsync.collaborators")

ADMIN_ROLE = "admin"


class Authorizer(Protocol):
    def is_owner(self, db: Session, accommodation_id: int, user_id: int) -> bool: ...

    def is_admin(self, db: Session, user_id: int) -> bool: ...


class Notifier(Protocol):
    def notify(self, user_id: int, template_kind: str, payload: Dict[str, Any], idempotency_key: str) -> None: ...


class ReputationLedger(Protocol):
    def apply_delta(self, landlord_id: int, delta: int, reason: str, idempotency_key: str) -> None: ...


class LoyaltyLedger(Protocol):
    def credit_points(self, user_id: int, points: int, reason: str, idempotency_key: str) -> None: ...


class DbAuthorizer:
    """Ownership and role checks answered from the accommodations/users tables."""

    def is_owner(self, db: Session, accommodation_id: int, user_id: int) -> bool:
        owner_id = (
            db.query(models.Accommodation.owner_id)
            .filter(models.Accommodation.id == accommodation_id)
            .scalar()
        )
        return owner_id is not None and owner_id == user_id

    def is_admin(self, db: Session, user_id: int) -> bool:
        role = db.query(models.User.role).filter(models.User.id == user_id).scalar()
        return role == ADMIN_ROLE


class _LedgerWriter:
    """Insert one ledger row per idempotency key in its own short-lived session."""

    def __init__(self, session_factory) -> None:
        self._session_factory = session_factory

    def _insert_once(self, row) -> bool:
        db = self._session_factory()
        try:
            db.add(row)
            db.commit()
            return True
        except IntegrityError:
            db.rollback()
            logger.info("ledger.duplicate", extra={"idempotency_key": row.idempotency_key})
            return False
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()


class DbNotifier(_LedgerWriter):
    def notify(self, user_id: int, template_kind: str, payload: Dict[str, Any], idempotency_key: str) -> None:
        self._insert_once(
            models.Notification(
                user_id=user_id,
                template_kind=template_kind,
                payload=payload,
                idempotency_key=idempotency_key,
            )
        )


class DbReputationLedger(_LedgerWriter):
    def apply_delta(self, landlord_id: int, delta: int, reason: str, idempotency_key: str) -> None:
        self._insert_once(
            models.ReputationDelta(
                subject_id=landlord_id, delta=delta, reason=reason, idempotency_key=idempotency_key
            )
        )


class DbLoyaltyLedger(_LedgerWriter):
    def credit_points(self, user_id: int, points: int, reason: str, idempotency_key: str) -> None:
        if points <= 0:
            return
        self._insert_once(
            models.LoyaltyCredit(
                subject_id=user_id, delta=points, reason=reason, idempotency_key=idempotency_key
            )
        )
