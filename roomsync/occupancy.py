# Room/property occupancy store: fresh reads, capacity rules, and compare-and-swap writes
# for the accommodation status and the property's occupied_rooms counter.
# Callers (the reconciliation coordinator) own the transaction; nothing here commits.
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from . import models
from .errors import CapacityExceededError, NotFoundError
from .models import AccommodationStatus


@dataclass
class Snapshot:
    """Rows read at the start of one read-validate-commit cycle, with the versions seen."""

    booking: models.Booking
    accommodation: models.Accommodation
    property: Optional[models.Property]
    booking_version: int
    accommodation_version: int
    property_version: Optional[int]


def serialization_key(property_id: Optional[int], accommodation_id: int) -> str:
    """Lock key for the unit that owns a room pool: the property, or the standalone listing itself."""
    if property_id is not None:
        return f"lock:occupancy:property:{property_id}"
    return f"lock:occupancy:accommodation:{accommodation_id}"


def _fresh(db: Session, model, pk: int):
    # populate_existing overwrites identity-map state so every cycle sees committed values
    return db.query(model).populate_existing().filter(model.id == pk).one_or_none()


def get_accommodation(db: Session, accommodation_id: int) -> models.Accommodation:
    acc = _fresh(db, models.Accommodation, accommodation_id)
    if acc is None:
        raise NotFoundError("Accommodation not found", accommodation_id=accommodation_id)
    return acc


def get_property(db: Session, property_id: int) -> models.Property:
    prop = _fresh(db, models.Property, property_id)
    if prop is None:
        raise NotFoundError("Property not found", property_id=property_id)
    return prop


def get_booking(db: Session, booking_id: int) -> models.Booking:
    obj = _fresh(db, models.Booking, booking_id)
    if obj is None:
        raise NotFoundError("Booking not found", booking_id=booking_id)
    return obj


def load_snapshot(db: Session, booking_id: int) -> Snapshot:
    booking = get_booking(db, booking_id)
    acc = get_accommodation(db, booking.accommodation_id)
    prop = get_property(db, acc.property_id) if acc.property_id is not None else None
    return Snapshot(
        booking=booking,
        accommodation=acc,
        property=prop,
        booking_version=booking.version,
        accommodation_version=acc.version,
        property_version=prop.version if prop is not None else None,
    )


def check_capacity(snap: Snapshot) -> None:
    """Raise CapacityExceededError unless a confirmation can still take this room."""
    acc = snap.accommodation
    if acc.status != AccommodationStatus.AVAILABLE.value:
        raise CapacityExceededError(
            "Room is no longer available",
            accommodation_id=acc.id,
            accommodation_status=acc.status,
        )
    prop = snap.property
    if prop is not None and prop.occupied_rooms >= prop.total_rooms:
        raise CapacityExceededError(
            "Property has no free rooms left",
            property_id=prop.id,
            occupied_rooms=prop.occupied_rooms,
            total_rooms=prop.total_rooms,
        )


def cas_booking(db: Session, booking_id: int, expected_version: int, expected_status: str, **values) -> bool:
    """Write 'values' to the booking only if nobody else touched it since we read it."""
    values["version"] = models.Booking.version + 1
    n = (
        db.query(models.Booking)
        .filter(
            models.Booking.id == booking_id,
            models.Booking.version == expected_version,
            models.Booking.status == expected_status,
        )
        .update(values, synchronize_session=False)
    )
    return n == 1


def _cas_accommodation(db: Session, acc_id: int, expected_version: int, from_status: str, to_status: str) -> bool:
    n = (
        db.query(models.Accommodation)
        .filter(
            models.Accommodation.id == acc_id,
            models.Accommodation.version == expected_version,
            models.Accommodation.status == from_status,
        )
        .update(
            {"status": to_status, "version": models.Accommodation.version + 1},
            synchronize_session=False,
        )
    )
    return n == 1


def _cas_property_delta(db: Session, property_id: int, expected_version: int, delta: int) -> bool:
    P = models.Property
    q = db.query(P).filter(P.id == property_id, P.version == expected_version)
    # Counter bounds are re-checked in the WHERE clause, not trusted from the snapshot
    if delta > 0:
        q = q.filter(P.occupied_rooms + delta <= P.total_rooms)
    else:
        q = q.filter(P.occupied_rooms + delta >= 0)
    n = q.update(
        {"occupied_rooms": P.occupied_rooms + delta, "version": P.version + 1},
        synchronize_session=False,
    )
    return n == 1


def cas_property_rooms(db: Session, property_id: int, expected_version: int, *, total: int, occupied: int) -> bool:
    """Overwrite both counters (room attach, drift repair). The caller computed them under the lock."""
    if total < 0 or not (0 <= occupied <= total):
        return False
    P = models.Property
    n = (
        db.query(P)
        .filter(P.id == property_id, P.version == expected_version)
        .update(
            {"total_rooms": total, "occupied_rooms": occupied, "version": P.version + 1},
            synchronize_session=False,
        )
    )
    return n == 1


def occupy(db: Session, snap: Snapshot) -> bool:
    """Mark the snapshot's room rented and bump the property counter. False on any CAS miss."""
    if not _cas_accommodation(
        db,
        snap.accommodation.id,
        snap.accommodation_version,
        AccommodationStatus.AVAILABLE.value,
        AccommodationStatus.RENTED.value,
    ):
        return False
    if snap.property is not None:
        return _cas_property_delta(db, snap.property.id, snap.property_version, +1)
    return True


def vacate(
    db: Session,
    acc: models.Accommodation,
    acc_version: int,
    prop: Optional[models.Property],
    prop_version: Optional[int],
) -> bool:
    """Inverse of occupy(): rented -> available, counter - 1."""
    if not _cas_accommodation(
        db, acc.id, acc_version, AccommodationStatus.RENTED.value, AccommodationStatus.AVAILABLE.value
    ):
        return False
    if prop is not None:
        return _cas_property_delta(db, prop.id, prop_version, -1)
    return True


def count_rooms(db: Session, property_id: int) -> Tuple[int, int]:
    """(total, rented) accommodations under a property, aggregated by the database."""
    A = models.Accommodation
    total, rented = (
        db.query(
            func.count(A.id),
            func.coalesce(func.sum(case((A.status == AccommodationStatus.RENTED.value, 1), else_=0)), 0),
        )
        .filter(A.property_id == property_id)
        .one()
    )
    return int(total or 0), int(rented or 0)


def invariant_holds(db: Session, property_id: int) -> bool:
    prop = get_property(db, property_id)
    total, rented = count_rooms(db, property_id)
    return (
        0 <= prop.occupied_rooms <= prop.total_rooms
        and prop.occupied_rooms == rented
        and prop.total_rooms == total
    )
