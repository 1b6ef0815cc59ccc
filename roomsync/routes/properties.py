# Property and room endpoints needed to seed and inspect occupancy.
# Counters are never written here directly: room attach/release/repair go through the coordinator.
from typing import List

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from ..db import get_db
from .. import models, schemas, occupancy
from ..coordinator import ReconciliationCoordinator, get_coordinator
from ..rate_limit import rate_limit
from .auth import get_current_user, require_admin, require_landlord

router = APIRouter()


def _occupancy_view(prop: models.Property) -> schemas.OccupancyRead:
    total = prop.total_rooms or 0
    occupied = prop.occupied_rooms or 0
    return schemas.OccupancyRead(
        property_id=prop.id,
        total_rooms=total,
        occupied_rooms=occupied,
        vacant_rooms=total - occupied,
        occupancy_rate=round(occupied * 100 / total) if total > 0 else 0,
    )


@router.get("/properties", response_model=List[schemas.PropertyRead])
def list_my_properties(db: Session = Depends(get_db), user: models.User = Depends(require_landlord)):
    return (
        db.query(models.Property)
        .filter(models.Property.landlord_id == user.id)
        .order_by(models.Property.id.desc())
        .all()
    )


@router.post(
    "/properties",
    response_model=schemas.PropertyRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("submit"))],
)
def create_property(payload: schemas.PropertyCreate, db: Session = Depends(get_db), user: models.User = Depends(require_landlord)):
    """New properties start empty; rooms are attached one by one so total_rooms stays derived."""
    obj = models.Property(landlord_id=user.id, name=payload.name, total_rooms=0, occupied_rooms=0, version=1)
    db.add(obj)
    db.commit()
    db.refresh(obj)
    return obj


@router.post(
    "/properties/{property_id}/accommodations",
    response_model=schemas.AccommodationRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("transition"))],
)
def attach_accommodation(
    property_id: int,
    payload: schemas.AccommodationCreate,
    db: Session = Depends(get_db),
    user: models.User = Depends(require_landlord),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    return coordinator.attach_accommodation(
        db,
        property_id=property_id,
        actor_id=user.id,
        title=payload.title,
        price=payload.price,
        status=payload.status,
    )


@router.post(
    "/accommodations",
    response_model=schemas.AccommodationRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("transition"))],
)
def create_standalone_accommodation(
    payload: schemas.AccommodationCreate,
    db: Session = Depends(get_db),
    user: models.User = Depends(require_landlord),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    return coordinator.attach_accommodation(
        db,
        property_id=None,
        actor_id=user.id,
        title=payload.title,
        price=payload.price,
        status=payload.status,
    )


@router.get("/properties/{property_id}/occupancy", response_model=schemas.OccupancyRead)
def get_occupancy(property_id: int, db: Session = Depends(get_db), user: models.User = Depends(get_current_user)):
    return _occupancy_view(occupancy.get_property(db, property_id))


@router.post(
    "/accommodations/{accommodation_id}/release",
    response_model=schemas.AccommodationRead,
    dependencies=[Depends(rate_limit("transition"))],
)
def release_accommodation(
    accommodation_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    return coordinator.release_accommodation(db, accommodation_id, user.id)


@router.post("/properties/{property_id}/reconcile", response_model=schemas.ReconcileResponse)
def reconcile_property(
    property_id: int,
    db: Session = Depends(get_db),
    user: models.User = Depends(require_admin),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
):
    repaired = coordinator.reconcile_property(db, property_id)
    prop = occupancy.get_property(db, property_id)
    return schemas.ReconcileResponse(
        property_id=prop.id,
        repaired=repaired,
        total_rooms=prop.total_rooms,
        occupied_rooms=prop.occupied_rooms,
    )
