# Booking endpoints: submit, decide, cancel, and the requester/owner listings.
# Transitions go through the reconciliation coordinator; side effects are dispatched as a
# background task, i.e. after the commit and after the property lock is released.
from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, status
from sqlalchemy.orm import Session

from ..db import get_db
from .. import models, schemas
from ..coordinator import ReconciliationCoordinator, TransitionResult, get_coordinator
from ..dispatcher import Dispatcher, get_dispatcher
from ..rate_limit import rate_limit
from .auth import get_current_user, require_landlord

router = APIRouter()


def _transition_response(
    result: TransitionResult, background_tasks: BackgroundTasks, dispatcher: Dispatcher
) -> schemas.TransitionResponse:
    if result.event_ids:
        background_tasks.add_task(dispatcher.deliver, list(result.event_ids))
    return schemas.TransitionResponse(
        booking=schemas.BookingRead.model_validate(result.booking),
        changed=result.changed,
        events=[e.idempotency_key for e in result.events],
    )


@router.post(
    "/bookings",
    response_model=schemas.BookingRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("submit"))],
)
def submit_booking(
    payload: schemas.BookingCreate,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
) -> models.Booking:
    return coordinator.submit(
        db,
        accommodation_id=payload.accommodation_id,
        requester_id=user.id,
        requested_date=payload.requested_date,
        num_of_people=payload.num_of_people,
        phone_number=payload.phone_number,
        note=payload.note,
    )


@router.post(
    "/bookings/{booking_id}/decision",
    response_model=schemas.TransitionResponse,
    dependencies=[Depends(rate_limit("transition"))],
)
def decide_booking(
    booking_id: int,
    payload: schemas.BookingDecision,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> schemas.TransitionResponse:
    result = coordinator.apply_transition(db, booking_id, payload.decision, user.id)
    return _transition_response(result, background_tasks, dispatcher)


@router.post(
    "/bookings/{booking_id}/cancel",
    response_model=schemas.TransitionResponse,
    dependencies=[Depends(rate_limit("transition"))],
)
def cancel_booking(
    booking_id: int,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
    coordinator: ReconciliationCoordinator = Depends(get_coordinator),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> schemas.TransitionResponse:
    result = coordinator.cancel(db, booking_id, user.id)
    return _transition_response(result, background_tasks, dispatcher)


@router.get("/bookings/me", response_model=List[schemas.BookingRead])
def list_bookings_for_requester(
    status_filter: Optional[schemas.BookingStatusLiteral] = Query(None, alias="status"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    user: models.User = Depends(get_current_user),
) -> List[models.Booking]:
    q = db.query(models.Booking).filter(models.Booking.requester_id == user.id)
    if status_filter is not None:
        q = q.filter(models.Booking.status == status_filter)
    return (
        q.order_by(models.Booking.created_at.desc(), models.Booking.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )


@router.get("/bookings/owner", response_model=List[schemas.OwnerBookingRead])
def list_bookings_for_owner(
    status_filter: Optional[schemas.BookingStatusLiteral] = Query(None, alias="status"),
    accommodation_id: Optional[int] = Query(None, ge=1),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    user: models.User = Depends(require_landlord),
) -> List[schemas.OwnerBookingRead]:
    """
    Requests against accommodations the caller owns, each with the room title and the
    requester's email joined in. Every filter is part of the SQL query.
    """
    q = (
        db.query(models.Booking, models.Accommodation.title, models.User.email)
        .join(models.Accommodation, models.Accommodation.id == models.Booking.accommodation_id)
        .join(models.User, models.User.id == models.Booking.requester_id)
        .filter(models.Accommodation.owner_id == user.id)
    )
    if status_filter is not None:
        q = q.filter(models.Booking.status == status_filter)
    if accommodation_id is not None:
        q = q.filter(models.Booking.accommodation_id == accommodation_id)
    rows = (
        q.order_by(models.Booking.created_at.desc(), models.Booking.id.desc())
        .offset(offset)
        .limit(limit)
        .all()
    )
    return [
        schemas.OwnerBookingRead(
            **schemas.BookingRead.model_validate(booking).model_dump(),
            accommodation_title=title,
            requester_email=email,
        )
        for booking, title, email in rows
    ]
