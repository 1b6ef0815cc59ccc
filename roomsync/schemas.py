# Pydantic models (request/response DTOs) used by the API layer.
# Keep models minimal and serializable; transitions live in the coordinator/state machine.
from pydantic import BaseModel, Field, ConfigDict, field_validator, EmailStr
from typing import List, Literal, Optional
from datetime import date, datetime
from decimal import Decimal


BookingStatusLiteral = Literal["pending", "confirmed", "rejected", "cancelled"]
AccommodationStatusLiteral = Literal["available", "rented", "pending"]


# Properties and rooms
class PropertyCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, v: str) -> str:
        # Trim surrounding whitespace before validation
        if isinstance(v, str):
            v = v.strip()
        return v


class PropertyRead(BaseModel):
    id: int
    landlord_id: int
    name: str
    total_rooms: int
    occupied_rooms: int
    version: int

    model_config = ConfigDict(from_attributes=True)


# Occupancy view of a property; vacant_rooms is derived, not stored
class OccupancyRead(BaseModel):
    property_id: int
    total_rooms: int
    occupied_rooms: int
    vacant_rooms: int
    occupancy_rate: int


class ReconcileResponse(BaseModel):
    property_id: int
    repaired: bool
    total_rooms: int
    occupied_rooms: int


class AccommodationCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    price: Decimal = Field(default=Decimal("0"), ge=0)
    status: Literal["available", "pending"] = "available"

    @field_validator("title", mode="before")
    @classmethod
    def strip_title(cls, v: str) -> str:
        if isinstance(v, str):
            v = v.strip()
        return v


class AccommodationRead(BaseModel):
    id: int
    property_id: Optional[int] = None
    owner_id: int
    title: str
    price: Decimal
    status: AccommodationStatusLiteral

    model_config = ConfigDict(from_attributes=True)


# Bookings
# Request payload for submitting a viewing/booking request
class BookingCreate(BaseModel):
    accommodation_id: int = Field(..., ge=1)
    requested_date: date
    # Range is enforced by the state machine so the error shape matches other transition failures
    num_of_people: int = 1
    phone_number: Optional[str] = Field(default=None, max_length=32)
    note: Optional[str] = Field(default=None, max_length=2000)

    @field_validator("phone_number", "note", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        if isinstance(v, str):
            v = v.strip()
            return v or None
        return v


class BookingDecision(BaseModel):
    decision: Literal["confirmed", "rejected"]


# API response for a booking record
class BookingRead(BaseModel):
    id: int
    accommodation_id: int
    requester_id: int
    status: BookingStatusLiteral
    requested_date: date
    num_of_people: int
    phone_number: Optional[str] = None
    note: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    decided_at: Optional[datetime] = None
    decided_by: Optional[int] = None
    cancel_reason: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


# Owner-side view of a request: the booking plus the room it targets and how to reach the requester
class OwnerBookingRead(BookingRead):
    accommodation_title: str
    requester_email: str


# Result of decide/cancel: 'changed' is False when the call was an idempotent replay
class TransitionResponse(BaseModel):
    booking: BookingRead
    changed: bool
    events: List[str] = []


# Authentication and user models

# User roles within the system
Role = Literal["landlord", "tenant", "admin"]


# Common user fields shared by create/read
class UserBase(BaseModel):
    email: EmailStr
    role: Role

    # Normalize email input to lowercase without surrounding whitespace
    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        if isinstance(v, str):
            v = v.strip().lower()
        return v


# Request payload for user registration; admins are provisioned out of band
class UserCreate(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8)
    role: Literal["landlord", "tenant"] = "tenant"

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        if isinstance(v, str):
            v = v.strip().lower()
        return v


# API response for a user record
class UserRead(UserBase):
    id: int

    model_config = ConfigDict(from_attributes=True)


# Request payload for logging in
class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8)

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        if isinstance(v, str):
            v = v.strip().lower()
        return v


# OAuth2-style token response bundled with the current user profile
class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: UserRead
