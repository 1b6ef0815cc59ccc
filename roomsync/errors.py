# Domain error taxonomy for booking transitions and occupancy reconciliation.
# None of these represent corruption; callers recover by resubmitting, refreshing, or
# accepting the terminal state. Persistence-layer failures are never wrapped here.
from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse


class BookingError(Exception):
    """Base class; 'code' is the machine-readable error surfaced to API clients."""

    code = "booking_error"
    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_detail(self) -> Dict[str, Any]:
        detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        detail.update(self.context)
        return detail


class ValidationError(BookingError):
    """Malformed or disallowed input. Not retried."""

    code = "validation_error"
    http_status = status.HTTP_400_BAD_REQUEST


class NotFoundError(BookingError):
    code = "not_found"
    http_status = status.HTTP_404_NOT_FOUND


class AuthorizationError(BookingError):
    """Caller is not allowed to perform this transition. Not retried."""

    code = "forbidden"
    http_status = status.HTTP_403_FORBIDDEN


class InvalidStateError(BookingError):
    """Booking already left 'pending' (decided, cancelled, or lost a race)."""

    code = "already_decided"
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, message: str, current_status: Optional[str] = None, **context: Any) -> None:
        super().__init__(message, current_status=current_status, **context)
        self.current_status = current_status


class CapacityExceededError(BookingError):
    """The room (or the property's room pool) was taken by a competing confirmation."""

    code = "no_longer_available"
    http_status = status.HTTP_409_CONFLICT


class ConflictError(BookingError):
    """Optimistic retry budget exhausted; the caller should simply try again."""

    code = "try_again"
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE

    def __init__(self, message: str, retry_after: int = 1, **context: Any) -> None:
        super().__init__(message, retry_after=retry_after, **context)
        self.retry_after = retry_after


def booking_error_handler(request: Request, exc: BookingError) -> JSONResponse:
    headers = None
    if isinstance(exc, ConflictError):
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(status_code=exc.http_status, content={"detail": exc.to_detail()}, headers=headers)
