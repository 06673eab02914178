"""Error taxonomy shared by the booking services and the HTTP layer."""

from fastapi import Request, status
from fastapi.responses import JSONResponse


class BookingServiceError(Exception):
    """Base class for errors that map onto a client-visible response."""

    kind = 'booking_error'
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = 'Request could not be completed.'

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_payload(self) -> dict:
        return {'error': self.kind, 'message': self.message}


class InvalidRange(BookingServiceError):
    kind = 'invalid_range'
    default_message = 'Both "from" and "to" dates are required (YYYY-MM-DD format).'


class BookingValidationError(BookingServiceError):
    kind = 'validation_error'
    default_message = 'Booking request is invalid.'

    def __init__(self, reason: str, message: str | None = None) -> None:
        self.reason = reason
        super().__init__(message)

    def to_payload(self) -> dict:
        payload = super().to_payload()
        payload['reason'] = self.reason
        return payload


class SlotConflict(BookingServiceError):
    kind = 'slot_conflict'
    status_code = status.HTTP_409_CONFLICT
    default_message = 'This slot is already booked.'


class InvalidStatus(BookingServiceError):
    kind = 'invalid_status'
    default_message = 'Invalid status. Allowed: confirmed, cancelled, completed.'


class NotFound(BookingServiceError):
    kind = 'not_found'
    status_code = status.HTTP_404_NOT_FOUND
    default_message = 'Resource not found.'


class Unauthorized(BookingServiceError):
    kind = 'unauthorized'
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = 'Access denied. No token provided.'


class Forbidden(BookingServiceError):
    kind = 'forbidden'
    status_code = status.HTTP_403_FORBIDDEN
    default_message = 'Access denied. Insufficient permissions.'


class DuplicateEmail(BookingServiceError):
    kind = 'duplicate_email'
    status_code = status.HTTP_409_CONFLICT
    default_message = 'An account with this email already exists.'


class StorageFailure(BookingServiceError):
    kind = 'storage_failure'
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = 'The request could not be completed. Please try again.'


async def booking_service_error_handler(request: Request, exc: BookingServiceError) -> JSONResponse:
    headers = {'WWW-Authenticate': 'Bearer'} if isinstance(exc, Unauthorized) else None
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload(), headers=headers)
