import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from booking_backend.auth.dependencies import get_current_user, require_admin
from booking_backend.core.errors import StorageFailure
from booking_backend.database import ensure_database_ready, get_db
from booking_backend.models.booking import Booking
from booking_backend.models.user import User
from booking_backend.services import booking_allocator
from booking_backend.services.slot_generator import format_date_string, format_time_string

router = APIRouter(tags=['bookings'])

logger = logging.getLogger(__name__)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateBookingRequest(CamelModel):
    # Kept as strings so malformed timestamps surface as booking validation errors.
    start_at: str | None = None
    end_at: str | None = None
    notes: str | None = None


class UpdateBookingStatusRequest(CamelModel):
    status: str | None = None


class BookingUserResponse(CamelModel):
    id: int
    name: str
    email: str
    role: str


class BookingSlotResponse(CamelModel):
    id: int
    start_at: datetime
    end_at: datetime
    time_string: str
    date_string: str


class BookingResponse(CamelModel):
    id: int
    user: BookingUserResponse
    slot: BookingSlotResponse
    status: str
    notes: str | None = None
    created_at: datetime
    updated_at: datetime | None = None


class BookingEnvelopeResponse(BaseModel):
    message: str
    booking: BookingResponse


class MyBookingResponse(CamelModel):
    id: int
    start_at: datetime
    end_at: datetime
    status: str
    notes: str | None = None
    created_at: datetime
    time_string: str
    date_string: str


class MyBookingsResponse(BaseModel):
    bookings: list[MyBookingResponse]
    total: int


class PaginationResponse(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class AllBookingsResponse(BaseModel):
    bookings: list[BookingResponse]
    pagination: PaginationResponse


def to_booking_response(booking: Booking) -> BookingResponse:
    return BookingResponse(
        id=booking.id,
        user=BookingUserResponse(
            id=booking.user.id,
            name=booking.user.name or '',
            email=booking.user.email,
            role=booking.user.role,
        ),
        slot=BookingSlotResponse(
            id=booking.slot.id,
            start_at=booking.slot.start_at,
            end_at=booking.slot.end_at,
            time_string=format_time_string(booking.slot.start_at),
            date_string=format_date_string(booking.slot.start_at),
        ),
        status=booking.status,
        notes=booking.notes,
        created_at=booking.created_at,
        updated_at=booking.updated_at,
    )


def to_my_booking_response(booking: Booking) -> MyBookingResponse:
    return MyBookingResponse(
        id=booking.id,
        start_at=booking.slot.start_at,
        end_at=booking.slot.end_at,
        status=booking.status,
        notes=booking.notes,
        created_at=booking.created_at,
        time_string=format_time_string(booking.slot.start_at),
        date_string=format_date_string(booking.slot.start_at),
    )


@router.post('/book', response_model=BookingEnvelopeResponse, status_code=status.HTTP_201_CREATED)
def book_slot(
    data: CreateBookingRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    booking = booking_allocator.book_slot(
        db,
        current_user,
        start_at=data.start_at,
        end_at=data.end_at,
        notes=data.notes,
    )

    return BookingEnvelopeResponse(
        message='Slot booked successfully',
        booking=to_booking_response(booking),
    )


@router.get('/my-bookings', response_model=MyBookingsResponse)
def list_my_bookings(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        bookings = booking_allocator.list_user_bookings(db, current_user)
    except SQLAlchemyError as exc:
        logger.exception('Failed to fetch bookings for user %s', current_user.id)
        raise StorageFailure('Failed to fetch your bookings.') from exc

    return MyBookingsResponse(
        bookings=[to_my_booking_response(booking) for booking in bookings],
        total=len(bookings),
    )


@router.get('/all-bookings', response_model=AllBookingsResponse, dependencies=[Depends(require_admin)])
def list_all_bookings(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=booking_allocator.DEFAULT_PAGE_SIZE, ge=1, le=booking_allocator.MAX_PAGE_SIZE),
    booking_status: str | None = Query(default=None, alias='status'),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    try:
        result = booking_allocator.list_all_bookings(db, page=page, limit=limit, status=booking_status)
    except SQLAlchemyError as exc:
        logger.exception('Failed to fetch all bookings.')
        raise StorageFailure('Failed to fetch all bookings.') from exc

    return AllBookingsResponse(
        bookings=[to_booking_response(booking) for booking in result.bookings],
        pagination=PaginationResponse(
            page=result.page,
            limit=result.limit,
            total=result.total,
            pages=result.pages,
        ),
    )


@router.patch('/bookings/{booking_id}/status', response_model=BookingEnvelopeResponse)
def update_booking_status(
    booking_id: int,
    data: UpdateBookingStatusRequest,
    admin: User = Depends(require_admin),
    db: Session = Depends(get_db),
):
    ensure_database_ready()

    booking = booking_allocator.set_booking_status(db, booking_id, data.status)
    logger.info('Admin %s set booking %s to %s', admin.id, booking.id, booking.status)

    return BookingEnvelopeResponse(
        message='Booking status updated',
        booking=to_booking_response(booking),
    )
