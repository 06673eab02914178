"""Claiming slots and moving bookings between statuses.

Every change to ``Slot.is_booked`` goes through this module. Nothing here
holds an in-process lock: two callers racing for the same slot are told
apart by the database, through ``uq_slots_time_range`` on slot creation,
a conditional update on an existing slot, and ``uq_bookings_active_slot``
on the booking row. The loser gets ``SlotConflict``.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from booking_backend.core.errors import (
    BookingValidationError,
    InvalidStatus,
    NotFound,
    SlotConflict,
    StorageFailure,
)
from booking_backend.models.booking import (
    BOOKING_STATUSES,
    MAX_BOOKING_NOTES_LENGTH,
    Booking,
    BookingStatus,
)
from booking_backend.models.slot import Slot
from booking_backend.models.user import User
from booking_backend.services.slot_generator import CLOSE_TIME, OPEN_TIME, SLOT_DURATION_MINUTES

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class BookingPage:
    bookings: list[Booking]
    page: int
    limit: int
    total: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


def parse_timestamp(value: str | datetime | None) -> datetime:
    """Parse an ISO-8601 timestamp into naive server-local time."""
    if isinstance(value, datetime):
        parsed = value
    else:
        if value is None or not str(value).strip():
            raise BookingValidationError('invalid_timestamp', 'Start time and end time are required.')

        normalized = str(value).strip()
        if normalized.endswith('Z'):
            normalized = normalized[:-1] + '+00:00'

        try:
            parsed = datetime.fromisoformat(normalized)
        except ValueError as exc:
            raise BookingValidationError('invalid_timestamp', 'Invalid date format.') from exc

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)

    return parsed


def validate_booking_window(
    start_value: str | datetime | None,
    end_value: str | datetime | None,
    now: datetime,
) -> tuple[datetime, datetime]:
    start_at = parse_timestamp(start_value)
    end_at = parse_timestamp(end_value)

    if start_at <= now:
        raise BookingValidationError('past_slot', 'Cannot book slots in the past.')

    day_open = datetime.combine(start_at.date(), OPEN_TIME)
    day_close = datetime.combine(start_at.date(), CLOSE_TIME)
    if start_at < day_open or end_at > day_close:
        raise BookingValidationError(
            'outside_business_hours',
            'Slots must be between 9:00 AM and 5:00 PM.',
        )

    if end_at - start_at != timedelta(minutes=SLOT_DURATION_MINUTES):
        raise BookingValidationError(
            'invalid_duration',
            f'Slot duration must be exactly {SLOT_DURATION_MINUTES} minutes.',
        )

    return start_at, end_at


def normalize_notes(notes: str | None) -> str | None:
    if notes is None:
        return None

    normalized = notes.strip()
    if not normalized:
        return None

    if len(normalized) > MAX_BOOKING_NOTES_LENGTH:
        raise BookingValidationError(
            'notes_too_long',
            f'Notes cannot exceed {MAX_BOOKING_NOTES_LENGTH} characters.',
        )

    return normalized


def _claim_slot(db: Session, start_at: datetime, end_at: datetime) -> Slot:
    slot = db.query(Slot).filter(
        Slot.start_at == start_at,
        Slot.end_at == end_at,
    ).first()

    if slot is None:
        slot = Slot(start_at=start_at, end_at=end_at, is_booked=True)
        db.add(slot)
        # Raises IntegrityError when another caller materialized the slot first.
        db.flush()
        return slot

    if slot.is_booked:
        raise SlotConflict()

    claimed = db.query(Slot).filter(
        Slot.id == slot.id,
        Slot.is_booked.is_(False),
    ).update({Slot.is_booked: True}, synchronize_session=False)
    if claimed != 1:
        raise SlotConflict()

    return slot


def book_slot(
    db: Session,
    user: User,
    start_at: str | datetime | None,
    end_at: str | datetime | None,
    notes: str | None = None,
    now: datetime | None = None,
) -> Booking:
    slot_start, slot_end = validate_booking_window(start_at, end_at, now or datetime.now())
    normalized_notes = normalize_notes(notes)

    try:
        slot = _claim_slot(db, slot_start, slot_end)
        booking = Booking(
            user_id=user.id,
            slot_id=slot.id,
            status=BookingStatus.CONFIRMED.value,
            notes=normalized_notes,
        )
        db.add(booking)
        db.commit()
        db.refresh(booking)
    except SlotConflict:
        db.rollback()
        logger.info('Slot %s-%s already booked; rejected claim by user %s', slot_start, slot_end, user.id)
        raise
    except IntegrityError as exc:
        db.rollback()
        logger.info('Lost race for slot %s-%s; rejected claim by user %s', slot_start, slot_end, user.id)
        raise SlotConflict() from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('Failed to book slot %s-%s for user %s', slot_start, slot_end, user.id)
        raise StorageFailure('Failed to book slot. Please try again.') from exc

    logger.info('Booked slot %s-%s as booking %s for user %s', slot_start, slot_end, booking.id, user.id)
    return booking


def set_booking_status(db: Session, booking_id: int, new_status: str | None) -> Booking:
    """Persist a new status, releasing or re-claiming the slot to match.

    Cancelling frees the slot. Cancelling a booking that is already cancelled
    frees nothing, since its slot may belong to a newer booking by then.
    Moving a cancelled booking back to confirmed/completed has to win the
    slot again.
    """
    if new_status not in BOOKING_STATUSES:
        raise InvalidStatus()

    try:
        booking = db.query(Booking).filter(Booking.id == booking_id).first()
        if booking is None:
            raise NotFound('Booking not found.')

        previous_status = booking.status
        booking.status = new_status
        db.flush()

        was_cancelled = previous_status == BookingStatus.CANCELLED.value
        now_cancelled = new_status == BookingStatus.CANCELLED.value

        if now_cancelled and not was_cancelled:
            db.query(Slot).filter(Slot.id == booking.slot_id).update(
                {Slot.is_booked: False},
                synchronize_session=False,
            )
        elif was_cancelled and not now_cancelled:
            reclaimed = db.query(Slot).filter(
                Slot.id == booking.slot_id,
                Slot.is_booked.is_(False),
            ).update({Slot.is_booked: True}, synchronize_session=False)
            if reclaimed != 1:
                raise SlotConflict('This slot has been booked again since the booking was cancelled.')

        db.commit()
        db.refresh(booking)
    except (NotFound, SlotConflict):
        db.rollback()
        raise
    except IntegrityError as exc:
        db.rollback()
        raise SlotConflict('This slot has been booked again since the booking was cancelled.') from exc
    except SQLAlchemyError as exc:
        db.rollback()
        logger.exception('Failed to update status of booking %s', booking_id)
        raise StorageFailure('Failed to update booking status.') from exc

    logger.info('Booking %s moved from %s to %s', booking.id, previous_status, new_status)
    return booking


def list_user_bookings(db: Session, user: User) -> list[Booking]:
    return db.query(Booking).join(Booking.slot).filter(
        Booking.user_id == user.id,
    ).order_by(Slot.start_at.asc(), Booking.id.asc()).all()


def list_all_bookings(
    db: Session,
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
    status: str | None = None,
) -> BookingPage:
    query = db.query(Booking).join(Booking.slot)
    if status in BOOKING_STATUSES:
        query = query.filter(Booking.status == status)

    total = query.count()
    bookings = query.order_by(Slot.start_at.desc(), Booking.id.desc()).offset(
        (page - 1) * limit
    ).limit(limit).all()

    return BookingPage(bookings=bookings, page=page, limit=limit, total=total)
