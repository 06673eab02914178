"""Virtual grid of bookable slots.

Only slots that have been claimed at least once exist in the ``slots``
table. Everything else is generated on the fly from the business-hour rules
below and overlaid with the persisted booked slots.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

from sqlalchemy.orm import Session

from booking_backend.core.errors import InvalidRange
from booking_backend.models.slot import Slot

OPEN_TIME = time(9, 0)
CLOSE_TIME = time(17, 0)
SLOT_DURATION_MINUTES = 30
# Listings never reach past this many days from today, however wide the
# requested range is.
LOOKAHEAD_DAYS = 7


@dataclass(frozen=True)
class SlotView:
    start_at: datetime
    end_at: datetime
    is_booked: bool

    @property
    def id(self) -> str | None:
        if self.is_booked:
            return None
        return f'slot_{int(self.start_at.timestamp() * 1000)}'

    @property
    def time_string(self) -> str:
        return format_time_string(self.start_at)


@dataclass(frozen=True)
class SlotListing:
    slots: list[SlotView]

    @property
    def total(self) -> int:
        return len(self.slots)

    @property
    def booked(self) -> int:
        return sum(1 for slot in self.slots if slot.is_booked)

    @property
    def available(self) -> int:
        return self.total - self.booked


def format_time_string(value: datetime) -> str:
    return value.strftime('%I:%M %p')


def format_date_string(value: datetime) -> str:
    return f'{value:%A}, {value:%B} {value.day}, {value.year}'


def parse_range_date(value: str | date | None, field_name: str) -> date:
    if isinstance(value, date):
        return value

    if value is None or not value.strip():
        raise InvalidRange()

    try:
        return date.fromisoformat(value.strip())
    except ValueError as exc:
        raise InvalidRange(f'Invalid "{field_name}" date. Use YYYY-MM-DD format.') from exc


def iterate_day_slots(day: date) -> list[tuple[datetime, datetime]]:
    """Return the ``(start, end)`` pairs of one business day, in order."""
    slots: list[tuple[datetime, datetime]] = []
    current_start = datetime.combine(day, OPEN_TIME)
    day_close = datetime.combine(day, CLOSE_TIME)
    step = timedelta(minutes=SLOT_DURATION_MINUTES)

    while current_start + step <= day_close:
        slots.append((current_start, current_start + step))
        current_start += step

    return slots


def get_booked_slot_ranges(range_start: datetime, range_end: datetime, db: Session) -> set[tuple[datetime, datetime]]:
    booked_slots = db.query(Slot.start_at, Slot.end_at).filter(
        Slot.is_booked.is_(True),
        Slot.start_at >= range_start,
        Slot.start_at < range_end,
    ).all()

    return {(booked_start, booked_end) for booked_start, booked_end in booked_slots}


def list_slots(
    db: Session,
    from_date: str | date | None,
    to_date: str | date | None,
    now: datetime | None = None,
) -> SlotListing:
    first_day = parse_range_date(from_date, 'from')
    last_day = parse_range_date(to_date, 'to')

    if first_day > last_day:
        raise InvalidRange('"from" must be on or before "to".')

    now = now or datetime.now()
    window_start = datetime.combine(now.date(), time.min)
    window_end = window_start + timedelta(days=LOOKAHEAD_DAYS)

    first_day = max(first_day, window_start.date())
    last_day = min(last_day, window_end.date())
    if first_day > last_day:
        return SlotListing(slots=[])

    booked_ranges = get_booked_slot_ranges(
        datetime.combine(first_day, OPEN_TIME),
        datetime.combine(last_day, CLOSE_TIME),
        db,
    )

    slots: list[SlotView] = []
    current_day = first_day
    while current_day <= last_day:
        for slot_start, slot_end in iterate_day_slots(current_day):
            if window_start <= slot_start <= window_end:
                slots.append(
                    SlotView(
                        start_at=slot_start,
                        end_at=slot_end,
                        is_booked=(slot_start, slot_end) in booked_ranges,
                    )
                )
        current_day += timedelta(days=1)

    return SlotListing(slots=slots)
