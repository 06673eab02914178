import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from booking_backend.core.errors import (
    BookingValidationError,
    InvalidStatus,
    NotFound,
    SlotConflict,
    StorageFailure,
)
from booking_backend.models.booking import Booking
from booking_backend.models.slot import Slot
from booking_backend.models.user import User
from booking_backend.services import booking_allocator
from booking_backend.services.slot_generator import iterate_day_slots, list_slots

NOW = datetime(2025, 1, 5, 12, 0)
START = '2025-01-06T09:00:00'
END = '2025-01-06T09:30:00'


def book(db, user, start=START, end=END, **kwargs) -> Booking:
    return booking_allocator.book_slot(db, user, start_at=start, end_at=end, now=NOW, **kwargs)


def slot_state(db, start=datetime(2025, 1, 6, 9, 0)) -> bool:
    db.expire_all()
    return db.query(Slot).filter(Slot.start_at == start).one().is_booked


def test_book_slot_creates_slot_and_booking(booking_db, patient) -> None:
    booking = book(booking_db, patient, notes='  First visit  ')

    assert booking.status == 'confirmed'
    assert booking.notes == 'First visit'
    assert booking.user.email == 'patient@example.com'
    assert booking.slot.start_at == datetime(2025, 1, 6, 9, 0)
    assert booking.slot.end_at == datetime(2025, 1, 6, 9, 30)
    assert booking.slot.is_booked is True


def test_booked_slot_shows_as_booked_in_listing(booking_db, patient) -> None:
    book(booking_db, patient)

    listing = list_slots(booking_db, '2025-01-06', '2025-01-06', now=NOW)

    booked = [slot for slot in listing.slots if slot.is_booked]
    assert [slot.start_at for slot in booked] == [datetime(2025, 1, 6, 9, 0)]


def test_book_slot_accepts_utc_offsets_as_local_time(booking_db, patient) -> None:
    local_start = datetime(2025, 1, 6, 10, 0)
    utc_start = local_start.astimezone(timezone.utc)

    booking = book(
        booking_db,
        patient,
        start=utc_start.isoformat(),
        end=(utc_start + timedelta(minutes=30)).isoformat(),
    )

    assert booking.slot.start_at == local_start


@pytest.mark.parametrize(
    ('start', 'end', 'reason'),
    [
        (None, END, 'invalid_timestamp'),
        ('tomorrow at nine', END, 'invalid_timestamp'),
        (START, '', 'invalid_timestamp'),
        ('2025-01-05T09:00:00', '2025-01-05T09:30:00', 'past_slot'),
        ('2025-01-06T08:30:00', '2025-01-06T09:00:00', 'outside_business_hours'),
        ('2025-01-06T16:45:00', '2025-01-06T17:15:00', 'outside_business_hours'),
        ('2025-01-06T09:00:00', '2025-01-06T10:00:00', 'invalid_duration'),
        ('2025-01-06T09:00:00', '2025-01-06T09:15:00', 'invalid_duration'),
    ],
)
def test_book_slot_rejects_invalid_requests(booking_db, patient, start, end, reason: str) -> None:
    with pytest.raises(BookingValidationError) as exception_info:
        book(booking_db, patient, start=start, end=end)

    assert exception_info.value.reason == reason
    assert booking_db.query(Slot).count() == 0
    assert booking_db.query(Booking).count() == 0


def test_book_slot_checks_past_before_business_hours(booking_db, patient) -> None:
    with pytest.raises(BookingValidationError) as exception_info:
        book(booking_db, patient, start='2025-01-04T08:00:00', end='2025-01-04T09:00:00')

    assert exception_info.value.reason == 'past_slot'


def test_book_slot_accepts_last_slot_of_the_day(booking_db, patient) -> None:
    booking = book(booking_db, patient, start='2025-01-06T16:30:00', end='2025-01-06T17:00:00')

    assert booking.slot.end_at == datetime(2025, 1, 6, 17, 0)


def test_book_slot_accepts_start_between_grid_boundaries(booking_db, patient) -> None:
    booking = book(booking_db, patient, start='2025-01-06T10:15:00', end='2025-01-06T10:45:00')

    assert booking.status == 'confirmed'
    assert booking.slot.start_at == datetime(2025, 1, 6, 10, 15)
    assert booking.slot.is_booked is True


def test_book_slot_rejects_long_notes(booking_db, patient) -> None:
    with pytest.raises(BookingValidationError) as exception_info:
        book(booking_db, patient, notes='x' * 501)

    assert exception_info.value.reason == 'notes_too_long'


def test_book_slot_stores_blank_notes_as_none(booking_db, patient) -> None:
    assert book(booking_db, patient, notes='   ').notes is None


def test_book_slot_rejects_already_booked_slot(booking_db, patient, make_user) -> None:
    other = make_user('other@example.com')
    book(booking_db, patient)

    with pytest.raises(SlotConflict):
        book(booking_db, other)

    assert booking_db.query(Booking).count() == 1
    assert booking_db.query(Slot).count() == 1


def test_book_slot_rolls_back_claim_when_booking_insert_loses(booking_db, patient, make_user) -> None:
    # Stale flag: the slot looks free but an active booking already holds it.
    slot = Slot(start_at=datetime(2025, 1, 6, 9, 0), end_at=datetime(2025, 1, 6, 9, 30), is_booked=False)
    booking_db.add(slot)
    booking_db.flush()
    booking_db.add(Booking(user_id=patient.id, slot_id=slot.id, status='confirmed'))
    booking_db.commit()

    with pytest.raises(SlotConflict):
        book(booking_db, make_user('late@example.com'))

    assert slot_state(booking_db) is False
    assert booking_db.query(Booking).count() == 1


def _claim_concurrently(session_factory, users: list[User]) -> list[object]:
    barrier = threading.Barrier(len(users))
    results: list[object] = [None] * len(users)

    def worker(index: int, user_id: int) -> None:
        db = session_factory()
        try:
            user = db.get(User, user_id)
            barrier.wait(timeout=30)
            results[index] = book(db, user)
        except Exception as exc:  # collected for assertions
            results[index] = exc
        finally:
            db.close()

    threads = [
        threading.Thread(target=worker, args=(index, user.id))
        for index, user in enumerate(users)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    return results


@pytest.mark.parametrize('slot_exists', [False, True])
def test_concurrent_claims_for_same_slot_have_exactly_one_winner(
    booking_db,
    session_factory,
    make_user,
    slot_exists: bool,
) -> None:
    if slot_exists:
        booking_db.add(Slot(start_at=datetime(2025, 1, 6, 9, 0), end_at=datetime(2025, 1, 6, 9, 30), is_booked=False))
        booking_db.commit()
    users = [make_user(f'patient{index}@example.com') for index in range(6)]

    results = _claim_concurrently(session_factory, users)

    winners = [result for result in results if isinstance(result, Booking)]
    conflicts = [result for result in results if isinstance(result, SlotConflict)]
    assert len(winners) == 1
    assert len(conflicts) == len(users) - 1

    booking_db.expire_all()
    assert booking_db.query(Slot).count() == 1
    assert booking_db.query(Booking).count() == 1
    assert slot_state(booking_db) is True


def test_cancel_releases_slot_and_allows_rebooking(booking_db, patient, make_user) -> None:
    booking = book(booking_db, patient)

    cancelled = booking_allocator.set_booking_status(booking_db, booking.id, 'cancelled')

    assert cancelled.status == 'cancelled'
    assert slot_state(booking_db) is False
    listing = list_slots(booking_db, '2025-01-06', '2025-01-06', now=NOW)
    assert listing.booked == 0

    rebooked = book(booking_db, make_user('second@example.com'))

    assert rebooked.slot_id == booking.slot_id
    assert slot_state(booking_db) is True
    assert booking_db.query(Booking).count() == 2


def test_cancelling_twice_does_not_release_a_rebooked_slot(booking_db, patient, make_user) -> None:
    first = book(booking_db, patient)
    booking_allocator.set_booking_status(booking_db, first.id, 'cancelled')
    book(booking_db, make_user('second@example.com'))

    booking_allocator.set_booking_status(booking_db, first.id, 'cancelled')

    assert slot_state(booking_db) is True


def test_completing_booking_keeps_slot_booked(booking_db, patient) -> None:
    booking = book(booking_db, patient)

    completed = booking_allocator.set_booking_status(booking_db, booking.id, 'completed')

    assert completed.status == 'completed'
    assert slot_state(booking_db) is True


def test_completed_booking_can_still_be_cancelled(booking_db, patient) -> None:
    booking = book(booking_db, patient)
    booking_allocator.set_booking_status(booking_db, booking.id, 'completed')

    booking_allocator.set_booking_status(booking_db, booking.id, 'cancelled')

    assert slot_state(booking_db) is False


def test_reconfirming_cancelled_booking_reclaims_free_slot(booking_db, patient) -> None:
    booking = book(booking_db, patient)
    booking_allocator.set_booking_status(booking_db, booking.id, 'cancelled')

    restored = booking_allocator.set_booking_status(booking_db, booking.id, 'confirmed')

    assert restored.status == 'confirmed'
    assert slot_state(booking_db) is True


def test_reconfirming_cancelled_booking_fails_when_slot_was_rebooked(booking_db, patient, make_user) -> None:
    booking = book(booking_db, patient)
    booking_allocator.set_booking_status(booking_db, booking.id, 'cancelled')
    book(booking_db, make_user('second@example.com'))

    with pytest.raises(SlotConflict):
        booking_allocator.set_booking_status(booking_db, booking.id, 'confirmed')

    booking_db.expire_all()
    assert booking_db.get(Booking, booking.id).status == 'cancelled'
    assert slot_state(booking_db) is True


@pytest.mark.parametrize('status', ['pending', '', None, 'CANCELLED'])
def test_set_booking_status_rejects_unknown_status(booking_db, patient, status) -> None:
    booking = book(booking_db, patient)

    with pytest.raises(InvalidStatus):
        booking_allocator.set_booking_status(booking_db, booking.id, status)

    assert slot_state(booking_db) is True


def test_set_booking_status_reports_missing_booking(booking_db) -> None:
    with pytest.raises(NotFound):
        booking_allocator.set_booking_status(booking_db, 999, 'cancelled')


def test_list_user_bookings_sorts_by_slot_start(booking_db, patient, make_user) -> None:
    book(booking_db, patient, start='2025-01-06T15:00:00', end='2025-01-06T15:30:00')
    book(booking_db, patient, start='2025-01-06T10:00:00', end='2025-01-06T10:30:00')
    book(booking_db, make_user('other@example.com'), start='2025-01-06T11:00:00', end='2025-01-06T11:30:00')

    bookings = booking_allocator.list_user_bookings(booking_db, patient)

    assert [booking.slot.start_at.hour for booking in bookings] == [10, 15]


def test_list_all_bookings_paginates_by_slot_start_descending(booking_db, patient) -> None:
    slot_ranges = [
        slot_range
        for day_offset in range(3)
        for slot_range in iterate_day_slots((NOW + timedelta(days=day_offset + 1)).date())
    ][:45]
    for slot_start, slot_end in slot_ranges:
        book(booking_db, patient, start=slot_start, end=slot_end)

    first_page = booking_allocator.list_all_bookings(booking_db, page=1, limit=20)
    last_page = booking_allocator.list_all_bookings(booking_db, page=3, limit=20)

    assert first_page.total == 45
    assert first_page.pages == 3
    assert first_page.bookings[0].slot.start_at == slot_ranges[-1][0]
    assert len(last_page.bookings) == 5
    assert last_page.bookings[-1].slot.start_at == slot_ranges[0][0]


def test_list_all_bookings_filters_by_status(booking_db, patient) -> None:
    kept = book(booking_db, patient)
    cancelled = book(booking_db, patient, start='2025-01-06T10:00:00', end='2025-01-06T10:30:00')
    booking_allocator.set_booking_status(booking_db, cancelled.id, 'cancelled')

    confirmed_page = booking_allocator.list_all_bookings(booking_db, status='confirmed')
    unfiltered_page = booking_allocator.list_all_bookings(booking_db, status='bogus')

    assert [booking.id for booking in confirmed_page.bookings] == [kept.id]
    assert unfiltered_page.total == 2


def failing_storage(*args, **kwargs):
    raise OperationalError('COMMIT', {}, Exception('disk I/O error'))


def test_book_slot_reports_storage_failure_and_leaves_nothing_behind(
    booking_db,
    patient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(booking_db, 'commit', failing_storage)

    with pytest.raises(StorageFailure):
        book(booking_db, patient)

    assert booking_db.query(Slot).count() == 0
    assert booking_db.query(Booking).count() == 0


def test_book_slot_reports_storage_failure_when_reload_fails(
    booking_db,
    patient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(booking_db, 'refresh', failing_storage)

    with pytest.raises(StorageFailure):
        book(booking_db, patient)


def test_failed_cancel_keeps_slot_booked(booking_db, patient, monkeypatch: pytest.MonkeyPatch) -> None:
    booking = book(booking_db, patient)
    monkeypatch.setattr(booking_db, 'commit', failing_storage)

    with pytest.raises(StorageFailure):
        booking_allocator.set_booking_status(booking_db, booking.id, 'cancelled')

    monkeypatch.undo()
    assert slot_state(booking_db) is True
    assert booking_db.get(Booking, booking.id).status == 'confirmed'


def test_set_booking_status_reports_storage_failure_when_reload_fails(
    booking_db,
    patient,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    booking = book(booking_db, patient)
    monkeypatch.setattr(booking_db, 'refresh', failing_storage)

    with pytest.raises(StorageFailure):
        booking_allocator.set_booking_status(booking_db, booking.id, 'completed')
