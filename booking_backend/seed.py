"""Create demo users and one sample booking.

Usage:
    python -m booking_backend.seed
"""
import logging
import sys
from datetime import date, datetime, timedelta

from booking_backend.auth.passwords import hash_password
from booking_backend.core.errors import SlotConflict
from booking_backend.database import Base, SessionLocal, engine, ensure_booking_schema
from booking_backend.models import booking, slot  # noqa: F401
from booking_backend.models.user import ADMIN_ROLE, PATIENT_ROLE, User
from booking_backend.services import booking_allocator, slot_generator

logger = logging.getLogger(__name__)

DEMO_PASSWORD = 'Passw0rd!'
DEMO_USERS = [
    ('Admin User', 'admin@example.com', ADMIN_ROLE),
    ('John Doe', 'patient@example.com', PATIENT_ROLE),
]


def get_or_create_user(db, name: str, email: str, role: str) -> User:
    user = db.query(User).filter(User.email == email).first()
    if user is not None:
        logger.info('User %s already exists', email)
        return user

    user = User(name=name, email=email, hashed_password=hash_password(DEMO_PASSWORD), role=role)
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info('Created %s user: %s / %s', role, email, DEMO_PASSWORD)
    return user


def next_sample_slot(now: datetime) -> tuple[datetime, datetime]:
    tomorrow = date.today() + timedelta(days=1)
    for slot_start, slot_end in slot_generator.iterate_day_slots(tomorrow):
        if slot_start > now:
            return slot_start, slot_end
    raise RuntimeError('No bookable slot found for tomorrow.')


def main() -> None:
    logging.basicConfig(level=logging.INFO, format='%(message)s')

    Base.metadata.create_all(bind=engine)
    ensure_booking_schema()

    db = SessionLocal()
    try:
        users = [get_or_create_user(db, name, email, role) for name, email, role in DEMO_USERS]
        patient = users[-1]

        slot_start, slot_end = next_sample_slot(datetime.now())
        try:
            sample = booking_allocator.book_slot(
                db,
                patient,
                start_at=slot_start,
                end_at=slot_end,
                notes='Sample booking created by seed script.',
            )
        except SlotConflict:
            logger.info('Sample slot %s is already booked', slot_start)
        else:
            logger.info('Created sample booking %s for %s', sample.id, slot_start)
    finally:
        db.close()


if __name__ == "__main__":
    try:
        main()
    except Exception:
        logger.exception('Seeding failed.')
        sys.exit(1)
