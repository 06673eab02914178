import logging
from threading import Lock

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker

from booking_backend.core import config
from booking_backend.core.errors import StorageFailure

logger = logging.getLogger(__name__)


def _connect_args(database_url: str) -> dict:
    if database_url.startswith("sqlite"):
        # Request handlers share pooled connections across worker threads.
        return {"check_same_thread": False, "timeout": 30}
    return {}


engine = create_engine(
    config.DATABASE_URL,
    echo=config.SQL_ECHO,
    connect_args=_connect_args(config.DATABASE_URL),
)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)

Base = declarative_base()

_schema_lock = Lock()
_booking_schema_checked = False


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def ensure_database_ready() -> None:
    try:
        ensure_booking_schema()
    except SQLAlchemyError as exc:
        logger.exception('Database schema check failed. Check DATABASE_URL and credentials.')
        raise StorageFailure('Database unavailable.') from exc


def _has_unique_time_range(inspector) -> bool:
    time_range = ['start_at', 'end_at']
    for constraint in inspector.get_unique_constraints('slots'):
        if constraint['column_names'] == time_range:
            return True
    for index in inspector.get_indexes('slots'):
        if index.get('unique') and index['column_names'] == time_range:
            return True
    return False


def ensure_booking_schema() -> None:
    """Bring tables created by older releases up to the current constraints.

    Fresh databases get everything from ``create_all``; this only fills in
    columns and unique indexes that an existing table may be missing.
    """
    global _booking_schema_checked

    if _booking_schema_checked:
        return

    with _schema_lock:
        if _booking_schema_checked:
            return

        inspector = inspect(engine)
        table_names = set(inspector.get_table_names())

        with engine.begin() as connection:
            if 'slots' in table_names:
                existing_columns = {column['name'] for column in inspector.get_columns('slots')}
                if 'updated_at' not in existing_columns:
                    connection.execute(text('ALTER TABLE slots ADD COLUMN updated_at TIMESTAMP'))
                if not _has_unique_time_range(inspector):
                    connection.execute(
                        text('CREATE UNIQUE INDEX IF NOT EXISTS uq_slots_time_range ON slots(start_at, end_at)')
                    )
                connection.execute(
                    text('CREATE INDEX IF NOT EXISTS idx_slots_booked_start ON slots(is_booked, start_at)')
                )

            if 'bookings' in table_names:
                existing_columns = {column['name'] for column in inspector.get_columns('bookings')}
                migration_steps = [
                    ('notes', 'ALTER TABLE bookings ADD COLUMN notes VARCHAR(500)'),
                    ('updated_at', 'ALTER TABLE bookings ADD COLUMN updated_at TIMESTAMP'),
                ]
                for column_name, statement in migration_steps:
                    if column_name not in existing_columns:
                        connection.execute(text(statement))
                connection.execute(
                    text(
                        'CREATE UNIQUE INDEX IF NOT EXISTS uq_bookings_active_slot '
                        "ON bookings(slot_id) WHERE status <> 'cancelled'"
                    )
                )
                connection.execute(
                    text('CREATE INDEX IF NOT EXISTS idx_bookings_user_created ON bookings(user_id, created_at)')
                )

        _booking_schema_checked = True
