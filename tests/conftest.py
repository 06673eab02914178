import os

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

os.environ.setdefault('DATABASE_URL', 'sqlite:///./test.db')

from booking_backend.auth.jwt_handler import create_access_token  # noqa: E402
from booking_backend.database import Base, get_db  # noqa: E402
from booking_backend.main import app  # noqa: E402
from booking_backend.models.booking import Booking  # noqa: E402
from booking_backend.models.slot import Slot  # noqa: E402
from booking_backend.models.user import ADMIN_ROLE, PATIENT_ROLE, User  # noqa: E402

BOOKING_TABLES = [User.__table__, Slot.__table__, Booking.__table__]


@pytest.fixture
def db_engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'booking.db'}",
        connect_args={'check_same_thread': False, 'timeout': 30},
    )
    Base.metadata.create_all(bind=engine, tables=BOOKING_TABLES)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def booking_db(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def make_user(booking_db):
    def _make_user(email: str, role: str = PATIENT_ROLE, name: str = 'Test User') -> User:
        user = User(name=name, email=email, hashed_password='unused-hash', role=role)
        booking_db.add(user)
        booking_db.commit()
        booking_db.refresh(user)
        return user

    return _make_user


@pytest.fixture
def patient(make_user) -> User:
    return make_user('patient@example.com', name='John Doe')


@pytest.fixture
def admin(make_user) -> User:
    return make_user('admin@example.com', role=ADMIN_ROLE, name='Admin User')


@pytest.fixture
def auth_headers():
    def _auth_headers(user: User) -> dict:
        return {'Authorization': f'Bearer {create_access_token(subject=user.email, role=user.role)}'}

    return _auth_headers


@pytest.fixture
def client(session_factory, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setattr('booking_backend.routes.slot_routes.ensure_database_ready', lambda: None)
    monkeypatch.setattr('booking_backend.routes.booking_routes.ensure_database_ready', lambda: None)

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
