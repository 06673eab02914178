"""User model definitions."""

from datetime import datetime

from sqlalchemy import Column, Integer, DateTime, String
from booking_backend.database import Base

PATIENT_ROLE = 'patient'
ADMIN_ROLE = 'admin'
USER_ROLES = (PATIENT_ROLE, ADMIN_ROLE)


class User(Base):
    """Represents an application user."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(120), nullable=False, default='')
    email = Column(String, unique=True, index=True, nullable=False)
    hashed_password = Column(String, nullable=False)
    role = Column(String(20), nullable=False, default=PATIENT_ROLE)  # patient/admin
    created_at = Column(DateTime, default=datetime.now, nullable=False)

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE
