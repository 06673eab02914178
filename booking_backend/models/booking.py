"""Booking model definitions."""

import enum
from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, text
from sqlalchemy.orm import relationship
from booking_backend.database import Base

MAX_BOOKING_NOTES_LENGTH = 500


class BookingStatus(str, enum.Enum):
    CONFIRMED = 'confirmed'
    CANCELLED = 'cancelled'
    COMPLETED = 'completed'


BOOKING_STATUSES = tuple(item.value for item in BookingStatus)


class Booking(Base):
    """A user's claim on exactly one slot."""
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    slot_id = Column(Integer, ForeignKey("slots.id"), nullable=False)
    status = Column(String(20), nullable=False, default=BookingStatus.CONFIRMED.value)
    notes = Column(String(MAX_BOOKING_NOTES_LENGTH))
    created_at = Column(DateTime, default=datetime.now, nullable=False)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    user = relationship("User", lazy="joined")
    slot = relationship("Slot", lazy="joined")

    __table_args__ = (
        # At most one active booking per slot. Cancelled rows are kept as
        # history, so they stay outside the index.
        Index(
            "uq_bookings_active_slot",
            "slot_id",
            unique=True,
            postgresql_where=text("status <> 'cancelled'"),
            sqlite_where=text("status <> 'cancelled'"),
        ),
        Index("idx_bookings_user_created", "user_id", "created_at"),
        Index("idx_bookings_status", "status"),
    )
