"""Slot model definitions."""

from datetime import datetime

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Index, Integer, UniqueConstraint
from booking_backend.database import Base


class Slot(Base):
    """One bookable 30-minute unit, persisted the first time it is claimed."""
    __tablename__ = "slots"

    id = Column(Integer, primary_key=True)
    start_at = Column(DateTime, nullable=False)
    end_at = Column(DateTime, nullable=False)
    is_booked = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.now, nullable=False)
    updated_at = Column(DateTime, default=datetime.now, onupdate=datetime.now)

    __table_args__ = (
        # Two callers racing to materialize the same slot: only one insert wins.
        UniqueConstraint("start_at", "end_at", name="uq_slots_time_range"),
        CheckConstraint("end_at > start_at", name="ck_slots_end_after_start"),
        Index("idx_slots_booked_start", "is_booked", "start_at"),
    )

    @property
    def duration_minutes(self) -> int:
        return int((self.end_at - self.start_at).total_seconds() // 60)
