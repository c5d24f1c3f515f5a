# backend/mathbridge/models/availability.py
"""
Recurring weekly tutor availability.

A window applies on every weekday in ``weekday_mask`` (bit 0 = Sunday) between
``available_from`` and ``available_until`` for dates inside the effective
range. ``current_bookings`` counts the bookings currently holding the window
and never exceeds ``max_concurrent_bookings``. Windows are soft-disabled
through ``status`` rather than deleted while bookings reference them.
"""

from datetime import date
from enum import Enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    SmallInteger,
    String,
    Time,
)
from sqlalchemy.sql import func
import ulid

from ..database import Base


class AvailabilityStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class TutorAvailability(Base):
    __tablename__ = "tutor_availabilities"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    tutor_id = Column(String(26), ForeignKey("users.id"), nullable=False, index=True)

    weekday_mask = Column(SmallInteger, nullable=False)
    available_from = Column(Time, nullable=False)
    available_until = Column(Time, nullable=False)
    effective_from = Column(Date, nullable=False)
    effective_until = Column(Date, nullable=True)

    can_teach_online = Column(Boolean, nullable=False, default=True)
    can_teach_offline = Column(Boolean, nullable=False, default=False)
    max_travel_distance_km = Column(Float, nullable=True)

    max_concurrent_bookings = Column(Integer, nullable=False, default=1)
    current_bookings = Column(Integer, nullable=False, default=0)

    status = Column(String(20), nullable=False, default=AvailabilityStatus.ACTIVE.value, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("weekday_mask BETWEEN 1 AND 127", name="ck_availability_weekday_mask"),
        CheckConstraint("available_from < available_until", name="ck_availability_time_order"),
        CheckConstraint("max_concurrent_bookings >= 1", name="ck_availability_max_bookings"),
        CheckConstraint(
            "current_bookings >= 0 AND current_bookings <= max_concurrent_bookings",
            name="ck_availability_booking_bounds",
        ),
        Index("ix_availability_tutor_status", "tutor_id", "status"),
    )

    @property
    def remaining_capacity(self) -> int:
        return max(0, (self.max_concurrent_bookings or 0) - (self.current_bookings or 0))

    @property
    def is_active(self) -> bool:
        return self.status == AvailabilityStatus.ACTIVE

    def is_effective_on(self, target: date) -> bool:
        if target < self.effective_from:
            return False
        return self.effective_until is None or target <= self.effective_until

    def time_range_label(self) -> str:
        return f"{self.available_from:%H:%M}-{self.available_until:%H:%M}"

    def __repr__(self) -> str:
        return (
            f"<TutorAvailability {self.id} tutor={self.tutor_id} mask={self.weekday_mask} "
            f"{self.time_range_label()}>"
        )
