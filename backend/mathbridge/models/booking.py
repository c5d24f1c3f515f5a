# backend/mathbridge/models/booking.py
"""
Session instance ("booking") model.

One concrete dated occurrence of tutoring between a tutor and a contract.
Bookings store tutor, date and times directly so conflict checks never need
to join through the contract. ``availability_id`` points at the availability
window whose booking counter this session holds, so releasing the session
releases exactly that counter.

Invariant: for a tutor, no two bookings with status ``scheduled`` overlap on
the same date, using half-open [start_time, end_time) intervals.
"""

from enum import Enum

from sqlalchemy import Boolean, Column, Date, DateTime, Float, ForeignKey, Index, String, Text, Time
from sqlalchemy.sql import func
import ulid

from ..database import Base


class BookingStatus(str, Enum):
    """Session lifecycle statuses."""

    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Booking(Base):
    __tablename__ = "sessions"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    contract_id = Column(String(26), ForeignKey("contracts.id"), nullable=False, index=True)
    tutor_id = Column(String(26), ForeignKey("users.id"), nullable=False)
    availability_id = Column(
        String(26), ForeignKey("tutor_availabilities.id", ondelete="SET NULL"), nullable=True
    )

    session_date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)

    is_online = Column(Boolean, nullable=False, default=True)
    video_call_platform = Column(String(50), nullable=True)
    offline_address = Column(String(500), nullable=True)
    offline_latitude = Column(Float, nullable=True)
    offline_longitude = Column(Float, nullable=True)

    status = Column(String(20), nullable=False, default=BookingStatus.SCHEDULED.value, index=True)
    cancellation_reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("ix_sessions_tutor_date_status", "tutor_id", "session_date", "status"),)

    @property
    def is_scheduled(self) -> bool:
        return self.status == BookingStatus.SCHEDULED

    def window_label(self) -> str:
        return f"{self.session_date.isoformat()} {self.start_time:%H:%M}-{self.end_time:%H:%M}"

    def __repr__(self) -> str:
        return f"<Booking {self.id} tutor={self.tutor_id} {self.window_label()} {self.status}>"
