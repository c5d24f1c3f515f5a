"""Reschedule request state machine record."""

from enum import Enum

from sqlalchemy import Column, Date, DateTime, ForeignKey, Index, String, Text, Time
from sqlalchemy.sql import func
import ulid

from ..database import Base


class RescheduleStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"


TERMINAL_RESCHEDULE_STATUSES = frozenset(
    {RescheduleStatus.APPROVED, RescheduleStatus.REJECTED, RescheduleStatus.CANCELLED}
)


class RescheduleRequestType(str, Enum):
    # Parent moves a session; consumes one of the contract's reschedule attempts
    RESCHEDULE = "reschedule"
    # Tutor asks staff to hand the session to someone else
    TUTOR_REPLACEMENT = "tutor_replacement"
    # Parent asks for a make-up session; free of charge
    MAKEUP = "makeup"


class RescheduleRequest(Base):
    __tablename__ = "reschedule_requests"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    booking_id = Column(String(26), ForeignKey("sessions.id"), nullable=False, index=True)
    contract_id = Column(String(26), ForeignKey("contracts.id"), nullable=False, index=True)
    parent_id = Column(String(26), ForeignKey("users.id"), nullable=False, index=True)

    request_type = Column(
        String(30), nullable=False, default=RescheduleRequestType.RESCHEDULE.value
    )
    requested_date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    requested_tutor_id = Column(String(26), ForeignKey("users.id"), nullable=True)
    reason = Column(Text, nullable=True)
    staff_note = Column(Text, nullable=True)

    status = Column(String(20), nullable=False, default=RescheduleStatus.PENDING.value, index=True)
    staff_id = Column(String(26), ForeignKey("users.id"), nullable=True)
    processed_date = Column(DateTime(timezone=True), nullable=True)
    created_date = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (Index("ix_reschedule_contract_status", "contract_id", "status"),)

    @property
    def is_pending(self) -> bool:
        return self.status == RescheduleStatus.PENDING

    def __repr__(self) -> str:
        return f"<RescheduleRequest {self.id} booking={self.booking_id} {self.status}>"
