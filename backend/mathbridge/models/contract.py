# backend/mathbridge/models/contract.py
"""
Teaching contract.

A contract owns a recurring schedule (weekday mask, time range, date range)
taught by a main tutor with up to two substitutes. Sessions are generated
from it once, at creation time; afterwards they are independent rows that
reference the contract by id only.
"""

from enum import Enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    SmallInteger,
    String,
    Time,
)
from sqlalchemy.sql import func
import ulid

from ..database import Base


class ContractStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Contract(Base):
    __tablename__ = "contracts"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    parent_id = Column(String(26), ForeignKey("users.id"), nullable=False, index=True)
    child_id = Column(String(26), nullable=False)
    second_child_id = Column(String(26), nullable=True)
    package_id = Column(String(26), ForeignKey("payment_packages.id"), nullable=True)

    main_tutor_id = Column(String(26), ForeignKey("users.id"), nullable=False, index=True)
    substitute_tutor1_id = Column(String(26), ForeignKey("users.id"), nullable=True)
    substitute_tutor2_id = Column(String(26), ForeignKey("users.id"), nullable=True)

    start_date = Column(Date, nullable=False)
    end_date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    weekday_mask = Column(SmallInteger, nullable=False)

    is_online = Column(Boolean, nullable=False, default=True)
    offline_address = Column(String(500), nullable=True)
    offline_latitude = Column(Float, nullable=True)
    offline_longitude = Column(Float, nullable=True)
    video_call_platform = Column(String(50), nullable=True)
    max_distance_km = Column(Float, nullable=True)

    # Remaining parent-initiated reschedules
    reschedule_count = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default=ContractStatus.PENDING.value, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        CheckConstraint("start_date <= end_date", name="ck_contract_date_order"),
        CheckConstraint("start_time < end_time", name="ck_contract_time_order"),
        CheckConstraint("weekday_mask BETWEEN 1 AND 127", name="ck_contract_weekday_mask"),
    )

    @property
    def is_twin(self) -> bool:
        return self.second_child_id is not None

    @property
    def substitute_tutor_ids(self) -> list[str]:
        return [t for t in (self.substitute_tutor1_id, self.substitute_tutor2_id) if t]

    @property
    def tutor_ids(self) -> list[str]:
        return [self.main_tutor_id, *self.substitute_tutor_ids]

    def __repr__(self) -> str:
        return f"<Contract {self.id} tutor={self.main_tutor_id} status={self.status}>"
