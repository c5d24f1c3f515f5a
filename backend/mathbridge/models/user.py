# backend/mathbridge/models/user.py
"""
User model as seen by the scheduling core.

Parents, tutors, staff and admins share one table, differentiated by the
role column. The scheduling core reads role/status to decide who can be
matched, and a tutor's registered coordinates to evaluate offline distance.
Parents carry a wallet balance that session refunds are credited to.
"""

from sqlalchemy import JSON, Column, DateTime, Float, Numeric, String
from sqlalchemy.sql import func
import ulid

from ..core.enums import AccountStatus, RoleName
from ..database import Base


class User(Base):
    """
    Platform user.

    Attributes:
        id: ULID primary key
        full_name: Display name
        email: Contact email
        role: One of RoleName
        status: One of AccountStatus
        latitude/longitude: Registered location (tutors), optional
        teaching_grades: Grades a tutor teaches, e.g. ["grade 6", "grade 7"]
        wallet_balance: Parent wallet credited by refunds
    """

    __tablename__ = "users"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    full_name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=True, unique=True)
    role = Column(String(20), nullable=False, default=RoleName.PARENT.value, index=True)
    status = Column(String(20), nullable=False, default=AccountStatus.ACTIVE.value, index=True)

    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    teaching_grades = Column(JSON, nullable=True)

    wallet_balance = Column(Numeric(14, 2), nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    @property
    def is_tutor(self) -> bool:
        return self.role == RoleName.TUTOR

    @property
    def is_active(self) -> bool:
        return self.status == AccountStatus.ACTIVE

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def __repr__(self) -> str:
        return f"<User {self.id} {self.role}>"
