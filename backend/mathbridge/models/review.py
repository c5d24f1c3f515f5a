"""Final feedback left by parents; a tutor's rating is the average of these."""

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.sql import func
import ulid

from ..database import Base


class FinalFeedback(Base):
    __tablename__ = "final_feedbacks"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    tutor_id = Column(String(26), ForeignKey("users.id"), nullable=False, index=True)
    contract_id = Column(String(26), ForeignKey("contracts.id"), nullable=True)
    overall_satisfaction_rating = Column(Integer, nullable=False)
    comment = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    __table_args__ = (
        CheckConstraint(
            "overall_satisfaction_rating BETWEEN 1 AND 5",
            name="ck_final_feedback_rating_range",
        ),
    )
