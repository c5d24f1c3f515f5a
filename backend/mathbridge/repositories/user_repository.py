# backend/mathbridge/repositories/user_repository.py
"""
User Repository for the MathBridge scheduling core.

Identity and role lookups used by matching and validation: active tutors,
their registered locations, and ratings aggregated from final feedback.
"""

import logging
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.enums import AccountStatus, RoleName
from ..core.exceptions import RepositoryException
from ..models.review import FinalFeedback
from ..models.user import User
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class UserRepository(BaseRepository[User]):
    """Repository for User data access."""

    def __init__(self, db: Session):
        super().__init__(db, User)
        self.logger = logging.getLogger(__name__)

    def get_active_by_role(self, user_id: str, role: str) -> Optional[User]:
        """The user when it exists, is active and holds ``role``; otherwise None."""
        user = self.get_by_id(user_id)
        if user is None or user.role != role or user.status != AccountStatus.ACTIVE.value:
            return None
        return user

    def get_by_ids(self, user_ids: Iterable[str]) -> List[User]:
        ids = sorted({i for i in user_ids if i})
        if not ids:
            return []
        return self._execute_query(
            self.db.query(User).filter(User.id.in_(ids)), "getting users by ids"
        )

    def get_active_tutors(
        self,
        *,
        role: str = RoleName.TUTOR.value,
        exclude_ids: Optional[Iterable[str]] = None,
        include_ids: Optional[Iterable[str]] = None,
        grade: Optional[str] = None,
    ) -> List[User]:
        """
        Active users with the given role, ordered by id.

        Args:
            role: Role to match (tutors by default)
            exclude_ids: Ids never returned
            include_ids: When given, restricts the pool to these ids
            grade: When given, the tutor's teaching_grades must contain it
        """
        query = self.db.query(User).filter(
            User.role == role,
            User.status == AccountStatus.ACTIVE.value,
        )
        excluded = [i for i in (exclude_ids or []) if i]
        if excluded:
            query = query.filter(User.id.notin_(excluded))
        if include_ids is not None:
            included = [i for i in include_ids if i]
            if not included:
                return []
            query = query.filter(User.id.in_(included))
        tutors = self._execute_query(query.order_by(User.id), "getting active tutors")

        if grade:
            # teaching_grades is a JSON list; portable filtering happens here
            tutors = [t for t in tutors if grade in (t.teaching_grades or [])]
        return tutors

    def get_average_ratings(self, tutor_ids: Iterable[str]) -> Dict[str, float]:
        """Average final-feedback rating per tutor; unrated tutors are absent."""
        ids = [t for t in tutor_ids if t]
        if not ids:
            return {}
        try:
            rows = (
                self.db.query(
                    FinalFeedback.tutor_id,
                    func.avg(FinalFeedback.overall_satisfaction_rating * 1.0).label("average"),
                )
                .filter(FinalFeedback.tutor_id.in_(ids))
                .group_by(FinalFeedback.tutor_id)
                .all()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error getting average ratings: {str(e)}")
            raise RepositoryException(f"Failed to get average ratings: {str(e)}")
        return {tutor_id: round(float(average), 2) for tutor_id, average in rows}
