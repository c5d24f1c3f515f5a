# backend/mathbridge/repositories/conflict_checker_repository.py
"""
ConflictChecker Repository for the MathBridge scheduling core.

Works exclusively with session (booking) rows. Conflict checks use the
booking's own fields (tutor, date, start/end time) and never join through
contracts or availability windows.
"""

from datetime import date
import logging
from typing import Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..models.booking import Booking, BookingStatus
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class ConflictCheckerRepository(BaseRepository[Booking]):
    """Read-only queries backing the conflict checker."""

    def __init__(self, db: Session):
        super().__init__(db, Booking)
        self.logger = logging.getLogger(__name__)

    def get_sessions_for_conflict_check(
        self, tutor_id: str, check_date: date, exclude_session_id: Optional[str] = None
    ) -> List[Booking]:
        """
        Get scheduled sessions of a tutor on a date that could conflict with a window.

        Args:
            tutor_id: The tutor to check
            check_date: The date to check for conflicts
            exclude_session_id: Session being moved, ignored by the check

        Returns:
            Scheduled sessions for that tutor and date
        """
        try:
            query = self.db.query(Booking).filter(
                Booking.tutor_id == tutor_id,
                Booking.session_date == check_date,
                Booking.status == BookingStatus.SCHEDULED.value,
            )
            if exclude_session_id:
                query = query.filter(Booking.id != exclude_session_id)
            return query.order_by(Booking.start_time).all()
        except SQLAlchemyError as e:
            self.logger.error(f"Error getting sessions for conflict check: {str(e)}")
            raise RepositoryException(f"Failed to get sessions for conflict check: {str(e)}")

    def get_sessions_for_dates(
        self, tutor_id: str, dates: Iterable[date]
    ) -> Dict[date, List[Booking]]:
        """Scheduled sessions of a tutor grouped by date, for multi-date checks."""
        date_list = sorted(set(dates))
        if not date_list:
            return {}
        try:
            rows = (
                self.db.query(Booking)
                .filter(
                    Booking.tutor_id == tutor_id,
                    Booking.session_date.in_(date_list),
                    Booking.status == BookingStatus.SCHEDULED.value,
                )
                .order_by(Booking.session_date, Booking.start_time)
                .all()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error getting sessions for dates: {str(e)}")
            raise RepositoryException(f"Failed to get sessions for dates: {str(e)}")

        grouped: Dict[date, List[Booking]] = {d: [] for d in date_list}
        for row in rows:
            grouped.setdefault(row.session_date, []).append(row)
        return grouped
