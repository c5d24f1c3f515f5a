# backend/mathbridge/services/conflict_checker.py
"""
Conflict Checker Service for the MathBridge scheduling core.

Answers "is this tutor already booked in this window?" and hosts the single
overlap predicate used everywhere a time range is compared against another:
matching, session generation, the reschedule workflow and availability
window validation.

Intervals are half-open, so a session ending at 17:30 does not collide with
one starting at 17:30. Only ``scheduled`` sessions block a tutor.
"""

from datetime import date, datetime, time
import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from ..core.exceptions import ValidationException
from ..repositories import RepositoryFactory
from ..repositories.conflict_checker_repository import ConflictCheckerRepository
from .base import BaseService

logger = logging.getLogger(__name__)


class ConflictChecker(BaseService):
    """
    Service for checking session conflicts and time validation.

    Read-only: it never writes and takes no locks. Callers that need the
    answer to hold until commit lock the rows they are about to change.
    """

    def __init__(self, db: Session, repository: Optional[ConflictCheckerRepository] = None):
        """
        Initialize conflict checker service.

        Args:
            db: Database session
            repository: Optional ConflictCheckerRepository instance
        """
        super().__init__(db)
        self.logger = logging.getLogger(__name__)
        self.repository = repository or RepositoryFactory.create_conflict_checker_repository(db)

    @staticmethod
    def intervals_overlap(a_start: time, a_end: time, b_start: time, b_end: time) -> bool:
        """Half-open overlap test: [a_start, a_end) intersects [b_start, b_end)."""
        return a_start < b_end and b_start < a_end

    @BaseService.measure_operation("check_session_conflicts")
    def check_session_conflicts(
        self,
        tutor_id: str,
        check_date: date,
        start_time: time,
        end_time: time,
        exclude_session_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """
        Check if a time range conflicts with existing scheduled sessions.

        Args:
            tutor_id: The tutor to check
            check_date: The date to check
            start_time: Start time of the range to check
            end_time: End time of the range to check
            exclude_session_id: Optional session ID to exclude from check

        Returns:
            List of conflicts with session details
        """
        self.validate_time_range(start_time, end_time)
        sessions = self.repository.get_sessions_for_conflict_check(
            tutor_id, check_date, exclude_session_id
        )

        conflicts = [
            {
                "session_id": session.id,
                "contract_id": session.contract_id,
                "start_time": session.start_time.isoformat(),
                "end_time": session.end_time.isoformat(),
                "status": session.status,
            }
            for session in sessions
            if self.intervals_overlap(start_time, end_time, session.start_time, session.end_time)
        ]

        if conflicts:
            self.logger.warning(
                f"Found {len(conflicts)} session conflicts for {tutor_id} "
                f"on {check_date} between {start_time}-{end_time}"
            )

        return conflicts

    def has_conflict(
        self,
        tutor_id: str,
        check_date: date,
        start_time: time,
        end_time: time,
        exclude_session_id: Optional[str] = None,
    ) -> bool:
        """
        True when a scheduled session of ``tutor_id`` overlaps the window.

        Raises:
            ValidationException: If start_time >= end_time
        """
        conflicts = self.check_session_conflicts(
            tutor_id, check_date, start_time, end_time, exclude_session_id
        )
        return len(conflicts) > 0

    @BaseService.measure_operation("find_conflicting_dates")
    def find_conflicting_dates(
        self, tutor_id: str, dates: Iterable[date], start_time: time, end_time: time
    ) -> List[date]:
        """
        Dates on which the same daily window collides with a scheduled session.

        One query for the whole date set; used when a recurring schedule is
        generated.
        """
        self.validate_time_range(start_time, end_time)
        sessions_by_date = self.repository.get_sessions_for_dates(tutor_id, dates)
        return [
            session_date
            for session_date, sessions in sorted(sessions_by_date.items())
            if any(
                self.intervals_overlap(start_time, end_time, s.start_time, s.end_time)
                for s in sessions
            )
        ]

    @BaseService.measure_operation("get_booked_times_date")
    def get_booked_times_for_date(self, tutor_id: str, target_date: date) -> List[Dict[str, Any]]:
        """
        Get the scheduled time ranges of a tutor on a specific date.

        Args:
            tutor_id: The tutor ID
            target_date: The date to check

        Returns:
            List of booked time ranges ordered by start time
        """
        sessions = self.repository.get_sessions_for_conflict_check(tutor_id, target_date)
        return [
            {
                "session_id": session.id,
                "contract_id": session.contract_id,
                "start_time": session.start_time.isoformat(),
                "end_time": session.end_time.isoformat(),
                "status": session.status,
            }
            for session in sessions
        ]

    def validate_time_range(self, start_time: time, end_time: time) -> int:
        """
        Validate a time range and return its duration in minutes.

        Raises:
            ValidationException: If the range is empty or inverted
        """
        if end_time <= start_time:
            raise ValidationException(
                f"End time {end_time:%H:%M} must be after start time {start_time:%H:%M}",
                code="INVALID_TIME_RANGE",
                details={"start_time": start_time.isoformat(), "end_time": end_time.isoformat()},
            )

        # Reference date only; times carry no timezone here
        start = datetime.combine(date.min, start_time)
        end = datetime.combine(date.min, end_time)
        return int((end - start).total_seconds() // 60)
