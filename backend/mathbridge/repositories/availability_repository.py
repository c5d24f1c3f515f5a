# backend/mathbridge/repositories/availability_repository.py
"""
Availability Repository for the MathBridge scheduling core.

Queries over recurring tutor availability windows. Weekday filtering is a
bitwise test on ``weekday_mask`` done in SQL so that only candidate rows are
loaded; containment and capacity decisions stay in the service.
"""

from datetime import date, time
import logging
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Query, Session

from ..models.availability import AvailabilityStatus, TutorAvailability
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class AvailabilityRepository(BaseRepository[TutorAvailability]):
    def __init__(self, db: Session):
        super().__init__(db, TutorAvailability)
        self.logger = logging.getLogger(__name__)

    def _effective_on(self, query: Query, target: date) -> Query:
        return query.filter(
            TutorAvailability.effective_from <= target,
            or_(
                TutorAvailability.effective_until.is_(None),
                TutorAvailability.effective_until >= target,
            ),
        )

    def _sharing_weekdays(self, query: Query, mask: int) -> Query:
        return query.filter(TutorAvailability.weekday_mask.op("&")(mask) != 0)

    def get_active_windows_for_date(
        self, tutor_id: str, target: date, weekday_bit: int, *, for_update: bool = False
    ) -> List[TutorAvailability]:
        """
        Active windows of a tutor that apply on ``target``.

        Args:
            tutor_id: Tutor whose windows to load
            target: Date that must fall inside the effective range
            weekday_bit: ``1 << weekday`` of ``target`` (bit 0 = Sunday)
            for_update: Lock the rows until the surrounding transaction ends
        """
        query = self.db.query(TutorAvailability).filter(
            TutorAvailability.tutor_id == tutor_id,
            TutorAvailability.status == AvailabilityStatus.ACTIVE.value,
        )
        query = self._sharing_weekdays(self._effective_on(query, target), weekday_bit)
        query = query.order_by(TutorAvailability.available_from, TutorAvailability.id)
        if for_update:
            query = query.with_for_update().populate_existing()
        return self._execute_query(query, "getting active windows for date")

    def get_by_tutor(self, tutor_id: str, active_only: bool = True) -> List[TutorAvailability]:
        query = self.db.query(TutorAvailability).filter(TutorAvailability.tutor_id == tutor_id)
        if active_only:
            query = query.filter(TutorAvailability.status == AvailabilityStatus.ACTIVE.value)
        query = query.order_by(TutorAvailability.effective_from, TutorAvailability.available_from)
        return self._execute_query(query, "getting tutor availabilities")

    def get_overlap_candidates(
        self,
        tutor_id: str,
        weekday_mask: int,
        exclude_id: Optional[str] = None,
    ) -> List[TutorAvailability]:
        """
        Active windows of a tutor sharing at least one weekday with ``weekday_mask``.

        Time and effective-range overlap are evaluated by the caller.
        """
        query = self.db.query(TutorAvailability).filter(
            TutorAvailability.tutor_id == tutor_id,
            TutorAvailability.status == AvailabilityStatus.ACTIVE.value,
        )
        query = self._sharing_weekdays(query, weekday_mask)
        if exclude_id:
            query = query.filter(TutorAvailability.id != exclude_id)
        return self._execute_query(query, "getting overlapping availabilities")

    def search_windows(
        self,
        weekday_bit: int,
        start_time: time,
        end_time: time,
        *,
        online: Optional[bool] = None,
        offline: Optional[bool] = None,
        effective_date: Optional[date] = None,
    ) -> List[TutorAvailability]:
        """Active windows containing [start_time, end_time) on a weekday with capacity left."""
        query = self.db.query(TutorAvailability).filter(
            TutorAvailability.status == AvailabilityStatus.ACTIVE.value,
            TutorAvailability.available_from <= start_time,
            TutorAvailability.available_until >= end_time,
            TutorAvailability.current_bookings < TutorAvailability.max_concurrent_bookings,
        )
        query = self._sharing_weekdays(query, weekday_bit)
        if online:
            query = query.filter(TutorAvailability.can_teach_online.is_(True))
        if offline:
            query = query.filter(TutorAvailability.can_teach_offline.is_(True))
        if effective_date is not None:
            query = self._effective_on(query, effective_date)
        return self._execute_query(query, "searching availability windows")
