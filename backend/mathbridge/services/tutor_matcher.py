# backend/mathbridge/services/tutor_matcher.py
"""
Tutor Matcher for the MathBridge scheduling core.

Finds tutors who could take a given slot: active tutors, minus exclusions,
with an availability window that hosts the slot, no conflicting session,
and (offline) close enough to the session location. Candidates are ranked
by rating, then distance, then id so results are deterministic.

``evaluate_tutor`` is the single-tutor form of the same predicate. Reschedule
approval uses it to re-validate the chosen tutor at commit time, so preview
and approval can never disagree about eligibility.
"""

import logging
from typing import Collection, List, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import TeachingMode
from ..core.exceptions import ValidationException
from ..models.user import User
from ..repositories.factory import RepositoryFactory
from ..schemas.matching import MatchCriteria, SubstituteCandidate
from ..utils import geo
from .availability_service import AvailabilityService
from .base import BaseService
from .conflict_checker import ConflictChecker

logger = logging.getLogger(__name__)


def _rank_key(candidate: SubstituteCandidate):
    # Highest rating first with unrated tutors last, nearest first, then id
    return (
        candidate.rating is None,
        -(candidate.rating or 0.0),
        candidate.distance_km if candidate.distance_km is not None else 0.0,
        candidate.tutor_id,
    )


class TutorMatcher(BaseService):
    """Read-only candidate search over tutors, windows and sessions."""

    def __init__(
        self,
        db: Session,
        availability_service: Optional[AvailabilityService] = None,
        conflict_checker: Optional[ConflictChecker] = None,
    ):
        super().__init__(db)
        self.logger = logging.getLogger(__name__)
        self.user_repository = RepositoryFactory.create_user_repository(db)
        self.availability_service = availability_service or AvailabilityService(db)
        self.conflict_checker = conflict_checker or ConflictChecker(db)

    def _effective_max_distance(self, criteria: MatchCriteria) -> float:
        if criteria.max_distance_km is not None:
            return criteria.max_distance_km
        return settings.default_max_distance_km

    def _validate_criteria(self, criteria: MatchCriteria) -> None:
        self.conflict_checker.validate_time_range(criteria.start_time, criteria.end_time)
        if criteria.max_distance_km is not None and criteria.max_distance_km < 0:
            raise ValidationException(
                "max_distance_km must not be negative", code="INVALID_DISTANCE"
            )
        if criteria.mode == TeachingMode.OFFLINE and criteria.offline_location is None:
            raise ValidationException(
                "Offline matching requires the session location", code="MISSING_LOCATION"
            )

    @BaseService.measure_operation("find_candidates")
    def find_candidates(
        self, criteria: MatchCriteria, *, held_availability_ids: Collection[str] = ()
    ) -> List[SubstituteCandidate]:
        """
        Ranked tutors able to take the slot described by ``criteria``.

        Windows in ``held_availability_ids`` are already held by the contract
        being served and count as having capacity.

        Returns:
            Candidates ordered by rating desc (unrated last), distance asc,
            tutor id asc. Empty when nobody qualifies.

        Raises:
            ValidationException: Inverted time range, negative distance, or an
                offline search without a location
        """
        self._validate_criteria(criteria)

        pool = self.user_repository.get_active_tutors(
            role=criteria.role,
            exclude_ids=criteria.exclude_tutor_ids,
            include_ids=criteria.preferred_tutor_ids,
            grade=criteria.grade,
        )
        if not pool:
            return []

        ratings = self.user_repository.get_average_ratings(t.id for t in pool)
        candidates = []
        for tutor in pool:
            candidate = self._evaluate(
                tutor, criteria, ratings.get(tutor.id), held_availability_ids=held_availability_ids
            )
            if candidate is not None:
                candidates.append(candidate)

        candidates.sort(key=_rank_key)
        self.logger.info(
            f"Found {len(candidates)} of {len(pool)} tutors for "
            f"{criteria.required_date} {criteria.start_time:%H:%M}-{criteria.end_time:%H:%M} "
            f"({TeachingMode(criteria.mode).value})"
        )
        return candidates

    def evaluate_tutor(
        self,
        tutor_id: str,
        criteria: MatchCriteria,
        *,
        held_availability_ids: Collection[str] = (),
        for_update: bool = False,
    ) -> Optional[SubstituteCandidate]:
        """
        The candidate entry for one tutor, or None when the tutor does not qualify.

        Args:
            tutor_id: Tutor to evaluate
            criteria: Slot and constraints
            held_availability_ids: Windows the contract of the moved session holds
            for_update: Lock the matching windows (commit-time re-validation)
        """
        self._validate_criteria(criteria)
        if tutor_id in criteria.exclude_tutor_ids:
            return None
        tutor = self.user_repository.get_active_by_role(tutor_id, criteria.role)
        if tutor is None:
            return None
        if criteria.grade and criteria.grade not in (tutor.teaching_grades or []):
            return None
        rating = self.user_repository.get_average_ratings([tutor.id]).get(tutor.id)
        return self._evaluate(
            tutor,
            criteria,
            rating,
            held_availability_ids=held_availability_ids,
            for_update=for_update,
        )

    def _evaluate(
        self,
        tutor: User,
        criteria: MatchCriteria,
        rating: Optional[float],
        *,
        held_availability_ids: Collection[str] = (),
        for_update: bool = False,
    ) -> Optional[SubstituteCandidate]:
        windows = self.availability_service.find_matching_windows(
            tutor.id,
            criteria.required_date,
            criteria.start_time,
            criteria.end_time,
            criteria.mode,
            held_availability_ids=held_availability_ids,
            for_update=for_update,
        )
        if not windows:
            return None

        if self.conflict_checker.has_conflict(
            tutor.id,
            criteria.required_date,
            criteria.start_time,
            criteria.end_time,
            exclude_session_id=criteria.exclude_session_id,
        ):
            return None

        distance: Optional[float] = None
        if criteria.mode == TeachingMode.OFFLINE:
            tutor_location = geo.coordinates_or_none(tutor.latitude, tutor.longitude)
            if tutor_location is None:
                return None
            distance = geo.distance_between(criteria.offline_location, tutor_location)
            if distance > self._effective_max_distance(criteria):
                return None
            # The tutor's own travel limit on the window applies as well
            windows = [
                w
                for w in windows
                if w.max_travel_distance_km is None or distance <= w.max_travel_distance_km
            ]
            if not windows:
                return None

        # Prefer a window the contract already holds so no new capacity is taken
        window_id = next((w.id for w in windows if w.id in held_availability_ids), windows[0].id)
        return SubstituteCandidate(
            tutor_id=tutor.id,
            full_name=tutor.full_name,
            rating=rating,
            is_available=True,
            distance_km=round(distance, 2) if distance is not None else None,
            availability_id=window_id,
        )