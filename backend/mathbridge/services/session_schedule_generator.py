# backend/mathbridge/services/session_schedule_generator.py
"""
Session Schedule Generator for the MathBridge scheduling core.

Expands a contract's recurring schedule into concrete session instances.
Every generated date must pass the same checks a single booking would: the
main tutor has no conflicting session, a window of theirs hosts the slot,
and an offline contract lies within reach of the tutor. The first failing
date aborts the whole generation, so a contract is never created with a
partial schedule.

The generator does not persist anything; ContractService inserts the
returned sessions in the same transaction as the contract.
"""

from datetime import date, timedelta
import logging
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import TeachingMode
from ..core.exceptions import NotFoundException, SchedulingConflictException, ValidationException
from ..models.availability import TutorAvailability
from ..models.booking import Booking, BookingStatus
from ..models.contract import Contract
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from ..utils import geo, weekday_mask
from .availability_service import AvailabilityService
from .base import BaseService
from .conflict_checker import ConflictChecker

logger = logging.getLogger(__name__)


class SessionScheduleGenerator(BaseService):
    def __init__(
        self,
        db: Session,
        availability_service: Optional[AvailabilityService] = None,
        conflict_checker: Optional[ConflictChecker] = None,
    ):
        super().__init__(db)
        self.logger = logging.getLogger(__name__)
        self.availability_service = availability_service or AvailabilityService(db)
        self.conflict_checker = conflict_checker or ConflictChecker(db)
        self.contract_repository = RepositoryFactory.create_contract_repository(db)
        self.user_repository = RepositoryFactory.create_user_repository(db)

    @staticmethod
    def candidate_dates(
        start_date: date, end_date: date, mask: int, limit: Optional[int] = None
    ) -> List[date]:
        """Dates in [start_date, end_date] whose weekday is in ``mask``, at most ``limit``."""
        weekday_mask.validate(mask)
        dates: List[date] = []
        current = start_date
        while current <= end_date and (limit is None or len(dates) < limit):
            if weekday_mask.contains_date(mask, current):
                dates.append(current)
            current += timedelta(days=1)
        return dates

    def _conflict(
        self, contract: Contract, session_date: date, reason: str
    ) -> SchedulingConflictException:
        prometheus_metrics.record_scheduling_conflict("generate_sessions")
        self.logger.warning(
            f"Cannot generate session for contract {contract.id} on {session_date}: {reason}"
        )
        return SchedulingConflictException(
            f"Tutor {contract.main_tutor_id} cannot teach on {session_date.isoformat()} "
            f"{contract.start_time:%H:%M}-{contract.end_time:%H:%M}: {reason}",
            details={"date": session_date.isoformat(), "tutor_id": contract.main_tutor_id},
        )

    def _check_offline_reach(self, contract: Contract) -> Optional[float]:
        if contract.is_online:
            return None
        tutor = self.user_repository.get_by_id(contract.main_tutor_id)
        tutor_location = geo.coordinates_or_none(
            tutor.latitude if tutor else None, tutor.longitude if tutor else None
        )
        session_location = geo.coordinates_or_none(
            contract.offline_latitude, contract.offline_longitude
        )
        if session_location is None:
            raise ValidationException(
                "Offline contracts require a session location", code="MISSING_LOCATION"
            )
        if tutor_location is None:
            raise self._conflict(contract, contract.start_date, "tutor has no registered location")

        max_km = (
            contract.max_distance_km
            if contract.max_distance_km is not None
            else settings.default_max_distance_km
        )
        distance = geo.distance_between(session_location, tutor_location)
        if not geo.within_radius(session_location, tutor_location, max_km):
            raise self._conflict(
                contract,
                contract.start_date,
                f"session location is {distance:.1f} km away (limit {max_km:.1f} km)",
            )
        return distance

    @BaseService.measure_operation("generate_sessions")
    def generate_sessions(self, contract: Contract, *, for_update: bool = False) -> List[Booking]:
        """
        Build the unsaved session instances of ``contract``.

        Args:
            contract: Contract with id, tutor, schedule and location set
            for_update: Lock the availability windows used (commit-time run)

        Returns:
            One scheduled session per generated date, in date order

        Raises:
            ValidationException: Bad mask or time range, or fewer matching
                dates than the attached package's session count
            NotFoundException: Attached package does not exist
            SchedulingConflictException: First date the main tutor cannot take
        """
        self.conflict_checker.validate_time_range(contract.start_time, contract.end_time)

        session_count: Optional[int] = None
        if contract.package_id:
            package = self.contract_repository.get_package(contract.package_id)
            if package is None:
                raise NotFoundException(f"Package {contract.package_id} not found")
            session_count = package.session_count

        dates = self.candidate_dates(
            contract.start_date, contract.end_date, contract.weekday_mask, session_count
        )
        if session_count is not None and len(dates) < session_count:
            raise ValidationException(
                f"Only {len(dates)} dates between {contract.start_date} and {contract.end_date} "
                f"match the schedule; the package needs {session_count} sessions",
                code="NOT_ENOUGH_DATES",
                details={"available_dates": len(dates), "required_sessions": session_count},
            )
        if not dates:
            raise ValidationException(
                "The contract schedule produces no sessions", code="NOT_ENOUGH_DATES"
            )

        distance = self._check_offline_reach(contract)
        mode = TeachingMode.ONLINE if contract.is_online else TeachingMode.OFFLINE

        conflicting = set(
            self.conflict_checker.find_conflicting_dates(
                contract.main_tutor_id, dates, contract.start_time, contract.end_time
            )
        )

        # Prefer a window already chosen for an earlier date; the contract holds
        # each distinct window once
        chosen: Dict[str, TutorAvailability] = {}
        sessions: List[Booking] = []
        for session_date in dates:
            if session_date in conflicting:
                raise self._conflict(contract, session_date, "tutor already has a session")
            windows = self.availability_service.find_matching_windows(
                contract.main_tutor_id,
                session_date,
                contract.start_time,
                contract.end_time,
                mode,
                for_update=for_update,
            )
            if distance is not None:
                windows = [
                    w
                    for w in windows
                    if w.max_travel_distance_km is None or distance <= w.max_travel_distance_km
                ]
            if not windows:
                raise self._conflict(contract, session_date, "no availability window covers it")

            window = next((w for w in windows if w.id in chosen), windows[0])
            chosen.setdefault(window.id, window)
            sessions.append(
                Booking(
                    contract_id=contract.id,
                    tutor_id=contract.main_tutor_id,
                    availability_id=window.id,
                    session_date=session_date,
                    start_time=contract.start_time,
                    end_time=contract.end_time,
                    is_online=contract.is_online,
                    video_call_platform=contract.video_call_platform,
                    offline_address=contract.offline_address,
                    offline_latitude=contract.offline_latitude,
                    offline_longitude=contract.offline_longitude,
                    status=BookingStatus.SCHEDULED.value,
                )
            )

        self.logger.info(
            f"Generated {len(sessions)} sessions for contract {contract.id} "
            f"({weekday_mask.display(contract.weekday_mask)} "
            f"{contract.start_time:%H:%M}-{contract.end_time:%H:%M})"
        )
        return sessions
