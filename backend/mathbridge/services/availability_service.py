# backend/mathbridge/services/availability_service.py
"""
Availability Service for the MathBridge scheduling core.

This service owns recurring tutor availability windows: whether a tutor can
take a slot on a date, the per-window booking counters, and window
maintenance (create, update, status, delete, search).

Counter rules:
- ``current_bookings`` never exceeds ``max_concurrent_bookings``.
- A session holds the counter of the window recorded in its
  ``availability_id``; releasing the session releases that counter.
- Counter changes made on behalf of another service (contract creation,
  reschedule approval, cancellation) run inside that service's transaction
  through ``reserve_capacity`` / ``release_booking``.
"""

from __future__ import annotations

from datetime import date, time
import logging
from typing import TYPE_CHECKING, Any, Collection, Dict, List, Optional, Sequence

from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import RoleName, TeachingMode
from ..core.exceptions import (
    AvailabilityOverlapException,
    InvalidStateException,
    NotFoundException,
    SchedulingConflictException,
    ValidationException,
)
from ..models.availability import AvailabilityStatus, TutorAvailability
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from ..schemas.availability import (
    AvailabilityWindowCreate,
    AvailabilityWindowResponse,
    AvailabilityWindowUpdate,
    AvailableTutorPage,
    AvailableTutorSummary,
)
from ..utils import weekday_mask
from .base import BaseService
from .conflict_checker import ConflictChecker

if TYPE_CHECKING:
    from ..repositories.availability_repository import AvailabilityRepository
    from ..repositories.user_repository import UserRepository

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 50

_WINDOW_FIELDS = (
    "weekday_mask",
    "available_from",
    "available_until",
    "effective_from",
    "effective_until",
    "can_teach_online",
    "can_teach_offline",
    "max_travel_distance_km",
    "max_concurrent_bookings",
)


def _effective_ranges_overlap(
    a_from: date, a_until: Optional[date], b_from: date, b_until: Optional[date]
) -> bool:
    # Closed date ranges; an open end runs indefinitely
    return (a_until is None or b_from <= a_until) and (b_until is None or a_from <= b_until)


def _supports_mode(window: TutorAvailability, mode: TeachingMode) -> bool:
    if TeachingMode(mode) == TeachingMode.OFFLINE:
        return bool(window.can_teach_offline)
    return bool(window.can_teach_online)


def _range_label(values: Dict[str, Any]) -> str:
    return (
        f"{weekday_mask.display(values['weekday_mask'])} "
        f"{values['available_from']:%H:%M}-{values['available_until']:%H:%M}"
    )


class AvailabilityService(BaseService):
    """
    Service layer for recurring availability windows.

    Read methods take no locks unless asked to (``for_update``); mutating
    methods run in ``self.transaction()``.
    """

    def __init__(
        self,
        db: Session,
        repository: Optional["AvailabilityRepository"] = None,
        user_repository: Optional["UserRepository"] = None,
    ):
        """Initialize availability service with repositories."""
        super().__init__(db)
        self.logger = logging.getLogger(__name__)
        self.repository = repository or RepositoryFactory.create_availability_repository(db)
        self.user_repository = user_repository or RepositoryFactory.create_user_repository(db)

    # ------------------------------------------------------------------
    # Slot queries
    # ------------------------------------------------------------------

    @BaseService.measure_operation("find_matching_windows")
    def find_matching_windows(
        self,
        tutor_id: str,
        target_date: date,
        start_time: time,
        end_time: time,
        mode: TeachingMode,
        *,
        held_availability_ids: Collection[str] = (),
        for_update: bool = False,
    ) -> List[TutorAvailability]:
        """
        Windows of ``tutor_id`` able to host [start_time, end_time) on ``target_date``.

        A window matches when it is active, its mask contains the date's
        weekday, the date is inside its effective range, it fully contains
        the time range, it supports ``mode``, and it has capacity left. Windows
        in ``held_availability_ids`` are already held by the caller and count
        as having capacity.

        Args:
            tutor_id: Tutor to check
            target_date: Session date
            start_time: Session start
            end_time: Session end
            mode: Online or offline
            held_availability_ids: Windows the caller already holds a booking on
            for_update: Lock candidate windows until the transaction ends

        Returns:
            Matching windows ordered by start time

        Raises:
            ValidationException: If start_time >= end_time
        """
        if end_time <= start_time:
            raise ValidationException(
                f"End time {end_time:%H:%M} must be after start time {start_time:%H:%M}",
                code="INVALID_TIME_RANGE",
            )

        day = weekday_mask.weekday_of(target_date)
        windows = self.repository.get_active_windows_for_date(
            tutor_id, target_date, day.bit, for_update=for_update
        )
        return [
            window
            for window in windows
            if window.available_from <= start_time
            and window.available_until >= end_time
            and _supports_mode(window, mode)
            and (window.remaining_capacity > 0 or window.id in held_availability_ids)
        ]

    def is_available(
        self,
        tutor_id: str,
        target_date: date,
        start_time: time,
        end_time: time,
        mode: TeachingMode,
    ) -> bool:
        """True when at least one window of the tutor can host the slot."""
        return bool(self.find_matching_windows(tutor_id, target_date, start_time, end_time, mode))

    # ------------------------------------------------------------------
    # Booking counters
    # ------------------------------------------------------------------

    def reserve_capacity(self, availability_id: str) -> TutorAvailability:
        """
        Take one booking slot on a window inside the caller's transaction.

        Raises:
            NotFoundException: If the window does not exist
            SchedulingConflictException: If the window is at capacity
        """
        window = self.repository.get_for_update(availability_id)
        if window is None:
            raise NotFoundException(f"Availability {availability_id} not found")
        if window.current_bookings >= window.max_concurrent_bookings:
            prometheus_metrics.record_scheduling_conflict("reserve_capacity")
            self.logger.warning(
                f"Availability {availability_id} is at capacity "
                f"({window.current_bookings}/{window.max_concurrent_bookings})"
            )
            raise SchedulingConflictException(
                f"Availability {window.time_range_label()} has no remaining capacity",
                details={
                    "availability_id": availability_id,
                    "current_bookings": window.current_bookings,
                    "max_concurrent_bookings": window.max_concurrent_bookings,
                },
            )
        window.current_bookings += 1
        self.repository.flush()
        return window

    def release_booking(self, availability_id: Optional[str]) -> Optional[TutorAvailability]:
        """
        Give back one booking slot inside the caller's transaction.

        Lenient: a missing window or a counter already at zero is logged and
        left alone, so cancelling a session never fails on counter drift.
        """
        if not availability_id:
            return None
        window = self.repository.get_for_update(availability_id)
        if window is None:
            self.logger.warning(f"Cannot release booking: availability {availability_id} is gone")
            return None
        if window.current_bookings <= 0:
            self.logger.warning(
                f"Availability {availability_id} counter already at zero; release ignored"
            )
            return window
        window.current_bookings -= 1
        self.repository.flush()
        return window

    @BaseService.measure_operation("increment_booking")
    def increment_booking(self, availability_id: str) -> TutorAvailability:
        """
        Record one more booking on a window and commit.

        Raises:
            NotFoundException: If the window does not exist
            SchedulingConflictException: If the window is at capacity
        """
        with self.transaction():
            window = self.reserve_capacity(availability_id)
        return window

    @BaseService.measure_operation("decrement_booking")
    def decrement_booking(self, availability_id: str) -> TutorAvailability:
        """
        Record one fewer booking on a window and commit.

        Raises:
            NotFoundException: If the window does not exist
            InvalidStateException: If there is no outstanding booking to release
        """
        with self.transaction():
            window = self.repository.get_for_update(availability_id)
            if window is None:
                raise NotFoundException(f"Availability {availability_id} not found")
            if window.current_bookings <= 0:
                raise InvalidStateException(
                    f"Availability {availability_id} has no bookings to release",
                    current_state="current_bookings=0",
                )
            window.current_bookings -= 1
            self.repository.flush()
        return window

    # ------------------------------------------------------------------
    # Window maintenance
    # ------------------------------------------------------------------

    def _validate_window_values(
        self,
        values: Dict[str, Any],
        *,
        exclude_id: Optional[str] = None,
        pending: Sequence[Dict[str, Any]] = (),
        check_overlap: bool = True,
    ) -> None:
        """Business validation shared by create, bulk create and update."""
        weekday_mask.validate(values["weekday_mask"])

        if values["available_until"] <= values["available_from"]:
            raise ValidationException(
                "Availability end time must be after its start time",
                code="INVALID_TIME_RANGE",
            )
        effective_until = values.get("effective_until")
        if effective_until is not None and effective_until < values["effective_from"]:
            raise ValidationException(
                "effective_until must not be before effective_from",
                code="INVALID_DATE_RANGE",
            )
        if not values.get("can_teach_online") and not values.get("can_teach_offline"):
            raise ValidationException(
                "Availability must allow online or offline teaching",
                code="NO_TEACHING_MODE",
            )

        max_bookings = values.get("max_concurrent_bookings")
        limit = settings.max_concurrent_bookings_limit
        if max_bookings is None or not 1 <= max_bookings <= limit:
            raise ValidationException(
                f"max_concurrent_bookings must be between 1 and {limit}",
                code="INVALID_CAPACITY",
                details={"max_concurrent_bookings": max_bookings},
            )

        travel = values.get("max_travel_distance_km")
        if travel is not None and travel < 0:
            raise ValidationException(
                "max_travel_distance_km must not be negative", code="INVALID_DISTANCE"
            )
        if values.get("can_teach_offline") and not travel:
            raise ValidationException(
                "Offline teaching requires a positive max_travel_distance_km",
                code="INVALID_DISTANCE",
            )

        if check_overlap:
            self._check_no_overlap(values, exclude_id=exclude_id, pending=pending)

    def _check_no_overlap(
        self,
        values: Dict[str, Any],
        *,
        exclude_id: Optional[str] = None,
        pending: Sequence[Dict[str, Any]] = (),
    ) -> None:
        existing = self.repository.get_overlap_candidates(
            values["tutor_id"], values["weekday_mask"], exclude_id=exclude_id
        )
        others: List[Dict[str, Any]] = [
            {"id": w.id, **{field: getattr(w, field) for field in _WINDOW_FIELDS}}
            for w in existing
        ]
        others.extend(p for p in pending if p["tutor_id"] == values["tutor_id"])

        for other in others:
            if not weekday_mask.intersects(values["weekday_mask"], other["weekday_mask"]):
                continue
            if not ConflictChecker.intervals_overlap(
                values["available_from"],
                values["available_until"],
                other["available_from"],
                other["available_until"],
            ):
                continue
            if not _effective_ranges_overlap(
                values["effective_from"],
                values.get("effective_until"),
                other["effective_from"],
                other.get("effective_until"),
            ):
                continue
            prometheus_metrics.record_scheduling_conflict("availability_overlap")
            raise AvailabilityOverlapException(
                _range_label(values), _range_label(other), other.get("id")
            )

    def _require_tutor(self, tutor_id: str) -> None:
        tutor = self.user_repository.get_by_id(tutor_id)
        if tutor is None:
            raise NotFoundException(f"Tutor {tutor_id} not found")
        if tutor.role != RoleName.TUTOR.value:
            raise ValidationException(f"User {tutor_id} is not a tutor", code="NOT_A_TUTOR")

    @BaseService.measure_operation("create_availability")
    def create_availability(self, data: AvailabilityWindowCreate) -> TutorAvailability:
        """
        Create a recurring availability window for a tutor.

        Raises:
            ValidationException: Malformed window (mask, times, dates, modes, capacity)
            NotFoundException: Tutor does not exist
            AvailabilityOverlapException: Overlaps another active window of the tutor
        """
        values = data.model_dump()
        self._require_tutor(values["tutor_id"])
        self._validate_window_values(values)

        with self.transaction():
            window = self.repository.create(
                **values, current_bookings=0, status=AvailabilityStatus.ACTIVE.value
            )

        self.logger.info(
            f"Created availability {window.id} for tutor {window.tutor_id}: "
            f"{_range_label(values)}"
        )
        return window

    @BaseService.measure_operation("bulk_create_availabilities")
    def bulk_create_availabilities(
        self, items: Sequence[AvailabilityWindowCreate]
    ) -> List[TutorAvailability]:
        """
        Create several windows at once; either all are created or none.

        Windows in the batch are also checked against each other for overlap.
        """
        if not items:
            return []

        validated: List[Dict[str, Any]] = []
        checked_tutors: set[str] = set()
        for item in items:
            values = item.model_dump()
            if values["tutor_id"] not in checked_tutors:
                self._require_tutor(values["tutor_id"])
                checked_tutors.add(values["tutor_id"])
            self._validate_window_values(values, pending=validated)
            validated.append(values)

        windows = [
            TutorAvailability(**values, current_bookings=0, status=AvailabilityStatus.ACTIVE.value)
            for values in validated
        ]
        with self.transaction():
            self.repository.add_all(windows)

        self.logger.info(f"Bulk created {len(windows)} availability windows")
        return windows

    @BaseService.measure_operation("update_availability")
    def update_availability(
        self, availability_id: str, changes: AvailabilityWindowUpdate
    ) -> TutorAvailability:
        """
        Apply a partial update, re-running every window validation.

        Raises:
            NotFoundException: If the window does not exist
            InvalidStateException: If capacity would drop below current bookings
        """
        with self.transaction():
            window = self.repository.get_for_update(availability_id)
            if window is None:
                raise NotFoundException(f"Availability {availability_id} not found")

            updates = changes.model_dump(exclude_unset=True)
            merged = {field: getattr(window, field) for field in _WINDOW_FIELDS}
            merged.update(updates)
            merged["tutor_id"] = window.tutor_id

            if merged["max_concurrent_bookings"] is not None and (
                merged["max_concurrent_bookings"] < window.current_bookings
            ):
                raise InvalidStateException(
                    "Cannot lower max_concurrent_bookings below current bookings",
                    current_state=f"current_bookings={window.current_bookings}",
                )
            # Inactive windows are re-checked for overlap when reactivated
            self._validate_window_values(
                merged,
                exclude_id=window.id,
                check_overlap=window.status == AvailabilityStatus.ACTIVE.value,
            )

            for field, value in updates.items():
                setattr(window, field, value)
            self.repository.flush()

        self.logger.info(f"Updated availability {availability_id}: {sorted(updates)}")
        return window

    @BaseService.measure_operation("set_availability_status")
    def set_status(self, availability_id: str, status: AvailabilityStatus | str) -> TutorAvailability:
        """
        Activate or deactivate a window.

        Reactivation re-checks overlap against the tutor's active windows.
        """
        try:
            new_status = AvailabilityStatus(status)
        except ValueError as exc:
            raise ValidationException(
                f"Unknown availability status: {status}", code="INVALID_STATUS"
            ) from exc

        with self.transaction():
            window = self.repository.get_for_update(availability_id)
            if window is None:
                raise NotFoundException(f"Availability {availability_id} not found")
            if window.status == new_status.value:
                return window
            if new_status == AvailabilityStatus.ACTIVE:
                values = {field: getattr(window, field) for field in _WINDOW_FIELDS}
                values["tutor_id"] = window.tutor_id
                self._check_no_overlap(values, exclude_id=window.id)
            window.status = new_status.value
            self.repository.flush()

        self.logger.info(f"Availability {availability_id} is now {new_status.value}")
        return window

    @BaseService.measure_operation("delete_availability")
    def delete_availability(self, availability_id: str) -> None:
        """
        Delete a window that no booking holds.

        Raises:
            NotFoundException: If the window does not exist
            InvalidStateException: While current_bookings > 0
        """
        with self.transaction():
            window = self.repository.get_for_update(availability_id)
            if window is None:
                raise NotFoundException(f"Availability {availability_id} not found")
            if window.current_bookings > 0:
                raise InvalidStateException(
                    f"Availability {availability_id} still has "
                    f"{window.current_bookings} active bookings",
                    current_state=f"current_bookings={window.current_bookings}",
                )
            self.repository.delete(availability_id)

        self.logger.info(f"Deleted availability {availability_id}")

    def get_availability(self, availability_id: str) -> TutorAvailability:
        window = self.repository.get_by_id(availability_id)
        if window is None:
            raise NotFoundException(f"Availability {availability_id} not found")
        return window

    def get_tutor_availabilities(
        self, tutor_id: str, active_only: bool = True
    ) -> List[TutorAvailability]:
        return self.repository.get_by_tutor(tutor_id, active_only=active_only)

    @BaseService.measure_operation("search_available_tutors")
    def search_available_tutors(
        self,
        weekday: weekday_mask.Weekday | int,
        start_time: time,
        end_time: time,
        mode: Optional[TeachingMode] = None,
        effective_date: Optional[date] = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> AvailableTutorPage:
        """
        Tutors with a window covering the slot on ``weekday`` and capacity left.

        Results are ordered by total remaining slots (desc), then name.
        ``page`` below 1 is treated as 1; a ``page_size`` outside 1..50 falls
        back to 20.
        """
        if end_time <= start_time:
            raise ValidationException(
                "End time must be after start time", code="INVALID_TIME_RANGE"
            )
        day = weekday_mask.as_weekday(weekday)

        page = max(page, 1)
        if not 1 <= page_size <= MAX_PAGE_SIZE:
            page_size = DEFAULT_PAGE_SIZE

        windows = self.repository.search_windows(
            day.bit,
            start_time,
            end_time,
            online=mode == TeachingMode.ONLINE if mode else None,
            offline=mode == TeachingMode.OFFLINE if mode else None,
            effective_date=effective_date,
        )

        by_tutor: Dict[str, List[TutorAvailability]] = {}
        for window in windows:
            by_tutor.setdefault(window.tutor_id, []).append(window)

        tutors = {
            user.id: user
            for user in self.user_repository.get_by_ids(by_tutor)
            if user.is_tutor and user.is_active
        }

        summaries = [
            AvailableTutorSummary(
                tutor_id=tutor_id,
                full_name=tutors[tutor_id].full_name,
                total_remaining_slots=sum(w.remaining_capacity for w in tutor_windows),
                windows=[AvailabilityWindowResponse.model_validate(w) for w in tutor_windows],
            )
            for tutor_id, tutor_windows in by_tutor.items()
            if tutor_id in tutors
        ]
        summaries.sort(key=lambda s: (-s.total_remaining_slots, s.full_name, s.tutor_id))

        offset = (page - 1) * page_size
        return AvailableTutorPage(
            items=summaries[offset : offset + page_size],
            total=len(summaries),
            page=page,
            page_size=page_size,
        )
