# backend/mathbridge/schemas/availability.py
"""
Recurring availability window schemas.

Types only: ordering of times and dates, mask range, capacity limits and the
overlap rule are business rules enforced by AvailabilityService, which
raises domain exceptions for them.
"""

import datetime
from typing import List, Optional

from pydantic import Field

from ._strict_base import OrmResponseModel, StrictModel, StrictRequestModel

DateType = datetime.date
TimeType = datetime.time


class AvailabilityWindowCreate(StrictRequestModel):
    """Schema for creating a recurring availability window."""

    tutor_id: str
    weekday_mask: int
    available_from: TimeType
    available_until: TimeType
    effective_from: DateType
    effective_until: Optional[DateType] = None
    can_teach_online: bool = True
    can_teach_offline: bool = False
    max_travel_distance_km: Optional[float] = None
    max_concurrent_bookings: int = 1


class AvailabilityWindowUpdate(StrictRequestModel):
    """Partial update; only fields that are set are applied."""

    weekday_mask: Optional[int] = None
    available_from: Optional[TimeType] = None
    available_until: Optional[TimeType] = None
    effective_from: Optional[DateType] = None
    effective_until: Optional[DateType] = None
    can_teach_online: Optional[bool] = None
    can_teach_offline: Optional[bool] = None
    max_travel_distance_km: Optional[float] = None
    max_concurrent_bookings: Optional[int] = None


class AvailabilityWindowResponse(OrmResponseModel):
    id: str
    tutor_id: str
    weekday_mask: int
    available_from: TimeType
    available_until: TimeType
    effective_from: DateType
    effective_until: Optional[DateType] = None
    can_teach_online: bool
    can_teach_offline: bool
    max_travel_distance_km: Optional[float] = None
    max_concurrent_bookings: int
    current_bookings: int
    status: str


class AvailableTutorSummary(StrictModel):
    """A tutor with at least one window matching a search, and its free capacity."""

    tutor_id: str
    full_name: str
    total_remaining_slots: int
    windows: List[AvailabilityWindowResponse] = Field(default_factory=list)


class AvailableTutorPage(StrictModel):
    items: List[AvailableTutorSummary]
    total: int
    page: int
    page_size: int
