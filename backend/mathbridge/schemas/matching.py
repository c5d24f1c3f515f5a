# backend/mathbridge/schemas/matching.py
"""Substitute search criteria and ranked candidates."""

import datetime
from typing import List, Optional

from pydantic import Field

from ..core.enums import RoleName, TeachingMode
from ..utils.geo import Coordinates
from ._strict_base import StrictModel, StrictRequestModel


class MatchCriteria(StrictRequestModel):
    """
    What a candidate tutor must satisfy.

    ``max_distance_km`` is owned by the contract or request; when an offline
    search leaves it unset the configured default radius applies.
    ``preferred_tutor_ids`` restricts the pool (e.g. a contract's
    substitutes) and ``exclude_session_id`` is the session being moved,
    ignored by the conflict check.
    """

    required_date: datetime.date
    start_time: datetime.time
    end_time: datetime.time
    mode: TeachingMode = TeachingMode.ONLINE
    offline_location: Optional[Coordinates] = None
    max_distance_km: Optional[float] = None
    exclude_tutor_ids: List[str] = Field(default_factory=list)
    role: str = RoleName.TUTOR.value
    grade: Optional[str] = None
    preferred_tutor_ids: Optional[List[str]] = None
    exclude_session_id: Optional[str] = None


class SubstituteCandidate(StrictModel):
    tutor_id: str
    full_name: str
    rating: Optional[float] = None
    is_available: bool = True
    distance_km: Optional[float] = None
    availability_id: Optional[str] = None
    is_contract_substitute: bool = False
