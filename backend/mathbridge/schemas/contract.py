# backend/mathbridge/schemas/contract.py
"""Contract creation input and read model."""

import datetime
from typing import Optional

from pydantic import Field

from ._strict_base import OrmResponseModel, StrictRequestModel


class ContractCreate(StrictRequestModel):
    parent_id: str
    child_id: str
    second_child_id: Optional[str] = None
    package_id: Optional[str] = None
    main_tutor_id: str
    substitute_tutor1_id: Optional[str] = None
    substitute_tutor2_id: Optional[str] = None
    start_date: datetime.date
    end_date: datetime.date
    start_time: datetime.time
    end_time: datetime.time
    weekday_mask: int
    is_online: bool = True
    offline_address: Optional[str] = None
    offline_latitude: Optional[float] = None
    offline_longitude: Optional[float] = None
    video_call_platform: Optional[str] = None
    max_distance_km: Optional[float] = None
    reschedule_count: int = Field(default=2, ge=0)


class ContractResponse(OrmResponseModel):
    id: str
    parent_id: str
    child_id: str
    second_child_id: Optional[str] = None
    package_id: Optional[str] = None
    main_tutor_id: str
    substitute_tutor1_id: Optional[str] = None
    substitute_tutor2_id: Optional[str] = None
    start_date: datetime.date
    end_date: datetime.date
    start_time: datetime.time
    end_time: datetime.time
    weekday_mask: int
    weekday_display: str = ""
    is_online: bool
    offline_address: Optional[str] = None
    max_distance_km: Optional[float] = None
    reschedule_count: int
    status: str
    session_count: int = 0
