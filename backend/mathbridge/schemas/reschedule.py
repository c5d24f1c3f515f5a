# backend/mathbridge/schemas/reschedule.py
"""Reschedule request input and read model."""

import datetime
from typing import Optional

from ._strict_base import OrmResponseModel, StrictRequestModel


class RescheduleRequestCreate(StrictRequestModel):
    """
    A parent's request to move a session (or to book a make-up session).

    ``requested_tutor_id`` is optional; staff may still pick another tutor at
    approval time.
    """

    session_id: str
    requested_date: datetime.date
    start_time: datetime.time
    end_time: datetime.time
    requested_tutor_id: Optional[str] = None
    reason: Optional[str] = None


class RescheduleResponse(OrmResponseModel):
    id: str
    booking_id: str
    contract_id: str
    parent_id: str
    request_type: str
    requested_date: datetime.date
    start_time: datetime.time
    end_time: datetime.time
    requested_tutor_id: Optional[str] = None
    reason: Optional[str] = None
    staff_note: Optional[str] = None
    status: str
    staff_id: Optional[str] = None
    processed_date: Optional[datetime.datetime] = None
    created_date: Optional[datetime.datetime] = None
