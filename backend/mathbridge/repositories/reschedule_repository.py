# backend/mathbridge/repositories/reschedule_repository.py
"""
Reschedule Repository for the MathBridge scheduling core.

Pending-request lookups used to enforce "one open request" rules, plus
listing for staff and parents.
"""

import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from ..models.reschedule import RescheduleRequest, RescheduleRequestType, RescheduleStatus
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class RescheduleRepository(BaseRepository[RescheduleRequest]):
    def __init__(self, db: Session):
        super().__init__(db, RescheduleRequest)
        self.logger = logging.getLogger(__name__)

    def has_pending_in_contract(
        self, contract_id: str, request_type: Optional[str] = None
    ) -> bool:
        query = self.db.query(RescheduleRequest.id).filter(
            RescheduleRequest.contract_id == contract_id,
            RescheduleRequest.status == RescheduleStatus.PENDING.value,
        )
        if request_type:
            query = query.filter(RescheduleRequest.request_type == request_type)
        return query.first() is not None

    def has_pending_for_booking(
        self, booking_id: str, request_type: Optional[str] = None
    ) -> bool:
        query = self.db.query(RescheduleRequest.id).filter(
            RescheduleRequest.booking_id == booking_id,
            RescheduleRequest.status == RescheduleStatus.PENDING.value,
        )
        if request_type:
            query = query.filter(RescheduleRequest.request_type == request_type)
        return query.first() is not None

    def get_latest_approved_replacement(self, booking_id: str) -> Optional[RescheduleRequest]:
        """Most recent approved tutor-replacement request for a session."""
        return (
            self.db.query(RescheduleRequest)
            .filter(
                RescheduleRequest.booking_id == booking_id,
                RescheduleRequest.request_type == RescheduleRequestType.TUTOR_REPLACEMENT.value,
                RescheduleRequest.status == RescheduleStatus.APPROVED.value,
            )
            .order_by(RescheduleRequest.processed_date.desc(), RescheduleRequest.id.desc())
            .first()
        )

    def list_requests(
        self,
        parent_id: Optional[str] = None,
        status: Optional[str] = None,
        skip: int = 0,
        limit: int = 100,
    ) -> List[RescheduleRequest]:
        """Requests newest first, optionally scoped to a parent and/or a status."""
        query = self.db.query(RescheduleRequest)
        if parent_id:
            query = query.filter(RescheduleRequest.parent_id == parent_id)
        if status:
            query = query.filter(RescheduleRequest.status == status)
        query = query.order_by(RescheduleRequest.id.desc()).offset(skip).limit(limit)
        return self._execute_query(query, "listing reschedule requests")
