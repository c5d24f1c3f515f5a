# backend/mathbridge/repositories/booking_repository.py
"""
Booking Repository for the MathBridge scheduling core.

Session instance reads and row locks. Status changes are plain attribute
assignments done by the services inside their transaction.
"""

import logging
from typing import List, Optional, Set

from sqlalchemy.orm import Session

from ..models.booking import Booking, BookingStatus
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class BookingRepository(BaseRepository[Booking]):
    def __init__(self, db: Session):
        super().__init__(db, Booking)
        self.logger = logging.getLogger(__name__)

    def get_by_contract(self, contract_id: str, status: Optional[str] = None) -> List[Booking]:
        """Sessions of a contract in date order, optionally filtered by status."""
        query = self.db.query(Booking).filter(Booking.contract_id == contract_id)
        if status:
            query = query.filter(Booking.status == status)
        query = query.order_by(Booking.session_date, Booking.start_time)
        return self._execute_query(query, "getting sessions for contract")

    def get_held_availability_ids(self, contract_id: str) -> Set[str]:
        """Availability windows referenced by the scheduled sessions of a contract."""
        query = self.db.query(Booking.availability_id).filter(
            Booking.contract_id == contract_id,
            Booking.status == BookingStatus.SCHEDULED.value,
            Booking.availability_id.isnot(None),
        )
        return {row[0] for row in self._execute_query(query.distinct(), "getting held windows")}

    def count_scheduled_holding(self, contract_id: str, availability_id: str) -> int:
        """Scheduled sessions of a contract still holding ``availability_id``."""
        return self.count(
            contract_id=contract_id,
            availability_id=availability_id,
            status=BookingStatus.SCHEDULED.value,
        )
