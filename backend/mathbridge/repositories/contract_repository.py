# backend/mathbridge/repositories/contract_repository.py
"""Contract and payment package data access."""

import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from ..models.contract import Contract
from ..models.package import PaymentPackage
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class ContractRepository(BaseRepository[Contract]):
    def __init__(self, db: Session):
        super().__init__(db, Contract)
        self.logger = logging.getLogger(__name__)

    def get_by_parent(self, parent_id: str, status: Optional[str] = None) -> List[Contract]:
        query = self.db.query(Contract).filter(Contract.parent_id == parent_id)
        if status:
            query = query.filter(Contract.status == status)
        query = query.order_by(Contract.start_date.desc(), Contract.id)
        return self._execute_query(query, "getting contracts for parent")

    def get_package(self, package_id: Optional[str]) -> Optional[PaymentPackage]:
        """The payment package of a contract, or None for contracts without one."""
        if not package_id:
            return None
        return self.db.get(PaymentPackage, package_id)
