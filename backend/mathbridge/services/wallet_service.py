# backend/mathbridge/services/wallet_service.py
"""
Wallet refunds for cancelled sessions.

``RefundGateway`` is the seam the reschedule workflow pays through. The
default ``WalletService`` credits the parent's wallet and records a ledger
entry in the caller's session, so the refund commits or rolls back together
with the cancellation that caused it.
"""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
import logging
from typing import Optional, Protocol

from sqlalchemy.orm import Session

from ..models.contract import Contract
from ..models.wallet import WalletTransaction, WalletTransactionStatus, WalletTransactionType
from ..repositories.base_repository import BaseRepository
from ..repositories.factory import RepositoryFactory
from ..schemas.payment import RefundResult
from .base import BaseService

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


class RefundGateway(Protocol):
    def refund(self, contract_id: str, session_id: str, amount: Decimal) -> RefundResult:
        ...


class WalletService(BaseService):
    """Credit parent wallets; never commits, the caller owns the transaction."""

    def __init__(self, db: Session):
        super().__init__(db)
        self.contract_repository = RepositoryFactory.create_contract_repository(db)
        self.user_repository = RepositoryFactory.create_user_repository(db)
        self.transaction_repository: BaseRepository[WalletTransaction] = (
            RepositoryFactory.create_base_repository(db, WalletTransaction)
        )

    @staticmethod
    def quantize(amount: Decimal) -> Decimal:
        return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)

    @BaseService.measure_operation("wallet.refund")
    def refund(
        self,
        contract_id: str,
        session_id: str,
        amount: Decimal,
        description: Optional[str] = None,
    ) -> RefundResult:
        """Credit ``amount`` to the contract's parent and record the ledger entry."""
        amount = self.quantize(amount)
        if amount < 0:
            return RefundResult(success=False, message="Refund amount must not be negative")

        contract: Optional[Contract] = self.contract_repository.get_by_id(contract_id)
        if contract is None:
            return RefundResult(success=False, message=f"Contract {contract_id} not found")
        if amount == 0:
            logger.info("No refund due for session %s (contract has no package)", session_id)
            return RefundResult(success=True, message="Nothing to refund", amount=amount)

        parent = self.user_repository.get_for_update(contract.parent_id)
        if parent is None:
            return RefundResult(success=False, message=f"Parent {contract.parent_id} not found")

        parent.wallet_balance = Decimal(parent.wallet_balance or 0) + amount
        txn = self.transaction_repository.create(
            parent_id=parent.id,
            contract_id=contract.id,
            session_id=session_id,
            amount=amount,
            transaction_type=WalletTransactionType.REFUND.value,
            status=WalletTransactionStatus.COMPLETED.value,
            payment_method="wallet",
            description=description
            or f"Refund for cancelled session {session_id}"
            + (" (twin contract)" if contract.is_twin else ""),
        )
        logger.info(
            "Refunded %s to parent %s for session %s (txn %s)",
            amount,
            parent.id,
            session_id,
            txn.id,
        )
        return RefundResult(success=True, transaction_id=txn.id, amount=amount)
