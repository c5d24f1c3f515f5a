"""Wallet ledger entries written by the refund collaborator."""

from enum import Enum

from sqlalchemy import Column, DateTime, ForeignKey, Numeric, String, Text
from sqlalchemy.sql import func
import ulid

from ..database import Base


class WalletTransactionType(str, Enum):
    REFUND = "refund"
    DEDUCTION = "deduction"


class WalletTransactionStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class WalletTransaction(Base):
    __tablename__ = "wallet_transactions"

    id = Column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    parent_id = Column(String(26), ForeignKey("users.id"), nullable=False, index=True)
    contract_id = Column(String(26), ForeignKey("contracts.id"), nullable=True)
    session_id = Column(String(26), ForeignKey("sessions.id"), nullable=True)
    amount = Column(Numeric(14, 2), nullable=False)
    transaction_type = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default=WalletTransactionStatus.COMPLETED.value)
    payment_method = Column(String(20), nullable=False, default="wallet")
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
