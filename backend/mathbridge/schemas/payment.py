"""Refund outcome returned by the wallet collaborator."""

from decimal import Decimal
from typing import Optional

from ._strict_base import StrictModel


class RefundResult(StrictModel):
    success: bool
    transaction_id: Optional[str] = None
    message: Optional[str] = None
    amount: Decimal = Decimal("0")
