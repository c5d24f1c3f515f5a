"""
Database models for the MathBridge scheduling core.

The models are organized by functionality:
- Users (parents, tutors, staff) and tutor feedback
- Payment packages and contracts
- Tutor availability windows
- Session instances ("bookings")
- Reschedule requests
- Wallet ledger and notifications written by collaborators

All references between models are plain id columns; reverse lookups are
explicit repository queries.
"""

from .availability import AvailabilityStatus, TutorAvailability
from .booking import Booking, BookingStatus
from .contract import Contract, ContractStatus
from .notification import Notification
from .package import PaymentPackage
from .reschedule import (
    TERMINAL_RESCHEDULE_STATUSES,
    RescheduleRequest,
    RescheduleRequestType,
    RescheduleStatus,
)
from .review import FinalFeedback
from .user import User
from .wallet import WalletTransaction, WalletTransactionStatus, WalletTransactionType

__all__ = [
    "AvailabilityStatus",
    "Booking",
    "BookingStatus",
    "Contract",
    "ContractStatus",
    "FinalFeedback",
    "Notification",
    "PaymentPackage",
    "RescheduleRequest",
    "RescheduleRequestType",
    "RescheduleStatus",
    "TERMINAL_RESCHEDULE_STATUSES",
    "TutorAvailability",
    "User",
    "WalletTransaction",
    "WalletTransactionStatus",
    "WalletTransactionType",
]
