# backend/mathbridge/schemas/__init__.py
"""
Pydantic schemas for the MathBridge scheduling core.

Schemas check shapes and types; business validation lives in the services.
"""

from .availability import (
    AvailabilityWindowCreate,
    AvailabilityWindowResponse,
    AvailabilityWindowUpdate,
    AvailableTutorPage,
    AvailableTutorSummary,
)
from .contract import ContractCreate, ContractResponse
from .matching import MatchCriteria, SubstituteCandidate
from .payment import RefundResult
from .reschedule import RescheduleRequestCreate, RescheduleResponse

__all__ = [
    "AvailabilityWindowCreate",
    "AvailabilityWindowResponse",
    "AvailabilityWindowUpdate",
    "AvailableTutorPage",
    "AvailableTutorSummary",
    "ContractCreate",
    "ContractResponse",
    "MatchCriteria",
    "RefundResult",
    "RescheduleRequestCreate",
    "RescheduleResponse",
    "SubstituteCandidate",
]
