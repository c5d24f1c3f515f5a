# backend/mathbridge/core/exceptions.py
"""
Domain-specific exceptions for the MathBridge scheduling core.

These exceptions provide clear, business-focused error messages that the
calling layer can catch and translate. The core itself never maps them to
transport status codes.
"""

from typing import Any, Dict, Optional


class DomainException(Exception):
    """Base exception for all domain-specific errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"message": self.message, "code": self.code, "details": self.details}


class ValidationException(DomainException):
    """Raised when input is malformed (bad mask, inverted time range, negative distance)."""


class NotFoundException(DomainException):
    """Raised when a requested resource is not found."""


class ConflictException(DomainException):
    """Raised when there's a conflict with existing data."""


class BusinessRuleException(DomainException):
    """Raised when a business rule is violated."""


class InvalidStateException(BusinessRuleException):
    """Raised when a transition is attempted from a non-matching state."""

    def __init__(
        self,
        message: str,
        *,
        current_state: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        merged = dict(details or {})
        if current_state is not None:
            merged.setdefault("current_state", current_state)
        super().__init__(message=message, code="INVALID_STATE", details=merged)


class ForbiddenException(DomainException):
    """Raised when the actor lacks the role or ownership for an action."""


class ServiceException(DomainException):
    """Raised when a service operation fails."""


class TransientServiceException(ServiceException):
    """Raised when a collaborator timed out or was unavailable; safe to retry."""

    retryable = True


# Specific business exceptions


class SchedulingConflictException(ConflictException):
    """Raised when a tutor would be double-booked or is not eligible for a slot."""

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message or "This time slot conflicts with an existing session",
            code="SCHEDULING_CONFLICT",
            details=details or {},
        )


class AvailabilityOverlapException(SchedulingConflictException):
    """Raised when an availability window overlaps an existing window of the same tutor."""

    def __init__(
        self,
        new_range: str,
        conflicting_range: str,
        conflicting_id: Optional[str] = None,
    ):
        super().__init__(
            message=f"Availability {new_range} overlaps existing availability {conflicting_range}",
            details={
                "new_window": new_range,
                "conflicting_window": conflicting_range,
                "conflicting_id": conflicting_id,
            },
        )
        self.code = "AVAILABILITY_OVERLAP"


class RepositoryException(Exception):
    """
    Exception raised for repository layer errors.

    This exception is used when data access operations fail,
    such as database connection issues, query failures, or
    constraint violations.
    """


def is_db_pool_exhaustion(exc: Exception) -> bool:
    """
    Check if an exception indicates DB connection pool exhaustion.

    This is a common failure mode under high load when all database
    connections are in use and new requests time out waiting.
    """
    error_str = str(exc).lower()
    return "queuepool" in error_str or (
        "timeout" in error_str and ("connection" in error_str or "pool" in error_str)
    )
