# backend/mathbridge/repositories/__init__.py
"""
Repository Pattern Implementation for the MathBridge scheduling core.

This package provides the repository layer for data access,
separating business logic from database queries.

Key Components:
- BaseRepository: Foundation for all repositories with generic CRUD operations
- IRepository: Interface defining required methods for all repositories
- RepositoryFactory: Factory for creating repository instances
- AvailabilityRepository: Recurring availability window queries
- ConflictCheckerRepository: Session lookups for double-booking checks
- BookingRepository: Session instance reads
- ContractRepository: Contracts and payment packages
- RescheduleRepository: Reschedule request lookups
- UserRepository: Active tutors, locations and ratings

Usage:
    from mathbridge.repositories import RepositoryFactory

    # In a service:
    repository = RepositoryFactory.create_conflict_checker_repository(db)
    sessions = repository.get_sessions_for_conflict_check(tutor_id, session_date)

Repositories never commit; services own the transaction.
"""

from .availability_repository import AvailabilityRepository
from .base_repository import BaseRepository, IRepository
from .booking_repository import BookingRepository
from .conflict_checker_repository import ConflictCheckerRepository
from .contract_repository import ContractRepository
from .factory import RepositoryFactory
from .reschedule_repository import RescheduleRepository
from .user_repository import UserRepository

__all__ = [
    "BaseRepository",
    "IRepository",
    "RepositoryFactory",
    "AvailabilityRepository",
    "BookingRepository",
    "ConflictCheckerRepository",
    "ContractRepository",
    "RescheduleRepository",
    "UserRepository",
]
