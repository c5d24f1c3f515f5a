# backend/mathbridge/services/contract_service.py
"""
Contract Service for the MathBridge scheduling core.

Creates contracts together with their full session schedule. Validation and
generation run first; the contract row, every session row and the booking
counters of the availability windows used are then written in one
transaction, with generation repeated under row locks so a concurrent
booking cannot slip in between the check and the insert.
"""

import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from ..core.enums import RoleName
from ..core.exceptions import InvalidStateException, NotFoundException, ValidationException
from ..core.ulid_helper import generate_ulid
from ..models.booking import Booking
from ..models.contract import Contract, ContractStatus
from ..repositories.factory import RepositoryFactory
from ..schemas.contract import ContractCreate, ContractResponse
from ..utils import weekday_mask
from .availability_service import AvailabilityService
from .base import BaseService
from .session_schedule_generator import SessionScheduleGenerator

logger = logging.getLogger(__name__)

MAX_SUBSTITUTE_TUTORS = 2


class ContractService(BaseService):
    def __init__(
        self,
        db: Session,
        availability_service: Optional[AvailabilityService] = None,
        generator: Optional[SessionScheduleGenerator] = None,
    ):
        super().__init__(db)
        self.logger = logging.getLogger(__name__)
        self.repository = RepositoryFactory.create_contract_repository(db)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.user_repository = RepositoryFactory.create_user_repository(db)
        self.availability_service = availability_service or AvailabilityService(db)
        self.generator = generator or SessionScheduleGenerator(
            db, availability_service=self.availability_service
        )

    def _require_active_tutor(self, tutor_id: str, label: str) -> None:
        user = self.user_repository.get_by_id(tutor_id)
        if user is None:
            raise NotFoundException(f"{label} {tutor_id} not found")
        if not (user.is_tutor and user.is_active):
            raise ValidationException(
                f"{label} {tutor_id} is not an active tutor", code="TUTOR_NOT_ACTIVE"
            )

    def _validate(self, data: ContractCreate) -> None:
        weekday_mask.validate(data.weekday_mask)
        if data.end_time <= data.start_time:
            raise ValidationException(
                "Contract end time must be after its start time", code="INVALID_TIME_RANGE"
            )
        if data.end_date < data.start_date:
            raise ValidationException(
                "Contract end date must not be before its start date", code="INVALID_DATE_RANGE"
            )
        if data.max_distance_km is not None and data.max_distance_km < 0:
            raise ValidationException(
                "max_distance_km must not be negative", code="INVALID_DISTANCE"
            )
        if not data.is_online and (
            data.offline_latitude is None or data.offline_longitude is None
        ):
            raise ValidationException(
                "Offline contracts require the session location", code="MISSING_LOCATION"
            )

        parent = self.user_repository.get_by_id(data.parent_id)
        if parent is None or parent.role != RoleName.PARENT.value:
            raise NotFoundException(f"Parent {data.parent_id} not found")

        self._require_active_tutor(data.main_tutor_id, "Main tutor")

        substitutes = [t for t in (data.substitute_tutor1_id, data.substitute_tutor2_id) if t]
        if len(set(substitutes)) != len(substitutes):
            raise ValidationException(
                "Substitute tutors must be different people", code="DUPLICATE_SUBSTITUTE"
            )
        if data.main_tutor_id in substitutes:
            raise ValidationException(
                "The main tutor cannot also be a substitute", code="DUPLICATE_SUBSTITUTE"
            )
        if len(substitutes) > MAX_SUBSTITUTE_TUTORS:
            raise ValidationException(
                f"A contract has at most {MAX_SUBSTITUTE_TUTORS} substitute tutors",
                code="TOO_MANY_SUBSTITUTES",
            )
        for substitute_id in substitutes:
            self._require_active_tutor(substitute_id, "Substitute tutor")

    @BaseService.measure_operation("create_contract")
    def create_contract(self, data: ContractCreate) -> Contract:
        """
        Create a contract and all of its sessions.

        Raises:
            ValidationException: Malformed contract or too few schedulable dates
            NotFoundException: Parent, tutor or package missing
            SchedulingConflictException: The main tutor cannot take some date;
                nothing is persisted
        """
        self._validate(data)

        contract = Contract(
            id=generate_ulid(), status=ContractStatus.PENDING.value, **data.model_dump()
        )
        # Fail fast before taking any locks
        self.generator.generate_sessions(contract)

        with self.transaction():
            sessions = self.generator.generate_sessions(contract, for_update=True)
            self.repository.add_all([contract])
            self.booking_repository.add_all(sessions)
            # The recurring slot is held by the contract: one booking per window
            for availability_id in dict.fromkeys(s.availability_id for s in sessions):
                self.availability_service.reserve_capacity(availability_id)

        self.logger.info(
            f"Created contract {contract.id} for parent {contract.parent_id} "
            f"with {len(sessions)} sessions taught by {contract.main_tutor_id}"
        )
        return contract

    def get_contract(self, contract_id: str) -> Contract:
        contract = self.repository.get_by_id(contract_id)
        if contract is None:
            raise NotFoundException(f"Contract {contract_id} not found")
        return contract

    def get_contract_sessions(self, contract_id: str) -> List[Booking]:
        self.get_contract(contract_id)
        return self.booking_repository.get_by_contract(contract_id)

    def get_contracts_by_parent(self, parent_id: str) -> List[ContractResponse]:
        """Contracts of a parent with a readable weekday list and session count."""
        contracts = self.repository.get_by_parent(parent_id)
        return [
            ContractResponse.model_validate(contract).model_copy(
                update={
                    "weekday_display": weekday_mask.display(contract.weekday_mask),
                    "session_count": self.booking_repository.count(contract_id=contract.id),
                }
            )
            for contract in contracts
        ]

    @BaseService.measure_operation("activate_contract")
    def activate_contract(self, contract_id: str) -> Contract:
        """
        Move a pending contract to active.

        Raises:
            NotFoundException: If the contract does not exist
            InvalidStateException: If the contract is not pending
        """
        with self.transaction():
            contract = self.repository.get_for_update(contract_id)
            if contract is None:
                raise NotFoundException(f"Contract {contract_id} not found")
            if contract.status != ContractStatus.PENDING.value:
                raise InvalidStateException(
                    f"Only pending contracts can be activated (contract is {contract.status})",
                    current_state=contract.status,
                )
            contract.status = ContractStatus.ACTIVE.value

        self.logger.info(f"Contract {contract_id} activated")
        return contract
