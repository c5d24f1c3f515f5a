# backend/mathbridge/services/reschedule_service.py
"""
Reschedule Service for the MathBridge scheduling core.

Drives the reschedule request state machine:

    pending -> approved | rejected | cancelled

Every request makes exactly one transition out of ``pending``; calling
approve, reject or cancel on a terminal request raises
InvalidStateException.

Three request types share the machine:
- ``reschedule``: a parent moves a session; consumes one of the contract's
  reschedule attempts when approved.
- ``tutor_replacement``: the session's tutor asks staff to hand it over;
  approval must end with a different tutor.
- ``makeup``: a parent asks for a make-up slot; free of attempts.

Approval re-validates the chosen tutor under row locks inside the same
transaction that moves the session, so an approval can never double-book a
tutor even if the preview it was based on has gone stale. Notifications
are sent only after the transaction commits and never undo it.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
import logging
from typing import Any, Dict, List, Optional, Set

from sqlalchemy.orm import Session, sessionmaker

from ..core.config import settings
from ..core.enums import RoleName, TeachingMode
from ..core.exceptions import (
    ForbiddenException,
    InvalidStateException,
    NotFoundException,
    SchedulingConflictException,
    ServiceException,
    ValidationException,
)
from ..models.booking import Booking, BookingStatus
from ..models.contract import Contract, ContractStatus
from ..models.package import PaymentPackage
from ..models.reschedule import RescheduleRequest, RescheduleRequestType, RescheduleStatus
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from ..schemas.matching import MatchCriteria, SubstituteCandidate
from ..schemas.payment import RefundResult
from ..schemas.reschedule import RescheduleRequestCreate, RescheduleResponse
from ..utils import geo
from .availability_service import AvailabilityService
from .base import BaseService
from .conflict_checker import ConflictChecker
from .notification_service import NotificationSender, NotificationService
from .tutor_matcher import TutorMatcher
from .wallet_service import RefundGateway, WalletService

logger = logging.getLogger(__name__)

FINAL_SESSION_STATUSES = frozenset({BookingStatus.COMPLETED.value, BookingStatus.CANCELLED.value})


def compute_refund_amount(contract: Contract, package: Optional[PaymentPackage]) -> Decimal:
    """
    Per-session refund: package price / session count.

    Twin contracts are charged at a multiple of the package price, so their
    refund uses the same multiple. Contracts without a package refund 0.
    """
    if package is None or not package.session_count:
        return Decimal("0")
    price = Decimal(package.price)
    if contract.is_twin:
        price *= Decimal(str(settings.twin_contract_price_multiplier))
    return WalletService.quantize(price / Decimal(package.session_count))


class RescheduleService(BaseService):
    """
    Service layer for reschedule requests.

    Collaborators are injected so hosts can swap delivery and payment:
    ``notifier`` (NotificationSender) and ``refund_gateway`` (RefundGateway).
    """

    def __init__(
        self,
        db: Session,
        notifier: Optional[NotificationSender] = None,
        refund_gateway: Optional[RefundGateway] = None,
        matcher: Optional[TutorMatcher] = None,
    ):
        super().__init__(db)
        self.logger = logging.getLogger(__name__)
        self.repository = RepositoryFactory.create_reschedule_repository(db)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.contract_repository = RepositoryFactory.create_contract_repository(db)
        self.user_repository = RepositoryFactory.create_user_repository(db)
        self.conflict_checker = ConflictChecker(db)
        self.availability_service = AvailabilityService(db)
        self.matcher = matcher or TutorMatcher(
            db,
            availability_service=self.availability_service,
            conflict_checker=self.conflict_checker,
        )
        self.notifier: NotificationSender = notifier or NotificationService(
            sessionmaker(bind=db.get_bind(), autoflush=False, expire_on_commit=False)
        )
        self.refund_gateway: RefundGateway = refund_gateway or WalletService(db)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def _today() -> date:
        return date.today()

    def _get_request(self, request_id: str, *, for_update: bool = False) -> RescheduleRequest:
        request = (
            self.repository.get_for_update(request_id)
            if for_update
            else self.repository.get_by_id(request_id)
        )
        if request is None:
            raise NotFoundException(f"Reschedule request {request_id} not found")
        return request

    def _get_session(self, session_id: str, *, for_update: bool = False) -> Booking:
        session = (
            self.booking_repository.get_for_update(session_id)
            if for_update
            else self.booking_repository.get_by_id(session_id)
        )
        if session is None:
            raise NotFoundException(f"Session {session_id} not found")
        return session

    def _get_contract(self, contract_id: str, *, for_update: bool = False) -> Contract:
        contract = (
            self.contract_repository.get_for_update(contract_id)
            if for_update
            else self.contract_repository.get_by_id(contract_id)
        )
        if contract is None:
            raise NotFoundException(f"Contract {contract_id} not found")
        return contract

    @staticmethod
    def _require_pending(request: RescheduleRequest, action: str) -> None:
        if request.status != RescheduleStatus.PENDING.value:
            raise InvalidStateException(
                f"Only pending requests can be {action} (request is {request.status})",
                current_state=request.status,
            )

    @staticmethod
    def _require_scheduled(session: Booking) -> None:
        if session.status != BookingStatus.SCHEDULED.value:
            raise InvalidStateException(
                f"Session {session.id} is {session.status}, not scheduled",
                current_state=session.status,
            )

    def _validate_requested_slot(self, data: RescheduleRequestCreate) -> None:
        """Time rules for parent-chosen slots."""
        duration = self.conflict_checker.validate_time_range(data.start_time, data.end_time)
        allowed = settings.reschedule_start_times
        if allowed:
            if data.start_time not in allowed:
                labels = ", ".join(f"{t:%H:%M}" for t in allowed)
                raise ValidationException(
                    f"Start time must be one of {labels}", code="INVALID_START_TIME"
                )
            if duration != settings.session_duration_minutes:
                expected = (
                    datetime.combine(date.min, data.start_time)
                    + timedelta(minutes=settings.session_duration_minutes)
                ).time()
                raise ValidationException(
                    f"End time must be {expected:%H:%M} "
                    f"({settings.session_duration_minutes} minutes after start time)",
                    code="INVALID_DURATION",
                )
        if data.requested_date < self._today():
            raise ValidationException(
                "Requested date must not be in the past", code="INVALID_DATE"
            )

    def _load_owned_session(self, parent_id: str, session_id: str) -> tuple[Booking, Contract]:
        session = self._get_session(session_id)
        contract = self._get_contract(session.contract_id)
        if contract.parent_id != parent_id:
            raise ForbiddenException("You can only request changes to your own child's sessions")
        if session.session_date < self._today():
            raise InvalidStateException(
                "Cannot change past sessions", current_state="past"
            )
        self._require_scheduled(session)
        return session, contract

    @staticmethod
    def _require_contract_window(contract: Contract, requested_date: date) -> None:
        if contract.status != ContractStatus.ACTIVE.value:
            raise InvalidStateException(
                "Contract is no longer active", current_state=contract.status
            )
        if requested_date > contract.end_date:
            raise InvalidStateException(
                f"Requested date exceeds the contract end date {contract.end_date.isoformat()}",
                current_state="after_contract_end",
            )

    def _criteria_for(
        self, request: RescheduleRequest, session: Booking, contract: Contract
    ) -> MatchCriteria:
        """Matching criteria for the requested slot under the contract's constraints."""
        return self._slot_criteria(
            session, contract, request.requested_date, request.start_time, request.end_time
        )

    def _slot_criteria(
        self,
        session: Booking,
        contract: Contract,
        required_date: date,
        start_time: time,
        end_time: time,
    ) -> MatchCriteria:
        mode = TeachingMode.ONLINE if session.is_online else TeachingMode.OFFLINE
        location = geo.coordinates_or_none(session.offline_latitude, session.offline_longitude)
        if location is None:
            location = geo.coordinates_or_none(
                contract.offline_latitude, contract.offline_longitude
            )
        return MatchCriteria(
            required_date=required_date,
            start_time=start_time,
            end_time=end_time,
            mode=mode,
            offline_location=location if mode == TeachingMode.OFFLINE else None,
            max_distance_km=contract.max_distance_km,
            role=RoleName.TUTOR.value,
            exclude_session_id=session.id,
        )

    def _notify(self, event: str, payload: Dict[str, Any]) -> None:
        """Best-effort delivery after commit."""
        try:
            self.notifier.notify(event, payload)
        except Exception as exc:
            self.logger.warning(f"Notification {event} failed: {exc}", exc_info=True)

    def _transition(self, request: RescheduleRequest, status: RescheduleStatus) -> None:
        request.status = status.value
        request.processed_date = self._now()
        prometheus_metrics.record_reschedule_transition(status.value)
        self.log_operation(
            "reschedule_transition",
            request_id=request.id,
            request_type=request.request_type,
            status=status.value,
        )

    def _release_if_last_holder(self, contract_id: str, availability_id: Optional[str]) -> None:
        # The contract holds each window once; give it back when no scheduled
        # session of the contract references it any more
        if not availability_id:
            return
        if self.booking_repository.count_scheduled_holding(contract_id, availability_id) == 0:
            self.availability_service.release_booking(availability_id)

    def _move_window(
        self,
        contract_id: str,
        held: Set[str],
        old_window_id: Optional[str],
        new_window_id: Optional[str],
    ) -> None:
        """Counter bookkeeping after a session's window reference changed."""
        self.booking_repository.flush()
        if new_window_id == old_window_id:
            return
        if new_window_id and new_window_id not in held:
            self.availability_service.reserve_capacity(new_window_id)
        self._release_if_last_holder(contract_id, old_window_id)

    def _require_active_tutor(self, tutor_id: str) -> None:
        tutor = self.user_repository.get_by_id(tutor_id)
        if tutor is None:
            raise NotFoundException(f"Tutor {tutor_id} not found")
        if not (tutor.is_tutor and tutor.is_active):
            raise ValidationException(
                f"User {tutor_id} is not an active tutor", code="TUTOR_NOT_ACTIVE"
            )

    # ------------------------------------------------------------------
    # Request creation
    # ------------------------------------------------------------------

    @BaseService.measure_operation("create_reschedule_request")
    def create_request(self, parent_id: str, data: RescheduleRequestCreate) -> RescheduleRequest:
        """
        Create a pending request to move a session.

        Raises:
            ValidationException: Bad slot (time rules, past date, unchanged window)
            NotFoundException: Session or contract missing
            ForbiddenException: Session belongs to another parent
            InvalidStateException: Session not scheduled or past, contract not
                active or ending before the requested date, no attempts left,
                or another request pending in the contract
        """
        self._validate_requested_slot(data)
        session, contract = self._load_owned_session(parent_id, data.session_id)

        if (
            data.requested_date == session.session_date
            and data.start_time == session.start_time
            and data.end_time == session.end_time
        ):
            raise ValidationException(
                "The requested slot is the session's current slot", code="UNCHANGED_SLOT"
            )
        if self.repository.has_pending_in_contract(contract.id):
            raise InvalidStateException(
                "This contract already has a pending request; wait for it to be processed",
                current_state=RescheduleStatus.PENDING.value,
            )
        self._require_contract_window(contract, data.requested_date)
        if (contract.reschedule_count or 0) <= 0:
            raise InvalidStateException(
                "All reschedule attempts for this contract have been used",
                current_state="no_attempts_left",
            )

        with self.transaction():
            request = self.repository.create(
                booking_id=session.id,
                contract_id=contract.id,
                parent_id=parent_id,
                request_type=RescheduleRequestType.RESCHEDULE.value,
                requested_date=data.requested_date,
                start_time=data.start_time,
                end_time=data.end_time,
                requested_tutor_id=data.requested_tutor_id,
                reason=data.reason,
                status=RescheduleStatus.PENDING.value,
            )

        prometheus_metrics.record_reschedule_transition(RescheduleStatus.PENDING.value)
        self.logger.info(
            f"Reschedule request {request.id} created for session {session.id} "
            f"-> {data.requested_date} {data.start_time:%H:%M}-{data.end_time:%H:%M}"
        )
        return request

    @BaseService.measure_operation("create_tutor_replacement_request")
    def create_tutor_replacement_request(
        self, session_id: str, tutor_id: str, reason: Optional[str] = None
    ) -> RescheduleRequest:
        """
        The session's tutor asks staff to hand the session to another tutor.

        Raises:
            NotFoundException: Session missing
            ForbiddenException: The caller is not the session's tutor
            InvalidStateException: Session not scheduled, not at least a day
                away, or already has a pending request
        """
        session = self._get_session(session_id)
        if session.tutor_id != tutor_id:
            raise ForbiddenException("You can only request replacement for your own sessions")
        if session.session_date <= self._today():
            raise InvalidStateException(
                "Replacement is only possible for sessions starting tomorrow or later",
                current_state="too_late",
            )
        self._require_scheduled(session)
        if self.repository.has_pending_for_booking(session.id):
            raise InvalidStateException(
                "This session already has a pending request",
                current_state=RescheduleStatus.PENDING.value,
            )
        contract = self._get_contract(session.contract_id)

        with self.transaction():
            request = self.repository.create(
                booking_id=session.id,
                contract_id=contract.id,
                parent_id=contract.parent_id,
                request_type=RescheduleRequestType.TUTOR_REPLACEMENT.value,
                requested_date=session.session_date,
                start_time=session.start_time,
                end_time=session.end_time,
                reason=reason,
                status=RescheduleStatus.PENDING.value,
            )

        prometheus_metrics.record_reschedule_transition(RescheduleStatus.PENDING.value)
        self.logger.info(f"Tutor {tutor_id} requested replacement for session {session.id}")
        return request

    @BaseService.measure_operation("create_makeup_request")
    def create_makeup_request(self, parent_id: str, data: RescheduleRequestCreate) -> RescheduleRequest:
        """
        Request a make-up slot for a session; does not use reschedule attempts.

        Raises:
            InvalidStateException: A tutor replacement for the session is still
                pending, or another request for the session is pending
            ValidationException: Same date as the session after an approved
                tutor replacement, or bad slot
        """
        self._validate_requested_slot(data)
        session, contract = self._load_owned_session(parent_id, data.session_id)

        if self.repository.has_pending_for_booking(
            session.id, RescheduleRequestType.TUTOR_REPLACEMENT.value
        ):
            raise InvalidStateException(
                "The tutor's replacement request for this session is awaiting staff; "
                "request a make-up session after it is processed",
                current_state=RescheduleStatus.PENDING.value,
            )
        replacement = self.repository.get_latest_approved_replacement(session.id)
        if replacement is not None and data.requested_date == replacement.requested_date:
            raise ValidationException(
                "The make-up date cannot be the date the tutor was unavailable "
                f"({replacement.requested_date.isoformat()})",
                code="MAKEUP_SAME_DATE",
            )
        if self.repository.has_pending_for_booking(session.id):
            raise InvalidStateException(
                "There is already a pending request for this session",
                current_state=RescheduleStatus.PENDING.value,
            )
        self._require_contract_window(contract, data.requested_date)

        with self.transaction():
            request = self.repository.create(
                booking_id=session.id,
                contract_id=contract.id,
                parent_id=parent_id,
                request_type=RescheduleRequestType.MAKEUP.value,
                requested_date=data.requested_date,
                start_time=data.start_time,
                end_time=data.end_time,
                requested_tutor_id=data.requested_tutor_id,
                reason=data.reason,
                status=RescheduleStatus.PENDING.value,
            )

        prometheus_metrics.record_reschedule_transition(RescheduleStatus.PENDING.value)
        self.logger.info(f"Make-up request {request.id} created for session {session.id}")
        return request

    # ------------------------------------------------------------------
    # Substitute preview
    # ------------------------------------------------------------------

    @BaseService.measure_operation("get_available_substitutes")
    def get_available_substitutes(
        self, request_id: str, *, contract_substitutes_only: bool = False
    ) -> List[SubstituteCandidate]:
        """
        Tutors who could take the requested slot, best first.

        The session's current tutor is excluded. With
        ``contract_substitutes_only`` the pool is limited to the substitutes
        named on the contract.
        """
        request = self._get_request(request_id)
        session = self._get_session(request.booking_id)
        contract = self._get_contract(request.contract_id)

        criteria = self._criteria_for(request, session, contract).model_copy(
            update={
                "exclude_tutor_ids": [session.tutor_id],
                "preferred_tutor_ids": (
                    contract.substitute_tutor_ids if contract_substitutes_only else None
                ),
            }
        )
        held = self.booking_repository.get_held_availability_ids(contract.id)
        return self.matcher.find_candidates(criteria, held_availability_ids=held)

    # ------------------------------------------------------------------
    # Staff decisions
    # ------------------------------------------------------------------

    def _resolve_tutor(
        self, request: RescheduleRequest, session: Booking, new_tutor_id: Optional[str]
    ) -> str:
        tutor_id = new_tutor_id or request.requested_tutor_id
        is_replacement = request.request_type == RescheduleRequestType.TUTOR_REPLACEMENT.value
        if tutor_id is None:
            if is_replacement:
                raise ValidationException(
                    "A tutor replacement needs a new tutor", code="TUTOR_REQUIRED"
                )
            tutor_id = session.tutor_id
        if is_replacement and tutor_id == session.tutor_id:
            raise ValidationException(
                "A tutor replacement must assign a different tutor", code="SAME_TUTOR"
            )

        self._require_active_tutor(tutor_id)
        return tutor_id

    @BaseService.measure_operation("approve_reschedule_request")
    def approve_request(
        self,
        staff_id: str,
        request_id: str,
        new_tutor_id: Optional[str] = None,
        note: Optional[str] = None,
    ) -> RescheduleRequest:
        """
        Approve a pending request and move the session.

        The tutor is the staff choice, else the requested tutor, else (for
        reschedule and make-up requests) the session's current tutor.

        Raises:
            NotFoundException: Request, session, contract or tutor missing
            InvalidStateException: Request not pending or session not scheduled
            ValidationException: Tutor not an active tutor, or a replacement
                without a different tutor
            SchedulingConflictException: The tutor cannot take the slot at
                commit time; the request stays pending
        """
        with self.transaction():
            request = self._get_request(request_id, for_update=True)
            self._require_pending(request, "approved")
            session = self._get_session(request.booking_id, for_update=True)
            self._require_scheduled(session)
            contract = self._get_contract(request.contract_id, for_update=True)

            tutor_id = self._resolve_tutor(request, session, new_tutor_id)
            held: Set[str] = self.booking_repository.get_held_availability_ids(contract.id)
            criteria = self._criteria_for(request, session, contract)

            candidate = self.matcher.evaluate_tutor(
                tutor_id, criteria, held_availability_ids=held, for_update=True
            )
            if candidate is None:
                prometheus_metrics.record_scheduling_conflict("approve_reschedule_request")
                self.logger.warning(
                    f"Approval of {request_id} refused: tutor {tutor_id} cannot take "
                    f"{request.requested_date} {request.start_time:%H:%M}-{request.end_time:%H:%M}"
                )
                raise SchedulingConflictException(
                    f"Tutor {tutor_id} is no longer available for "
                    f"{request.requested_date.isoformat()} "
                    f"{request.start_time:%H:%M}-{request.end_time:%H:%M}",
                    details={"request_id": request_id, "tutor_id": tutor_id},
                )

            old_tutor_id = session.tutor_id
            old_window_id = session.availability_id
            new_window_id = candidate.availability_id

            session.session_date = request.requested_date
            session.start_time = request.start_time
            session.end_time = request.end_time
            session.tutor_id = tutor_id
            session.availability_id = new_window_id
            self._move_window(contract.id, held, old_window_id, new_window_id)

            if request.request_type == RescheduleRequestType.RESCHEDULE.value:
                contract.reschedule_count = max(0, (contract.reschedule_count or 0) - 1)

            request.staff_id = staff_id
            request.requested_tutor_id = tutor_id
            if note:
                request.staff_note = note
            self._transition(request, RescheduleStatus.APPROVED)

        self.logger.info(
            f"Reschedule request {request_id} approved by {staff_id}: session {session.id} "
            f"-> {session.window_label()} with tutor {tutor_id}"
        )
        payload = {
            "request_id": request.id,
            "contract_id": contract.id,
            "session_id": session.id,
            "session_date": session.session_date.isoformat(),
            "start_time": session.start_time.isoformat(),
            "end_time": session.end_time.isoformat(),
            "tutor_id": tutor_id,
            "previous_tutor_id": old_tutor_id,
        }
        self._notify(
            "reschedule.approved",
            {**payload, "user_id": request.parent_id, "message": "Your request was approved."},
        )
        self._notify(
            "reschedule.approved",
            {**payload, "user_id": tutor_id, "message": f"You teach {session.window_label()}."},
        )
        return request

    @BaseService.measure_operation("reject_reschedule_request")
    def reject_request(self, staff_id: str, request_id: str, reason: str) -> RescheduleRequest:
        """
        Reject a pending request; the session is left untouched.

        The rejection reason is stored as the staff note so the parent's own
        reason is kept.
        """
        if not reason or not reason.strip():
            raise ValidationException("A rejection reason is required", code="REASON_REQUIRED")

        with self.transaction():
            request = self._get_request(request_id, for_update=True)
            self._require_pending(request, "rejected")
            request.staff_id = staff_id
            request.staff_note = reason.strip()
            self._transition(request, RescheduleStatus.REJECTED)

        self.logger.info(f"Reschedule request {request_id} rejected by {staff_id}")
        self._notify(
            "reschedule.rejected",
            {
                "user_id": request.parent_id,
                "request_id": request.id,
                "contract_id": request.contract_id,
                "session_id": request.booking_id,
                "message": f"Your request was rejected: {request.staff_note}",
            },
        )
        return request

    @BaseService.measure_operation("cancel_reschedule_request")
    def cancel_request(self, parent_id: str, request_id: str) -> RescheduleRequest:
        """The parent withdraws a pending request."""
        with self.transaction():
            request = self._get_request(request_id, for_update=True)
            if request.parent_id != parent_id:
                raise ForbiddenException("You can only cancel your own requests")
            self._require_pending(request, "cancelled")
            self._transition(request, RescheduleStatus.CANCELLED)

        self.logger.info(f"Reschedule request {request_id} withdrawn by parent {parent_id}")
        return request

    @BaseService.measure_operation("cancel_session_and_refund")
    def cancel_session_and_refund(
        self,
        session_id: str,
        reschedule_request_id: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> RefundResult:
        """
        Cancel a session and refund its share of the package price.

        Refund = package price (times the twin multiplier for twin contracts)
        divided by the package's session count; 0 without a package. The
        cancellation, counter release, linked request approval and refund are
        one transaction: a failed refund leaves everything as it was.

        Raises:
            NotFoundException: Session, contract or linked request missing
            InvalidStateException: Session already cancelled or completed, or
                the linked request is not pending
            ValidationException: Linked request belongs to another session
            ServiceException: The refund collaborator reported a failure
        """
        with self.transaction():
            session = self._get_session(session_id, for_update=True)
            if session.status in (BookingStatus.CANCELLED.value, BookingStatus.COMPLETED.value):
                raise InvalidStateException(
                    f"Session {session_id} cannot be cancelled in its current state",
                    current_state=session.status,
                )

            request: Optional[RescheduleRequest] = None
            if reschedule_request_id:
                request = self._get_request(reschedule_request_id, for_update=True)
                if request.booking_id != session.id:
                    raise ValidationException(
                        "The reschedule request does not belong to this session",
                        code="REQUEST_SESSION_MISMATCH",
                    )
                self._require_pending(request, "approved")

            contract = self._get_contract(session.contract_id, for_update=True)
            package = self.contract_repository.get_package(contract.package_id)
            amount = compute_refund_amount(contract, package)

            session.status = BookingStatus.CANCELLED.value
            session.cancelled_at = self._now()
            session.cancellation_reason = "Cancelled with refund"
            self.booking_repository.flush()
            self._release_if_last_holder(contract.id, session.availability_id)

            if request is not None:
                request.staff_id = actor_id
                if request.request_type == RescheduleRequestType.RESCHEDULE.value:
                    contract.reschedule_count = max(0, (contract.reschedule_count or 0) - 1)
                self._transition(request, RescheduleStatus.APPROVED)

            result = self.refund_gateway.refund(contract.id, session.id, amount)
            if not result.success:
                self.logger.error(
                    f"Refund for session {session_id} failed: {result.message}; rolling back"
                )
                raise ServiceException(
                    f"Refund failed: {result.message or 'unknown error'}",
                    details={"session_id": session_id, "amount": str(amount)},
                )

        self.logger.info(
            f"Session {session_id} cancelled; refunded {result.amount} "
            f"(transaction {result.transaction_id})"
        )
        self._notify(
            "session.cancelled",
            {
                "user_id": contract.parent_id,
                "contract_id": contract.id,
                "session_id": session.id,
                "amount": str(result.amount),
                "transaction_id": result.transaction_id,
                "message": f"Session {session.window_label()} was cancelled; "
                f"{result.amount} was refunded to your wallet.",
            },
        )
        return result

    # ------------------------------------------------------------------
    # Session staffing
    # ------------------------------------------------------------------

    @BaseService.measure_operation("change_session_tutor")
    def change_session_tutor(
        self,
        staff_id: str,
        session_id: str,
        new_tutor_id: str,
        *,
        contract_tutors_only: bool = True,
    ) -> Booking:
        """
        Staff hand a session to another tutor without a request.

        With ``contract_tutors_only`` the new tutor must be the contract's main
        tutor or one of its substitutes; otherwise any active tutor may take
        the session. The slot stays as it is and the new tutor is re-checked
        for it under row locks.

        Raises:
            NotFoundException: Session, contract or tutor missing
            InvalidStateException: Session completed or cancelled
            ValidationException: Same tutor, tutor outside the contract, or
                not an active tutor
            SchedulingConflictException: The tutor cannot take the slot
        """
        with self.transaction():
            session = self._get_session(session_id, for_update=True)
            self._require_scheduled(session)
            contract = self._get_contract(session.contract_id, for_update=True)

            if new_tutor_id == session.tutor_id:
                raise ValidationException(
                    "The session is already taught by this tutor", code="SAME_TUTOR"
                )
            if contract_tutors_only and new_tutor_id not in contract.tutor_ids:
                raise ValidationException(
                    f"Tutor {new_tutor_id} is neither the main tutor nor a substitute "
                    "of this contract",
                    code="TUTOR_NOT_IN_CONTRACT",
                )
            self._require_active_tutor(new_tutor_id)

            held: Set[str] = self.booking_repository.get_held_availability_ids(contract.id)
            criteria = self._slot_criteria(
                session, contract, session.session_date, session.start_time, session.end_time
            )
            candidate = self.matcher.evaluate_tutor(
                new_tutor_id, criteria, held_availability_ids=held, for_update=True
            )
            if candidate is None:
                prometheus_metrics.record_scheduling_conflict("change_session_tutor")
                self.logger.warning(
                    f"Tutor change for session {session_id} refused: tutor {new_tutor_id} "
                    f"cannot take {session.window_label()}"
                )
                raise SchedulingConflictException(
                    f"Tutor {new_tutor_id} is not available for {session.window_label()}",
                    details={"session_id": session_id, "tutor_id": new_tutor_id},
                )

            old_tutor_id = session.tutor_id
            old_window_id = session.availability_id
            session.tutor_id = new_tutor_id
            session.availability_id = candidate.availability_id
            self._move_window(contract.id, held, old_window_id, candidate.availability_id)
            self.log_operation(
                "session_tutor_changed",
                session_id=session.id,
                tutor_id=new_tutor_id,
                previous_tutor_id=old_tutor_id,
                staff_id=staff_id,
            )

        self.logger.info(
            f"Session {session_id} handed from {old_tutor_id} to {new_tutor_id} by {staff_id}"
        )
        payload = {
            "contract_id": contract.id,
            "session_id": session.id,
            "tutor_id": new_tutor_id,
            "previous_tutor_id": old_tutor_id,
        }
        self._notify(
            "session.tutor_changed",
            {
                **payload,
                "user_id": contract.parent_id,
                "message": f"Session {session.window_label()} has a new tutor.",
            },
        )
        self._notify(
            "session.tutor_changed",
            {**payload, "user_id": new_tutor_id, "message": f"You teach {session.window_label()}."},
        )
        return session

    @BaseService.measure_operation("update_session_status")
    def update_session_status(self, session_id: str, tutor_id: str, new_status: str) -> Booking:
        """
        The session's tutor records the outcome of today's session.

        Completed and cancelled are final; setting a session to the status
        it already has is accepted and changes nothing. A session that stops
        being scheduled gives its window back when it was the contract's last
        holder.

        Raises:
            NotFoundException: Session missing
            ForbiddenException: The caller is not the session's tutor
            InvalidStateException: The session is not today, or its status is final
            ValidationException: Unknown status
        """
        with self.transaction():
            session = self._get_session(session_id, for_update=True)
            if session.tutor_id != tutor_id:
                raise ForbiddenException("You are not the tutor assigned to this session")
            today = self._today()
            if session.session_date != today:
                raise InvalidStateException(
                    f"Only sessions scheduled for today ({today.isoformat()}) can be updated; "
                    f"this session is on {session.session_date.isoformat()}",
                    current_state="not_today",
                )
            try:
                status = BookingStatus((new_status or "").strip().lower())
            except ValueError as exc:
                allowed = ", ".join(sorted(s.value for s in BookingStatus))
                raise ValidationException(
                    f"Invalid status '{new_status}'. Allowed values are: {allowed}",
                    code="INVALID_STATUS",
                ) from exc

            previous = session.status
            if previous == status.value:
                return session
            if previous in FINAL_SESSION_STATUSES:
                raise InvalidStateException(
                    f"Cannot change status from '{previous}'; "
                    "completed and cancelled sessions are final",
                    current_state=previous,
                )

            session.status = status.value
            if status == BookingStatus.CANCELLED:
                session.cancelled_at = self._now()
                session.cancellation_reason = "Cancelled by tutor"
            self.booking_repository.flush()
            if previous == BookingStatus.SCHEDULED.value:
                self._release_if_last_holder(session.contract_id, session.availability_id)
            self.log_operation(
                "session_status_updated",
                session_id=session.id,
                previous_status=previous,
                status=status.value,
            )

        self.logger.info(f"Session {session_id} marked {status.value} by tutor {tutor_id}")
        return session

    @BaseService.measure_operation("get_replacement_tutors")
    def get_replacement_tutors(self, session_id: str) -> List[SubstituteCandidate]:
        """
        Tutors who could take over a session in its current slot.

        The contract's substitutes who are free come first and are flagged
        ``is_contract_substitute``; only when none of them is free is the
        whole active tutor pool searched. The current tutor is never offered.
        """
        session = self._get_session(session_id)
        self._require_scheduled(session)
        contract = self._get_contract(session.contract_id)

        held = self.booking_repository.get_held_availability_ids(contract.id)
        criteria = self._slot_criteria(
            session, contract, session.session_date, session.start_time, session.end_time
        ).model_copy(update={"exclude_tutor_ids": [session.tutor_id]})

        substitute_ids = [t for t in contract.substitute_tutor_ids if t != session.tutor_id]
        if substitute_ids:
            substitutes = self.matcher.find_candidates(
                criteria.model_copy(update={"preferred_tutor_ids": substitute_ids}),
                held_availability_ids=held,
            )
            if substitutes:
                return [c.model_copy(update={"is_contract_substitute": True}) for c in substitutes]

        return self.matcher.find_candidates(criteria, held_availability_ids=held)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_request(self, request_id: str, user_id: str, role: str) -> RescheduleResponse:
        """A request by id; parents may only read their own."""
        request = self._get_request(request_id)
        if role == RoleName.PARENT.value and request.parent_id != user_id:
            raise ForbiddenException("You can only view your own reschedule requests")
        return RescheduleResponse.model_validate(request)

    def list_requests(
        self, parent_id: Optional[str] = None, status: Optional[str] = None
    ) -> List[RescheduleResponse]:
        if status is not None:
            try:
                status = RescheduleStatus(status).value
            except ValueError as exc:
                raise ValidationException(
                    f"Unknown request status: {status}", code="INVALID_STATUS"
                ) from exc
        requests = self.repository.list_requests(parent_id=parent_id, status=status)
        return [RescheduleResponse.model_validate(r) for r in requests]
