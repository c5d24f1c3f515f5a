# backend/tests/services/test_reschedule_workflow_service.py
"""
RescheduleService: request creation, staff decisions, withdrawals and
cancellation with refund, run against an in-memory store with mocked
notification and refund collaborators.
"""

from datetime import date, time, timedelta
from decimal import Decimal
import threading
from time import sleep
from types import SimpleNamespace
from unittest.mock import Mock

import pytest
from sqlalchemy.orm import sessionmaker

from mathbridge.core.enums import AccountStatus, RoleName
from mathbridge.core.exceptions import (
    ForbiddenException,
    InvalidStateException,
    NotFoundException,
    SchedulingConflictException,
    ServiceException,
    ValidationException,
)
from mathbridge.database import build_engine, init_db
from mathbridge.models.booking import Booking, BookingStatus
from mathbridge.models.contract import ContractStatus
from mathbridge.models.notification import Notification
from mathbridge.models.reschedule import RescheduleRequest, RescheduleRequestType, RescheduleStatus
from mathbridge.models.wallet import WalletTransaction
from mathbridge.schemas.payment import RefundResult
from mathbridge.schemas.reschedule import RescheduleRequestCreate
from mathbridge.services.reschedule_service import RescheduleService, compute_refund_amount
from tests.factories.builders import (
    add_rating,
    make_contract,
    make_package,
    make_parent,
    make_request,
    make_session,
    make_tutor,
    make_window,
)

NEW_START = time(17, 30)
NEW_END = time(19, 0)


@pytest.fixture
def world(db):
    parent = make_parent(db, "Hoa")
    tutor = make_tutor(db, "Lan")
    substitute = make_tutor(db, "Minh")
    window = make_window(db, tutor, max_concurrent_bookings=2)
    substitute_window = make_window(db, substitute)
    package = make_package(db, price=Decimal("800000"), session_count=4)
    contract = make_contract(db, parent, tutor, package=package, substitutes=(substitute,))
    session_date = date.today() + timedelta(days=7)
    session = make_session(db, contract, session_date, window=window)
    window.current_bookings = 1
    db.commit()
    return SimpleNamespace(
        parent=parent,
        tutor=tutor,
        substitute=substitute,
        window=window,
        substitute_window=substitute_window,
        package=package,
        contract=contract,
        session=session,
        session_date=session_date,
    )


@pytest.fixture
def service(db, notifier, refund_gateway):
    return RescheduleService(db, notifier=notifier, refund_gateway=refund_gateway)


def _move(world, **overrides):
    values = dict(
        session_id=world.session.id,
        requested_date=world.session_date + timedelta(days=1),
        start_time=NEW_START,
        end_time=NEW_END,
        reason="Exam week",
    )
    values.update(overrides)
    return RescheduleRequestCreate(**values)


def _events(notifier):
    return [c.args[0] for c in notifier.notify.call_args_list]


def _booked_on(db, tutor_id, day):
    return (
        db.query(Booking)
        .filter(
            Booking.tutor_id == tutor_id,
            Booking.session_date == day,
            Booking.status == BookingStatus.SCHEDULED.value,
        )
        .count()
    )


class TestCreateRequest:
    def test_creates_pending_request(self, service, world):
        request = service.create_request(world.parent.id, _move(world))

        assert request.status == RescheduleStatus.PENDING.value
        assert request.request_type == RescheduleRequestType.RESCHEDULE.value
        assert request.contract_id == world.contract.id
        assert request.parent_id == world.parent.id
        assert request.requested_tutor_id is None

    @pytest.mark.parametrize(
        "start, end, code",
        [
            (time(16, 15), time(17, 45), "INVALID_START_TIME"),
            (time(16, 0), time(17, 0), "INVALID_DURATION"),
            (time(17, 30), time(17, 0), "INVALID_TIME_RANGE"),
        ],
    )
    def test_slot_rules(self, service, world, start, end, code):
        with pytest.raises(ValidationException) as exc_info:
            service.create_request(world.parent.id, _move(world, start_time=start, end_time=end))
        assert exc_info.value.code == code

    def test_past_requested_date(self, service, world):
        with pytest.raises(ValidationException) as exc_info:
            service.create_request(
                world.parent.id, _move(world, requested_date=date.today() - timedelta(days=1))
            )
        assert exc_info.value.code == "INVALID_DATE"

    def test_unchanged_slot(self, service, world):
        with pytest.raises(ValidationException) as exc_info:
            service.create_request(
                world.parent.id,
                _move(world, requested_date=world.session_date, start_time=time(16, 0),
                      end_time=time(17, 30)),
            )
        assert exc_info.value.code == "UNCHANGED_SLOT"

    def test_ownership_and_existence(self, db, service, world):
        stranger = make_parent(db, "Stranger")

        with pytest.raises(ForbiddenException):
            service.create_request(stranger.id, _move(world))
        with pytest.raises(NotFoundException):
            service.create_request(world.parent.id, _move(world, session_id="missing"))

    def test_session_must_be_scheduled_and_upcoming(self, db, service, world):
        past = make_session(db, world.contract, date.today() - timedelta(days=1), window=world.window)
        with pytest.raises(InvalidStateException):
            service.create_request(world.parent.id, _move(world, session_id=past.id))

        world.session.status = BookingStatus.CANCELLED.value
        db.commit()
        with pytest.raises(InvalidStateException):
            service.create_request(world.parent.id, _move(world))

    def test_one_pending_request_per_contract(self, db, service, world):
        other_session = make_session(
            db, world.contract, world.session_date + timedelta(days=7), window=world.window
        )
        service.create_request(world.parent.id, _move(world))

        with pytest.raises(InvalidStateException):
            service.create_request(world.parent.id, _move(world, session_id=other_session.id))

    def test_contract_must_be_active_with_attempts_left(self, db, service, world):
        world.contract.reschedule_count = 0
        db.commit()
        with pytest.raises(InvalidStateException) as exc_info:
            service.create_request(world.parent.id, _move(world))
        assert exc_info.value.details["current_state"] == "no_attempts_left"

        world.contract.reschedule_count = 2
        world.contract.status = ContractStatus.COMPLETED.value
        db.commit()
        with pytest.raises(InvalidStateException):
            service.create_request(world.parent.id, _move(world))

    def test_requested_date_within_contract(self, service, world):
        with pytest.raises(InvalidStateException):
            service.create_request(
                world.parent.id,
                _move(world, requested_date=world.contract.end_date + timedelta(days=1)),
            )


class TestApprove:
    def test_moves_session_and_uses_an_attempt(self, db, service, world, notifier):
        request = service.create_request(world.parent.id, _move(world))

        approved = service.approve_request("staff-1", request.id, note="OK")

        assert approved.status == RescheduleStatus.APPROVED.value
        assert approved.staff_id == "staff-1"
        assert approved.staff_note == "OK"
        assert approved.processed_date is not None
        db.refresh(world.session)
        assert world.session.session_date == world.session_date + timedelta(days=1)
        assert (world.session.start_time, world.session.end_time) == (NEW_START, NEW_END)
        assert world.session.tutor_id == world.tutor.id
        db.refresh(world.contract)
        assert world.contract.reschedule_count == 1
        db.refresh(world.window)
        assert world.window.current_bookings == 1
        assert _events(notifier) == ["reschedule.approved", "reschedule.approved"]
        recipients = {c.args[1]["user_id"] for c in notifier.notify.call_args_list}
        assert recipients == {world.parent.id, world.tutor.id}

    def test_stale_requested_tutor_leaves_request_pending(self, db, service, world):
        request = service.create_request(
            world.parent.id, _move(world, requested_tutor_id=world.substitute.id)
        )
        # The substitute gets booked elsewhere after the request was filed
        other = make_contract(db, make_parent(db, "Other"), world.substitute)
        make_session(
            db, other, world.session_date + timedelta(days=1), start_time=time(18, 0),
            end_time=time(19, 30),
        )

        with pytest.raises(SchedulingConflictException):
            service.approve_request("staff-1", request.id)

        db.refresh(request)
        assert request.status == RescheduleStatus.PENDING.value
        assert request.staff_id is None
        db.refresh(world.session)
        assert world.session.session_date == world.session_date
        assert world.session.tutor_id == world.tutor.id
        db.refresh(world.substitute_window)
        assert world.substitute_window.current_bookings == 0

    def test_staff_picks_substitute_and_counters_follow(self, db, service, world):
        request = service.create_request(world.parent.id, _move(world))

        service.approve_request("staff-1", request.id, new_tutor_id=world.substitute.id)

        db.refresh(world.session)
        assert world.session.tutor_id == world.substitute.id
        assert world.session.availability_id == world.substitute_window.id
        db.refresh(world.window)
        db.refresh(world.substitute_window)
        assert world.window.current_bookings == 0
        assert world.substitute_window.current_bookings == 1
        db.refresh(request)
        assert request.requested_tutor_id == world.substitute.id

    def test_window_still_held_by_sibling_session(self, db, service, world):
        make_session(db, world.contract, world.session_date + timedelta(days=14), window=world.window)
        request = service.create_request(world.parent.id, _move(world))

        service.approve_request("staff-1", request.id, new_tutor_id=world.substitute.id)

        db.refresh(world.window)
        assert world.window.current_bookings == 1

    def test_full_window_of_new_tutor_conflicts(self, db, service, world):
        world.substitute_window.current_bookings = 1
        db.commit()
        request = service.create_request(world.parent.id, _move(world))

        with pytest.raises(SchedulingConflictException):
            service.approve_request("staff-1", request.id, new_tutor_id=world.substitute.id)

    def test_tutor_must_be_active(self, db, service, world):
        request = service.create_request(world.parent.id, _move(world))
        world.substitute.status = AccountStatus.INACTIVE.value
        db.commit()

        with pytest.raises(ValidationException):
            service.approve_request("staff-1", request.id, new_tutor_id=world.substitute.id)
        with pytest.raises(NotFoundException):
            service.approve_request("staff-1", request.id, new_tutor_id="missing")

    def test_terminal_requests_cannot_be_approved(self, service, world):
        request = service.create_request(world.parent.id, _move(world))
        service.approve_request("staff-1", request.id)

        with pytest.raises(InvalidStateException):
            service.approve_request("staff-1", request.id)
        with pytest.raises(NotFoundException):
            service.approve_request("staff-1", "missing")

    def test_notification_failure_does_not_undo_approval(self, db, service, world, notifier):
        notifier.notify.side_effect = RuntimeError("smtp down")
        request = service.create_request(world.parent.id, _move(world))

        approved = service.approve_request("staff-1", request.id)

        assert approved.status == RescheduleStatus.APPROVED.value
        db.refresh(world.session)
        assert world.session.session_date == world.session_date + timedelta(days=1)

    def test_second_contract_cannot_take_a_substitute_already_approved(self, db, service, world):
        other = make_contract(db, make_parent(db, "Binh"), make_tutor(db, "Hai"),
                              substitutes=(world.substitute,))
        other_session = make_session(db, other, world.session_date)
        slot_date = world.session_date + timedelta(days=1)
        first = make_request(db, world.session, world.contract, slot_date,
                             requested_tutor=world.substitute)
        second = make_request(db, other_session, other, slot_date, requested_tutor=world.substitute)
        # Both previews were taken before either approval
        for request in (first, second):
            previewed = service.get_available_substitutes(request.id, contract_substitutes_only=True)
            assert [c.tutor_id for c in previewed] == [world.substitute.id]

        service.approve_request("staff-1", first.id)
        with pytest.raises(SchedulingConflictException):
            service.approve_request("staff-2", second.id)

        db.refresh(second)
        assert second.status == RescheduleStatus.PENDING.value
        db.refresh(other_session)
        assert other_session.tutor_id == other.main_tutor_id
        assert other_session.session_date == world.session_date
        assert _booked_on(db, world.substitute.id, slot_date) == 1


class TestRejectAndCancel:
    def test_reject_keeps_parent_reason(self, db, service, world, notifier):
        request = service.create_request(world.parent.id, _move(world))

        rejected = service.reject_request("staff-1", request.id, "  Tutor unavailable ")

        assert rejected.status == RescheduleStatus.REJECTED.value
        assert rejected.staff_note == "Tutor unavailable"
        assert rejected.reason == "Exam week"
        assert _events(notifier) == ["reschedule.rejected"]
        db.refresh(world.session)
        assert world.session.session_date == world.session_date

    def test_reject_after_approval_changes_nothing(self, db, service, world):
        request = service.create_request(world.parent.id, _move(world))
        service.approve_request("staff-1", request.id, note="Approved")
        db.refresh(request)
        before = (request.status, request.staff_note, request.processed_date, request.reason)

        with pytest.raises(InvalidStateException):
            service.reject_request("staff-2", request.id, "Too late")

        db.refresh(request)
        assert (request.status, request.staff_note, request.processed_date, request.reason) == before
        assert request.staff_id == "staff-1"

    def test_reject_requires_reason(self, service, world):
        request = service.create_request(world.parent.id, _move(world))
        with pytest.raises(ValidationException):
            service.reject_request("staff-1", request.id, "   ")

    def test_parent_withdraws_pending_request(self, db, service, world):
        request = service.create_request(world.parent.id, _move(world))

        with pytest.raises(ForbiddenException):
            service.cancel_request(make_parent(db, "Stranger").id, request.id)

        cancelled = service.cancel_request(world.parent.id, request.id)
        assert cancelled.status == RescheduleStatus.CANCELLED.value

        with pytest.raises(InvalidStateException):
            service.cancel_request(world.parent.id, request.id)
        # A new request may now be filed for the contract
        service.create_request(world.parent.id, _move(world))

    def test_default_notifier_writes_to_the_services_database(self, db, refund_gateway, world):
        service = RescheduleService(db, refund_gateway=refund_gateway)
        request = service.create_request(world.parent.id, _move(world))

        service.reject_request("staff-1", request.id, "No tutor that week")

        row = db.query(Notification).one()
        assert row.user_id == world.parent.id
        assert row.event == "reschedule.rejected"
        assert row.title == "Reschedule request rejected"
        assert row.payload["request_id"] == request.id


class TestTutorReplacement:
    def test_replacement_needs_a_different_tutor(self, db, service, world):
        request = service.create_tutor_replacement_request(world.session.id, world.tutor.id, "Sick")
        assert request.request_type == RescheduleRequestType.TUTOR_REPLACEMENT.value
        assert request.requested_date == world.session_date
        assert request.parent_id == world.parent.id

        with pytest.raises(ValidationException) as exc_info:
            service.approve_request("staff-1", request.id)
        assert exc_info.value.code == "TUTOR_REQUIRED"
        with pytest.raises(ValidationException) as exc_info:
            service.approve_request("staff-1", request.id, new_tutor_id=world.tutor.id)
        assert exc_info.value.code == "SAME_TUTOR"

        service.approve_request("staff-1", request.id, new_tutor_id=world.substitute.id)
        db.refresh(world.session)
        db.refresh(world.contract)
        assert world.session.tutor_id == world.substitute.id
        assert world.session.session_date == world.session_date
        assert world.contract.reschedule_count == 2

    def test_only_the_sessions_tutor_may_ask(self, service, world):
        with pytest.raises(ForbiddenException):
            service.create_tutor_replacement_request(world.session.id, world.substitute.id)

    def test_one_pending_request_per_session(self, service, world):
        service.create_tutor_replacement_request(world.session.id, world.tutor.id)
        with pytest.raises(InvalidStateException):
            service.create_tutor_replacement_request(world.session.id, world.tutor.id)


class TestMakeup:
    def test_makeup_does_not_use_attempts(self, db, service, world):
        request = service.create_makeup_request(world.parent.id, _move(world))
        assert request.request_type == RescheduleRequestType.MAKEUP.value

        service.approve_request("staff-1", request.id)

        db.refresh(world.contract)
        assert world.contract.reschedule_count == 2

    def test_blocked_while_replacement_pending(self, db, service, world):
        make_request(
            db, world.session, world.contract, world.session_date,
            request_type=RescheduleRequestType.TUTOR_REPLACEMENT.value,
        )
        with pytest.raises(InvalidStateException):
            service.create_makeup_request(world.parent.id, _move(world))

    def test_not_on_the_date_the_tutor_was_away(self, db, service, world):
        make_request(
            db, world.session, world.contract, world.session_date,
            request_type=RescheduleRequestType.TUTOR_REPLACEMENT.value,
            status=RescheduleStatus.APPROVED.value,
        )
        with pytest.raises(ValidationException) as exc_info:
            service.create_makeup_request(
                world.parent.id, _move(world, requested_date=world.session_date)
            )
        assert exc_info.value.code == "MAKEUP_SAME_DATE"

        assert service.create_makeup_request(world.parent.id, _move(world)).id

    def test_one_pending_request_per_session(self, service, world):
        service.create_makeup_request(world.parent.id, _move(world))
        with pytest.raises(InvalidStateException):
            service.create_makeup_request(
                world.parent.id, _move(world, requested_date=world.session_date + timedelta(days=2))
            )


class TestSubstitutePreview:
    def test_current_tutor_is_excluded(self, db, service, world):
        outsider = make_tutor(db, "Outsider")
        make_window(db, outsider)
        request = service.create_request(world.parent.id, _move(world))

        everyone = service.get_available_substitutes(request.id)
        contract_only = service.get_available_substitutes(request.id, contract_substitutes_only=True)

        assert {c.tutor_id for c in everyone} == {world.substitute.id, outsider.id}
        assert [c.tutor_id for c in contract_only] == [world.substitute.id]

    def test_unknown_request(self, service):
        with pytest.raises(NotFoundException):
            service.get_available_substitutes("missing")


class TestCancelSessionAndRefund:
    def test_refund_is_package_share(self, db, service, world, refund_gateway, notifier):
        result = service.cancel_session_and_refund(world.session.id, actor_id="staff-1")

        assert result.success
        assert result.amount == Decimal("200000.00")
        refund_gateway.refund.assert_called_once_with(
            world.contract.id, world.session.id, Decimal("200000.00")
        )
        db.refresh(world.session)
        assert world.session.status == BookingStatus.CANCELLED.value
        assert world.session.cancelled_at is not None
        db.refresh(world.window)
        assert world.window.current_bookings == 0
        assert _events(notifier) == ["session.cancelled"]

    def test_linked_request_is_approved(self, db, service, world):
        request = service.create_request(world.parent.id, _move(world))

        service.cancel_session_and_refund(world.session.id, request.id, actor_id="staff-1")

        db.refresh(request)
        db.refresh(world.contract)
        assert request.status == RescheduleStatus.APPROVED.value
        assert request.staff_id == "staff-1"
        assert world.contract.reschedule_count == 1

    def test_failed_refund_rolls_everything_back(self, db, service, world, refund_gateway, notifier):
        refund_gateway.refund.side_effect = None
        refund_gateway.refund.return_value = RefundResult(success=False, message="Gateway down")
        request = service.create_request(world.parent.id, _move(world))

        with pytest.raises(ServiceException):
            service.cancel_session_and_refund(world.session.id, request.id)

        db.refresh(world.session)
        db.refresh(world.window)
        db.refresh(request)
        assert world.session.status == BookingStatus.SCHEDULED.value
        assert world.window.current_bookings == 1
        assert request.status == RescheduleStatus.PENDING.value
        notifier.notify.assert_not_called()

    def test_cannot_cancel_twice(self, service, world):
        service.cancel_session_and_refund(world.session.id)
        with pytest.raises(InvalidStateException):
            service.cancel_session_and_refund(world.session.id)

    def test_linked_request_must_match_session(self, db, service, world):
        other_session = make_session(
            db, world.contract, world.session_date + timedelta(days=7), window=world.window
        )
        request = make_request(db, other_session, world.contract, world.session_date + timedelta(days=8))

        with pytest.raises(ValidationException):
            service.cancel_session_and_refund(world.session.id, request.id)

    def test_wallet_is_credited_by_default(self, db, notifier, world):
        service = RescheduleService(db, notifier=notifier)

        result = service.cancel_session_and_refund(world.session.id)

        assert result.success
        assert result.transaction_id
        db.refresh(world.parent)
        assert Decimal(world.parent.wallet_balance) == Decimal("200000.00")
        txn = db.get(WalletTransaction, result.transaction_id)
        assert txn.session_id == world.session.id
        assert Decimal(txn.amount) == Decimal("200000.00")


class TestRefundAmount:
    def test_single_child(self, db, world):
        assert compute_refund_amount(world.contract, world.package) == Decimal("200000.00")

    def test_twin_contract_uses_multiplier(self, db, world):
        world.contract.second_child_id = "child-2"
        assert compute_refund_amount(world.contract, world.package) == Decimal("320000.00")

    def test_no_package(self, world):
        assert compute_refund_amount(world.contract, None) == Decimal("0")

    def test_rounds_to_cents(self, db, world):
        package = make_package(db, price=Decimal("100000"), session_count=3)
        assert compute_refund_amount(world.contract, package) == Decimal("33333.33")


class TestReads:
    def test_parents_see_only_their_requests(self, db, service, world):
        request = service.create_request(world.parent.id, _move(world))

        assert service.get_request(request.id, world.parent.id, RoleName.PARENT.value).id == request.id
        assert service.get_request(request.id, "staff-1", RoleName.STAFF.value).status == "pending"
        with pytest.raises(ForbiddenException):
            service.get_request(request.id, "someone-else", RoleName.PARENT.value)

    def test_list_requests_filters(self, service, world):
        first = service.create_request(world.parent.id, _move(world))
        service.reject_request("staff-1", first.id, "No")
        second = service.create_request(world.parent.id, _move(world))

        pending = service.list_requests(parent_id=world.parent.id, status="pending")
        assert [r.id for r in pending] == [second.id]
        assert len(service.list_requests(parent_id=world.parent.id)) == 2
        assert service.list_requests(parent_id="nobody") == []
        with pytest.raises(ValidationException):
            service.list_requests(status="weird")


def _hold_slot_check_open(matcher, seconds=0.2):
    """Keep the approval transaction open after the slot check so approvals overlap."""
    evaluate = matcher.evaluate_tutor

    def delayed(*args, **kwargs):
        candidate = evaluate(*args, **kwargs)
        sleep(seconds)
        return candidate

    matcher.evaluate_tutor = delayed


class TestConcurrentApproval:
    @pytest.fixture
    def file_sessions(self, tmp_path):
        # A file database gives each thread its own connection
        engine = build_engine(f"sqlite:///{tmp_path / 'scheduling.db'}")
        init_db(bind=engine)
        yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
        engine.dispose()

    def test_two_staff_approving_the_same_slot_book_it_once(self, file_sessions):
        slot_date = date.today() + timedelta(days=8)
        with file_sessions() as setup:
            substitute = make_tutor(setup, "Minh")
            make_window(setup, substitute, max_concurrent_bookings=2)
            request_ids = []
            for name in ("Hoa", "Binh"):
                contract = make_contract(
                    setup, make_parent(setup, name), make_tutor(setup, f"Tutor of {name}"),
                    substitutes=(substitute,),
                )
                session = make_session(setup, contract, date.today() + timedelta(days=7))
                request = make_request(setup, session, contract, slot_date, requested_tutor=substitute)
                request_ids.append(request.id)

        barrier = threading.Barrier(2)
        outcomes = {}

        def approve(request_id):
            with file_sessions() as db:
                service = RescheduleService(db, notifier=Mock(), refund_gateway=Mock())
                _hold_slot_check_open(service.matcher)
                barrier.wait(timeout=10)
                try:
                    service.approve_request("staff-1", request_id)
                    outcomes[request_id] = "approved"
                except SchedulingConflictException:
                    outcomes[request_id] = "conflict"
                except Exception as exc:
                    outcomes[request_id] = type(exc).__name__

        threads = [threading.Thread(target=approve, args=(rid,)) for rid in request_ids]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert sorted(outcomes.values()) == ["approved", "conflict"]
        loser = next(rid for rid, outcome in outcomes.items() if outcome == "conflict")
        with file_sessions() as db:
            assert _booked_on(db, substitute.id, slot_date) == 1
            assert db.get(RescheduleRequest, loser).status == RescheduleStatus.PENDING.value


class TestChangeSessionTutor:
    def test_substitute_takes_over_and_counters_follow(self, db, service, world, notifier):
        changed = service.change_session_tutor("staff-1", world.session.id, world.substitute.id)

        assert changed.tutor_id == world.substitute.id
        assert changed.availability_id == world.substitute_window.id
        assert (changed.session_date, changed.start_time) == (world.session_date, time(16, 0))
        db.refresh(world.window)
        db.refresh(world.substitute_window)
        assert world.window.current_bookings == 0
        assert world.substitute_window.current_bookings == 1
        assert _events(notifier) == ["session.tutor_changed", "session.tutor_changed"]
        recipients = {c.args[1]["user_id"] for c in notifier.notify.call_args_list}
        assert recipients == {world.parent.id, world.substitute.id}

    def test_outside_tutor_only_from_the_open_pool(self, db, service, world):
        outsider = make_tutor(db, "Outsider")
        outsider_window = make_window(db, outsider)

        with pytest.raises(ValidationException) as exc_info:
            service.change_session_tutor("staff-1", world.session.id, outsider.id)
        assert exc_info.value.code == "TUTOR_NOT_IN_CONTRACT"

        service.change_session_tutor(
            "staff-1", world.session.id, outsider.id, contract_tutors_only=False
        )
        db.refresh(world.session)
        assert world.session.tutor_id == outsider.id
        db.refresh(outsider_window)
        assert outsider_window.current_bookings == 1

    def test_busy_tutor_leaves_session_untouched(self, db, service, world):
        world.substitute_window.current_bookings = 1
        db.commit()

        with pytest.raises(SchedulingConflictException):
            service.change_session_tutor("staff-1", world.session.id, world.substitute.id)

        db.refresh(world.session)
        assert world.session.tutor_id == world.tutor.id
        assert world.session.availability_id == world.window.id
        db.refresh(world.window)
        assert world.window.current_bookings == 1

    def test_rules(self, db, service, world):
        completed = make_session(db, world.contract, world.session_date + timedelta(days=7),
                                 status=BookingStatus.COMPLETED.value)

        with pytest.raises(ValidationException) as exc_info:
            service.change_session_tutor("staff-1", world.session.id, world.tutor.id)
        assert exc_info.value.code == "SAME_TUTOR"
        with pytest.raises(InvalidStateException):
            service.change_session_tutor("staff-1", completed.id, world.substitute.id)
        with pytest.raises(NotFoundException):
            service.change_session_tutor("staff-1", "missing", world.substitute.id)

        world.substitute.status = AccountStatus.INACTIVE.value
        db.commit()
        with pytest.raises(ValidationException) as exc_info:
            service.change_session_tutor("staff-1", world.session.id, world.substitute.id)
        assert exc_info.value.code == "TUTOR_NOT_ACTIVE"


class TestUpdateSessionStatus:
    @pytest.fixture
    def today_session(self, db, world):
        session = make_session(db, world.contract, date.today(), window=world.window)
        return session

    def test_tutor_completes_todays_session(self, db, service, world, today_session):
        updated = service.update_session_status(today_session.id, world.tutor.id, " Completed ")

        assert updated.status == BookingStatus.COMPLETED.value
        # The contract still holds the window through its other session
        db.refresh(world.window)
        assert world.window.current_bookings == 1

    def test_last_holder_gives_the_window_back(self, db, service, world):
        other = make_contract(db, make_parent(db, "Binh"), world.tutor)
        session = make_session(db, other, date.today(), window=world.window)
        world.window.current_bookings = 2
        db.commit()

        updated = service.update_session_status(session.id, world.tutor.id, "cancelled")

        assert updated.status == BookingStatus.CANCELLED.value
        assert updated.cancelled_at is not None
        db.refresh(world.window)
        assert world.window.current_bookings == 1

    def test_final_statuses_stay_final(self, service, world, today_session):
        service.update_session_status(today_session.id, world.tutor.id, "completed")

        again = service.update_session_status(today_session.id, world.tutor.id, "completed")
        assert again.status == BookingStatus.COMPLETED.value
        with pytest.raises(InvalidStateException):
            service.update_session_status(today_session.id, world.tutor.id, "scheduled")

    def test_only_the_assigned_tutor_on_the_day(self, service, world, today_session):
        with pytest.raises(ForbiddenException):
            service.update_session_status(today_session.id, world.substitute.id, "completed")
        with pytest.raises(InvalidStateException) as exc_info:
            service.update_session_status(world.session.id, world.tutor.id, "completed")
        assert exc_info.value.details["current_state"] == "not_today"
        with pytest.raises(ValidationException) as exc_info:
            service.update_session_status(today_session.id, world.tutor.id, "processing")
        assert exc_info.value.code == "INVALID_STATUS"


class TestReplacementTutors:
    def test_free_contract_substitutes_come_first(self, db, service, world):
        star = make_tutor(db, "Star")
        make_window(db, star)
        add_rating(db, star, 5, 5)

        found = service.get_replacement_tutors(world.session.id)

        assert [c.tutor_id for c in found] == [world.substitute.id]
        assert found[0].is_contract_substitute

    def test_open_pool_by_rating_when_substitutes_are_busy(self, db, service, world):
        world.substitute_window.current_bookings = 1
        db.commit()
        good = make_tutor(db, "Good")
        better = make_tutor(db, "Better")
        make_window(db, good)
        make_window(db, better)
        add_rating(db, good, 3)
        add_rating(db, better, 5)

        found = service.get_replacement_tutors(world.session.id)

        assert [c.tutor_id for c in found] == [better.id, good.id]
        assert not any(c.is_contract_substitute for c in found)

    def test_closed_sessions_are_refused(self, db, service, world):
        cancelled = make_session(db, world.contract, world.session_date + timedelta(days=7),
                                 status=BookingStatus.CANCELLED.value)

        with pytest.raises(InvalidStateException):
            service.get_replacement_tutors(cancelled.id)
        with pytest.raises(NotFoundException):
            service.get_replacement_tutors("missing")
