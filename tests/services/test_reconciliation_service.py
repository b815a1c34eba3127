"""
ReconciliationService tests.

Tests cover:
- Settled payments move to reconciled with the bank date stamped
- Unsettled, refunded and already reconciled payments are rejected
- A reconciled payment is closed to attribution and manual allocation
"""

from datetime import date
from decimal import Decimal

import pytest

from attribution_kernel.domain.dtos import ManualAllocationLine
from attribution_kernel.exceptions import InvalidPaymentStateError
from attribution_kernel.models.audit_event import AuditAction
from attribution_kernel.models.payment import PaymentStatus
from attribution_kernel.services.attribution_orchestrator import AttributionOrchestrator
from attribution_kernel.services.manual_allocation_service import ManualAllocationHandler
from attribution_kernel.services.reconciliation_service import ReconciliationService
from attribution_kernel.services.refund_service import RefundService


@pytest.fixture
def reconciliation_service(session, deterministic_clock):
    return ReconciliationService(session, deterministic_clock)


@pytest.fixture
def orchestrator(session, deterministic_clock):
    return AttributionOrchestrator(session, deterministic_clock)


@pytest.fixture
def enrollment(make_enrollment, family):
    return make_enrollment(family, "700.00")


@pytest.fixture
def allocated_payment(orchestrator, make_payment, family, enrollment):
    payment = make_payment(family, "700.00")
    orchestrator.attribute(payment)
    assert payment.status == PaymentStatus.ALLOCATED
    return payment


class TestMarkReconciled:
    def test_settled_payment_reconciled(
        self, reconciliation_service, allocated_payment, enrollment, test_actor_id
    ):
        reconciliation_service.mark_reconciled(allocated_payment, test_actor_id)

        assert allocated_payment.status == PaymentStatus.RECONCILED
        assert allocated_payment.reconciled_to_bank is True
        assert allocated_payment.reconciled_date == date(2024, 9, 15)
        assert allocated_payment.updated_by_id == test_actor_id
        assert enrollment.total_paid == Decimal("700.00")

    def test_explicit_bank_date_kept(
        self, reconciliation_service, allocated_payment, test_actor_id
    ):
        reconciliation_service.mark_reconciled(
            allocated_payment, test_actor_id, reconciled_on=date(2024, 9, 9)
        )

        assert allocated_payment.reconciled_date == date(2024, 9, 9)

    def test_reconciliation_is_audited(
        self, reconciliation_service, auditor_service, allocated_payment, test_actor_id
    ):
        reconciliation_service.mark_reconciled(allocated_payment, test_actor_id)

        trace = auditor_service.get_trace("Payment", allocated_payment.id)
        assert trace.last_action == AuditAction.PAYMENT_RECONCILED
        assert trace.entries[-1].payload == {
            "reconciled_date": "2024-09-15",
            "net_amount": "700.00",
        }
        assert auditor_service.validate_chain() is True

    def test_manually_matched_payment_can_be_reconciled(
        self, session, deterministic_clock, reconciliation_service, make_payment, family,
        enrollment, test_actor_id,
    ):
        payment = make_payment(family, "650.00")
        ManualAllocationHandler(session, deterministic_clock).manually_allocate(
            payment,
            [ManualAllocationLine(enrollment_id=enrollment.id, amount=Decimal("650.00"))],
            test_actor_id,
        )

        reconciliation_service.mark_reconciled(payment, test_actor_id)

        assert payment.status == PaymentStatus.RECONCILED


class TestRejected:
    def test_pending_suggestion_rejected(
        self, reconciliation_service, orchestrator, make_enrollment, make_payment, family,
        test_actor_id,
    ):
        make_enrollment(family, "1200.00")
        make_enrollment(family, "400.00")
        payment = make_payment(family, "1000.00")
        orchestrator.attribute(payment)

        with pytest.raises(InvalidPaymentStateError) as exc_info:
            reconciliation_service.mark_reconciled(payment, test_actor_id)

        assert exc_info.value.operation == "reconcile"
        assert payment.status == PaymentStatus.PENDING
        assert payment.reconciled_to_bank is False

    def test_refunded_payment_rejected(
        self, session, deterministic_clock, reconciliation_service, allocated_payment,
        test_actor_id,
    ):
        RefundService(session, deterministic_clock).refund(
            allocated_payment, Decimal("700.00"), "duplicate charge", test_actor_id
        )

        with pytest.raises(InvalidPaymentStateError):
            reconciliation_service.mark_reconciled(allocated_payment, test_actor_id)

    def test_second_reconciliation_rejected(
        self, reconciliation_service, auditor_service, allocated_payment, test_actor_id
    ):
        reconciliation_service.mark_reconciled(allocated_payment, test_actor_id)

        with pytest.raises(InvalidPaymentStateError) as exc_info:
            reconciliation_service.mark_reconciled(
                allocated_payment, test_actor_id, reconciled_on=date(2024, 10, 1)
            )

        assert exc_info.value.current_status == "reconciled"
        assert allocated_payment.reconciled_date == date(2024, 9, 15)
        trace = auditor_service.get_trace("Payment", allocated_payment.id)
        assert trace.actions.count(AuditAction.PAYMENT_RECONCILED) == 1

    def test_rejection_is_logged(
        self, reconciliation_service, captured_logs, make_payment, family, test_actor_id
    ):
        payment = make_payment(family, "700.00")

        with pytest.raises(InvalidPaymentStateError):
            reconciliation_service.mark_reconciled(payment, test_actor_id)

        rejected = [r for r in captured_logs() if r["message"] == "reconciliation_rejected"]
        assert rejected[0]["payment_id"] == str(payment.id)
        assert rejected[0]["status"] == "pending"


class TestReconciledIsClosed:
    def test_manual_allocation_rejected(
        self, session, deterministic_clock, reconciliation_service, allocated_payment,
        enrollment, test_actor_id,
    ):
        reconciliation_service.mark_reconciled(allocated_payment, test_actor_id)
        handler = ManualAllocationHandler(session, deterministic_clock)

        with pytest.raises(InvalidPaymentStateError):
            handler.manually_allocate(
                allocated_payment,
                [ManualAllocationLine(enrollment_id=enrollment.id, amount=Decimal("700.00"))],
                test_actor_id,
            )

        assert enrollment.total_paid == Decimal("700.00")

    def test_attribution_rejected(
        self, orchestrator, reconciliation_service, allocated_payment, test_actor_id
    ):
        reconciliation_service.mark_reconciled(allocated_payment, test_actor_id)

        with pytest.raises(InvalidPaymentStateError):
            orchestrator.attribute(allocated_payment)
