"""
RefundService tests.

Tests cover:
- Full refunds reverse the payment's ledger slots
- Partial refunds leave the ledger alone
- Amount bounds and the one-refund-per-payment rule
- Refunds are status transitions, never deletes
"""

from decimal import Decimal

import pytest

from attribution_kernel.exceptions import (
    ImmutabilityViolationError,
    InvalidPaymentStateError,
    InvalidRefundError,
)
from attribution_kernel.models.audit_event import AuditAction
from attribution_kernel.models.payment import PaymentStatus
from attribution_kernel.services.attribution_orchestrator import AttributionOrchestrator
from attribution_kernel.services.refund_service import RefundService


@pytest.fixture
def refund_service(session, deterministic_clock):
    return RefundService(session, deterministic_clock)


@pytest.fixture
def enrollment(make_enrollment, family):
    return make_enrollment(family, "700.00", total_owed="700.00")


@pytest.fixture
def allocated_payment(session, deterministic_clock, make_payment, family, enrollment):
    payment = make_payment(family, "700.00")
    AttributionOrchestrator(session, deterministic_clock).attribute(payment)
    assert payment.status == PaymentStatus.ALLOCATED
    return payment


class TestFullRefund:
    def test_full_refund_reverses_ledger(
        self, refund_service, ledger_service, allocated_payment, enrollment, test_actor_id
    ):
        refund_service.refund(
            allocated_payment, Decimal("700.00"), "duplicate charge", test_actor_id
        )

        assert allocated_payment.status == PaymentStatus.REFUNDED
        assert allocated_payment.refund_amount == Decimal("700.00")
        assert allocated_payment.refund_reason == "duplicate charge"
        assert enrollment.total_paid == Decimal("0.00")
        assert enrollment.total_owed == Decimal("700.00")
        postings = ledger_service.postings_for_payment(allocated_payment.id)
        assert all(p.is_reversed for p in postings)

    def test_refund_date_from_clock(self, refund_service, allocated_payment, test_actor_id):
        refund_service.refund(allocated_payment, Decimal("700.00"), "withdrawal", test_actor_id)

        assert allocated_payment.refund_date.isoformat() == "2024-09-15"

    def test_refund_is_audited(
        self, refund_service, auditor_service, allocated_payment, test_actor_id
    ):
        refund_service.refund(allocated_payment, Decimal("700.00"), "withdrawal", test_actor_id)

        trace = auditor_service.get_trace("Payment", allocated_payment.id)
        assert trace.last_action == AuditAction.PAYMENT_REFUNDED
        payload = trace.entries[-1].payload
        assert payload["full_refund"] is True
        assert payload["reversed_posting_count"] == 1


class TestPartialRefund:
    def test_partial_refund_keeps_ledger(
        self, refund_service, allocated_payment, enrollment, test_actor_id
    ):
        refund_service.refund(allocated_payment, Decimal("100.00"), "late fee waived", test_actor_id)

        assert allocated_payment.status == PaymentStatus.REFUNDED
        assert allocated_payment.refund_amount == Decimal("100.00")
        assert enrollment.total_paid == Decimal("700.00")


class TestRefundErrors:
    @pytest.mark.parametrize("amount", ["0", "-5.00", "700.01"])
    def test_amount_out_of_range(self, refund_service, allocated_payment, test_actor_id, amount):
        with pytest.raises(InvalidRefundError) as exc_info:
            refund_service.refund(allocated_payment, Decimal(amount), "oops", test_actor_id)

        assert exc_info.value.code == "INVALID_REFUND"
        assert allocated_payment.status == PaymentStatus.ALLOCATED

    def test_second_refund_rejected(self, refund_service, allocated_payment, test_actor_id):
        refund_service.refund(allocated_payment, Decimal("100.00"), "first", test_actor_id)

        with pytest.raises(InvalidPaymentStateError):
            refund_service.refund(allocated_payment, Decimal("100.00"), "second", test_actor_id)

        assert allocated_payment.refund_amount == Decimal("100.00")

    def test_refunded_payment_cannot_be_reattributed(
        self, refund_service, session, deterministic_clock, allocated_payment, test_actor_id
    ):
        refund_service.refund(allocated_payment, Decimal("700.00"), "withdrawal", test_actor_id)

        with pytest.raises(InvalidPaymentStateError):
            AttributionOrchestrator(session, deterministic_clock).attribute(allocated_payment)

    def test_payment_cannot_be_deleted(self, session, allocated_payment):
        session.delete(allocated_payment)

        with pytest.raises(ImmutabilityViolationError):
            session.flush()

        session.rollback()
