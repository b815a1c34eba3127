"""
AttributionOrchestrator tests.

Tests cover:
- Exact match, prepayment and proportional fallback against a real session
- Ledger side effects: current period only, nothing for suggestions
- Unmatched families and withdrawn enrollments
- Failure handling: ledger conflicts leave the payment unmatched/failed
- Preconditions: settled payments are not re-attributed
- Audit and structured logging of each run
"""

from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select, text

from attribution_kernel.domain.values import (
    AttributionMethod,
    AttributionStatus,
    BillingPeriod,
)
from attribution_kernel.exceptions import (
    InvalidPaymentStateError,
    LedgerWriteConflictError,
)
from attribution_kernel.models.audit_event import AuditAction
from attribution_kernel.models.enrollment import EnrollmentStatus
from attribution_kernel.models.ledger_posting import EnrollmentPaymentPosting
from attribution_kernel.models.payment import PaymentStatus
from attribution_kernel.services.attribution_orchestrator import AttributionOrchestrator
from attribution_kernel.services.auditor_service import AuditorService
from attribution_kernel.services.enrollment_ledger import EnrollmentLedgerService


@pytest.fixture
def orchestrator(session, deterministic_clock):
    return AttributionOrchestrator(session, deterministic_clock)


def _postings(session, payment):
    return list(
        session.execute(
            select(EnrollmentPaymentPosting).where(
                EnrollmentPaymentPosting.payment_id == payment.id
            )
        ).scalars().all()
    )


class TestExactMatch:
    """A payment equal to the family's monthly tuition."""

    def test_single_enrollment_exact_amount(
        self, orchestrator, session, make_enrollment, make_payment, family
    ):
        enrollment = make_enrollment(family, "700.00")
        payment = make_payment(family, "700.00")

        orchestrator.attribute(payment)

        assert payment.attribution_status == AttributionStatus.AUTO_MATCHED
        assert payment.attribution_method == AttributionMethod.EXACT_MATCH
        assert payment.attribution_confidence == Decimal("0.99")
        assert payment.status == PaymentStatus.ALLOCATED
        assert payment.processed_date is not None
        assert len(payment.allocations) == 1
        assert payment.allocations[0].amount == Decimal("700.00")
        assert payment.allocations[0].period == BillingPeriod(2024, 9)
        assert enrollment.total_paid == Decimal("700.00")
        assert len(_postings(session, payment)) == 1

    def test_fees_are_excluded_from_the_match(
        self, orchestrator, make_enrollment, make_payment, family
    ):
        enrollment = make_enrollment(family, "700.00")
        payment = make_payment(family, "721.00", fees="21.00")

        orchestrator.attribute(payment)

        assert payment.attribution_method == AttributionMethod.EXACT_MATCH
        assert payment.allocated_total == Decimal("700.00")
        assert enrollment.total_paid == Decimal("700.00")

    def test_two_enrollments_exact_total(
        self, orchestrator, make_enrollment, make_payment, family
    ):
        first = make_enrollment(family, "800.00")
        second = make_enrollment(family, "400.00")
        payment = make_payment(family, "1200.00")

        orchestrator.attribute(payment)

        assert payment.attribution_method == AttributionMethod.EXACT_MATCH
        assert sorted(a.amount for a in payment.allocations) == [
            Decimal("400.00"),
            Decimal("800.00"),
        ]
        assert first.total_paid == Decimal("800.00")
        assert second.total_paid == Decimal("400.00")


class TestPrepayment:
    """A whole multiple of the monthly total."""

    def test_three_months_for_two_students(
        self, orchestrator, session, make_enrollment, make_payment, family
    ):
        first = make_enrollment(family, "800.00")
        second = make_enrollment(family, "400.00")
        payment = make_payment(family, "3600.00")

        orchestrator.attribute(payment)

        assert payment.attribution_status == AttributionStatus.AUTO_MATCHED
        assert payment.attribution_method == AttributionMethod.AMOUNT_MATCH
        assert payment.attribution_confidence == Decimal("0.90")
        assert len(payment.allocations) == 6
        assert {a.period for a in payment.allocations} == {
            BillingPeriod(2024, 9),
            BillingPeriod(2024, 10),
            BillingPeriod(2024, 11),
        }
        assert payment.allocated_total == Decimal("3600.00")

        # Only the current month reaches the ledger
        postings = _postings(session, payment)
        assert len(postings) == 2
        assert {(p.period_year, p.period_month) for p in postings} == {(2024, 9)}
        assert first.total_paid == Decimal("800.00")
        assert second.total_paid == Decimal("400.00")

    def test_explicit_anchor_date(
        self, orchestrator, make_enrollment, make_payment, family
    ):
        make_enrollment(family, "300.00")
        make_enrollment(family, "200.00")
        payment = make_payment(family, "1500.00")

        orchestrator.attribute(payment, anchor_date=date(2024, 12, 3))

        assert payment.attribution_method == AttributionMethod.AMOUNT_MATCH
        assert len(payment.allocations) == 6
        assert sorted({str(a.period) for a in payment.allocations}) == [
            "2024-12",
            "2025-01",
            "2025-02",
        ]


class TestProportionalFallback:
    """Amounts that match nothing are split as a suggestion."""

    def test_split_by_tuition_needs_review(
        self, orchestrator, session, make_enrollment, make_payment, family
    ):
        first = make_enrollment(family, "1200.00")
        second = make_enrollment(family, "400.00")
        payment = make_payment(family, "1000.00")

        orchestrator.attribute(payment)

        assert payment.attribution_status == AttributionStatus.NEEDS_REVIEW
        assert payment.attribution_method is None
        assert payment.attribution_confidence == Decimal("0.50")
        assert payment.status == PaymentStatus.PENDING
        amounts = {a.enrollment_id: a.amount for a in payment.allocations}
        assert amounts == {first.id: Decimal("750.00"), second.id: Decimal("250.00")}
        assert all(not a.confirmed for a in payment.allocations)
        assert all(a.note for a in payment.allocations)

        assert _postings(session, payment) == []
        assert first.total_paid == Decimal("0")
        assert second.total_paid == Decimal("0")

    def test_needs_review_can_be_rerun(
        self, orchestrator, make_enrollment, make_payment, family
    ):
        make_enrollment(family, "1200.00")
        make_enrollment(family, "400.00")
        payment = make_payment(family, "1000.00")
        orchestrator.attribute(payment)

        third = make_enrollment(family, "400.00")
        orchestrator.attribute(payment)

        assert payment.attribution_status == AttributionStatus.NEEDS_REVIEW
        assert len(payment.allocations) == 3
        assert [a.position for a in payment.allocations] == [0, 1, 2]
        assert third.id in {a.enrollment_id for a in payment.allocations}
        assert payment.allocated_total == Decimal("1000.00")


class TestUnmatched:
    """No active enrollments: unmatched, no exception, no ledger writes."""

    def test_family_without_enrollments(
        self, orchestrator, session, make_payment, family
    ):
        payment = make_payment(family, "700.00")

        orchestrator.attribute(payment)

        assert payment.attribution_status == AttributionStatus.UNMATCHED
        assert payment.attribution_method is None
        assert payment.attribution_confidence == Decimal("0")
        assert payment.allocations == []
        assert payment.status == PaymentStatus.PENDING
        assert _postings(session, payment) == []

    def test_withdrawn_enrollments_are_ignored(
        self, orchestrator, make_enrollment, make_payment, family
    ):
        withdrawn = make_enrollment(family, "700.00", status=EnrollmentStatus.WITHDRAWN)
        payment = make_payment(family, "700.00")

        orchestrator.attribute(payment)

        assert payment.attribution_status == AttributionStatus.UNMATCHED
        assert withdrawn.total_paid == Decimal("0")

    def test_other_family_enrollments_are_never_used(
        self, orchestrator, make_family, make_enrollment, make_payment
    ):
        payer = make_family("Okafor")
        neighbour = make_family("Lindqvist")
        make_enrollment(neighbour, "700.00")
        payment = make_payment(payer, "700.00")

        orchestrator.attribute(payment)

        assert payment.attribution_status == AttributionStatus.UNMATCHED


class TestPreconditions:
    """Settled payments are not re-attributed."""

    def test_allocated_payment_rejected(
        self, orchestrator, make_enrollment, make_payment, family
    ):
        make_enrollment(family, "700.00")
        payment = make_payment(family, "700.00")
        orchestrator.attribute(payment)

        with pytest.raises(InvalidPaymentStateError) as exc_info:
            orchestrator.attribute(payment)

        assert exc_info.value.code == "INVALID_PAYMENT_STATE"
        assert payment.status == PaymentStatus.ALLOCATED

    def test_replaying_an_allocated_payment_does_not_double_credit(
        self, orchestrator, make_enrollment, make_payment, family
    ):
        enrollment = make_enrollment(family, "700.00")
        payment = make_payment(family, "700.00")
        orchestrator.attribute(payment)

        with pytest.raises(InvalidPaymentStateError):
            orchestrator.attribute(payment)

        assert enrollment.total_paid == Decimal("700.00")


class TestFailureHandling:
    """A failed run leaves the payment unmatched/failed and re-raises."""

    def test_ledger_conflict_marks_payment_failed(
        self, orchestrator, session, monkeypatch, make_enrollment, make_payment, family
    ):
        enrollment = make_enrollment(family, "700.00")
        payment = make_payment(family, "700.00")

        def _conflict(self, enrollment_id, *args, **kwargs):
            raise LedgerWriteConflictError(str(enrollment_id), 1)

        monkeypatch.setattr(EnrollmentLedgerService, "record_payment", _conflict)

        with pytest.raises(LedgerWriteConflictError):
            orchestrator.attribute(payment)

        assert payment.attribution_status == AttributionStatus.UNMATCHED
        assert payment.attribution_confidence == Decimal("0")
        assert payment.status == PaymentStatus.FAILED
        assert payment.allocations == []
        assert payment.attribution_error.startswith("LedgerWriteConflictError")
        assert _postings(session, payment) == []
        assert enrollment.total_paid == Decimal("0")

    def test_failed_payment_can_be_retried(
        self, orchestrator, monkeypatch, make_enrollment, make_payment, family
    ):
        enrollment = make_enrollment(family, "700.00")
        payment = make_payment(family, "700.00")

        def _conflict(self, enrollment_id, *args, **kwargs):
            raise LedgerWriteConflictError(str(enrollment_id), 1)

        monkeypatch.setattr(EnrollmentLedgerService, "record_payment", _conflict)
        with pytest.raises(LedgerWriteConflictError):
            orchestrator.attribute(payment)
        monkeypatch.undo()

        orchestrator.attribute(payment)

        assert payment.status == PaymentStatus.ALLOCATED
        assert payment.attribution_status == AttributionStatus.AUTO_MATCHED
        assert payment.attribution_error is None
        assert enrollment.total_paid == Decimal("700.00")

    def test_stale_enrollment_version_is_a_conflict(
        self, orchestrator, session, make_enrollment, make_payment, family
    ):
        enrollment = make_enrollment(family, "700.00")
        payment = make_payment(family, "700.00")

        # Another writer bumps the version behind the session's back
        session.execute(
            text("UPDATE enrollments SET version = version + 1 WHERE id = :id"),
            {"id": str(enrollment.id)},
        )

        with pytest.raises(LedgerWriteConflictError):
            orchestrator.attribute(payment)

        assert payment.status == PaymentStatus.FAILED
        assert payment.attribution_status == AttributionStatus.UNMATCHED
        assert _postings(session, payment) == []

    def test_original_error_survives_failed_failure_audit(
        self, orchestrator, monkeypatch, captured_logs, make_enrollment, make_payment, family
    ):
        make_enrollment(family, "700.00")
        payment = make_payment(family, "700.00")

        def _conflict(self, enrollment_id, *args, **kwargs):
            raise LedgerWriteConflictError(str(enrollment_id), 1)

        def _audit_down(self, *args, **kwargs):
            raise RuntimeError("audit store unavailable")

        monkeypatch.setattr(EnrollmentLedgerService, "record_payment", _conflict)
        monkeypatch.setattr(AuditorService, "record_attribution_failed", _audit_down)

        with pytest.raises(LedgerWriteConflictError):
            orchestrator.attribute(payment)

        records = captured_logs()
        not_recorded = [
            r for r in records if r["message"] == "attribution_failure_not_recorded"
        ]
        assert len(not_recorded) == 1
        assert not_recorded[0]["level"] == "CRITICAL"
        assert not_recorded[0]["error_type"] == "LedgerWriteConflictError"
        assert not_recorded[0]["exc_type"] == "RuntimeError"
        failed = [r for r in records if r["message"] == "attribution_failed"]
        assert failed[0]["exc_code"] == "LEDGER_WRITE_CONFLICT"


class TestAuditAndLogging:
    """Every run is audited and logged with its correlation context."""

    def test_success_is_audited(
        self, orchestrator, auditor_service, make_enrollment, make_payment, family
    ):
        make_enrollment(family, "700.00")
        payment = make_payment(family, "700.00")

        orchestrator.attribute(payment)

        trace = auditor_service.get_trace("Payment", payment.id)
        assert trace.actions == (
            AuditAction.PAYMENT_RECEIVED,
            AuditAction.PAYMENT_ATTRIBUTED,
        )
        attributed = trace.entries[-1].payload
        assert attributed["attribution_status"] == "auto-matched"
        assert attributed["anchor_period"] == "2024-09"
        assert [a["amount"] for a in attributed["allocations"]] == ["700.00"]
        assert auditor_service.validate_chain() is True

    def test_prepaid_periods_are_in_the_audit_payload(
        self, orchestrator, auditor_service, make_enrollment, make_payment, family
    ):
        make_enrollment(family, "800.00")
        make_enrollment(family, "400.00")
        payment = make_payment(family, "3600.00")

        orchestrator.attribute(payment)

        attributed = auditor_service.get_trace("Payment", payment.id).entries[-1].payload
        assert attributed["allocation_count"] == 6
        assert attributed["ledger_write_count"] == 2
        assert sorted({a["period"] for a in attributed["allocations"]}) == [
            "2024-09",
            "2024-10",
            "2024-11",
        ]

    def test_failure_is_audited(
        self, orchestrator, auditor_service, monkeypatch, make_enrollment, make_payment, family
    ):
        make_enrollment(family, "700.00")
        payment = make_payment(family, "700.00")

        def _conflict(self, enrollment_id, *args, **kwargs):
            raise LedgerWriteConflictError(str(enrollment_id), 1)

        monkeypatch.setattr(EnrollmentLedgerService, "record_payment", _conflict)
        with pytest.raises(LedgerWriteConflictError):
            orchestrator.attribute(payment)

        trace = auditor_service.get_trace("Payment", payment.id)
        assert trace.last_action == AuditAction.ATTRIBUTION_FAILED
        assert AuditAction.PAYMENT_ATTRIBUTED not in trace.actions

    def test_completion_log_carries_context(
        self, orchestrator, captured_logs, make_enrollment, make_payment, family
    ):
        make_enrollment(family, "700.00")
        payment = make_payment(family, "700.00")

        orchestrator.attribute(payment)

        records = captured_logs()
        completed = [r for r in records if r["message"] == "attribution_completed"]
        assert len(completed) == 1
        record = completed[0]
        assert record["payment_id"] == str(payment.id)
        assert record["family_id"] == str(family.id)
        assert record["attribution_status"] == "auto-matched"
        assert record["ledger_write_count"] == 1
        assert "correlation_id" in record
        assert "duration_ms" in record

        started = next(r for r in records if r["message"] == "attribution_started")
        assert started["correlation_id"] == record["correlation_id"]
