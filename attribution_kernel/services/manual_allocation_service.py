"""
ManualAllocationHandler -- staff override of a payment's allocations.

Responsibility:
    Validates a staff-submitted allocation list, replaces the payment's
    allocations wholesale, writes every line to the enrollment ledger and
    marks the payment manual-matched.

Architecture position:
    Kernel > Services -- imperative shell.  The only path that can supersede
    an automatic attribution after the fact.

Invariants enforced:
    - Validate before write: an invalid submission raises before the
      payment or the ledger is touched.
    - Family isolation: every line's enrollment belongs to the payment's
      family.
    - Re-submission idempotence: ledger slots are keyed by (payment,
      enrollment, period).  Slots from an earlier submission that are absent
      from the new one are reversed; slots present in both are set to the
      new amount, so submitting the same list twice credits the ledger once.
    - Atomicity: all reversals, writes and the payment update happen inside
      one SAVEPOINT.
    - Refund remainder: a partially refunded payment may be re-allocated,
      but only up to ``net_amount - refund_amount``.  It keeps its
      ``refunded`` status.

Failure modes:
    - InvalidManualAllocationError: empty list, non-positive or sub-cent
      amount, unknown or foreign enrollment, or a total above the
      unrefunded remainder.  Carries per-line errors.
    - InvalidPaymentStateError: the payment is fully refunded or already
      reconciled to the bank.
    - LedgerWriteConflictError: concurrent modification of an enrollment;
      the whole submission is rolled back and the payment keeps its prior
      state.

Audit relevance:
    A payment_manually_allocated event records the reviewer, the previous
    attribution status, the replaced allocation list and the new one.
"""

import time
from collections.abc import Sequence
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from attribution_kernel.domain.clock import Clock, SystemClock
from attribution_kernel.domain.dtos import ManualAllocationLine
from attribution_kernel.domain.validation import validate_manual_lines
from attribution_kernel.domain.values import (
    ZERO,
    AttributionMethod,
    AttributionStatus,
    BillingPeriod,
    to_cents,
)
from attribution_kernel.exceptions import (
    InvalidManualAllocationError,
    InvalidPaymentStateError,
)
from attribution_kernel.logging_config import LogContext, get_logger
from attribution_kernel.models.enrollment import Enrollment
from attribution_kernel.models.payment import Payment, PaymentAllocation, PaymentStatus
from attribution_kernel.services.auditor_service import AuditorService
from attribution_kernel.services.enrollment_ledger import EnrollmentLedgerService
from attribution_kernel.utils.hashing import hash_allocations
from attribution_kernel.utils.idempotency import generate_posting_key

logger = get_logger("services.manual_allocation")

MANUAL_CONFIDENCE = Decimal("1.00")


class ManualAllocationHandler:
    """
    Applies a reviewer's allocation list to a payment.

    Contract:
        ``manually_allocate(payment, allocations, reviewer_id)`` returns the
        payment with status ``allocated`` (a partially refunded payment stays
        ``refunded``), attribution ``manual-matched`` /
        ``manual`` / confidence 1.0, and the reviewer stamped.

    Guarantees:
        - The allocation sum need not equal net_amount; staff may record a
          partial or split payment.
        - Lines without a period apply to the period the payment was made in.
        - Several lines for the same enrollment and period are summed into
          one ledger slot.

    Non-goals:
        - Does NOT run the strategy chain.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        auto_commit: bool = True,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._auto_commit = auto_commit
        self._auditor = AuditorService(session, self._clock)
        self._ledger = EnrollmentLedgerService(session, self._clock, self._auditor)

    def manually_allocate(
        self,
        payment: Payment,
        allocations: Sequence[ManualAllocationLine],
        reviewer_id: UUID,
    ) -> Payment:
        """
        Replace the payment's allocations with a reviewer's list.

        Postconditions:
            - On success the payment, its allocations and the ledger are
              flushed, and committed when ``auto_commit`` is set.
            - On failure nothing this call did remains visible.

        Raises:
            InvalidManualAllocationError, InvalidPaymentStateError,
            LedgerWriteConflictError.
        """
        lines = list(allocations)

        with LogContext.bind_payment(
            payment, correlation_id=str(uuid4()), actor_id=str(reviewer_id)
        ):
            available = self._available_amount(payment)
            if available is not None and available <= ZERO:
                logger.warning(
                    "manual_allocation_rejected",
                    extra={"reason": payment.status.value},
                )
                raise InvalidPaymentStateError(
                    str(payment.id), payment.status.value, "manually_allocate"
                )

            self._validate(payment, lines, available)

            logger.info(
                "manual_allocation_started",
                extra={
                    "line_count": len(lines),
                    "previous_attribution_status": payment.attribution_status.value,
                },
            )
            t0 = time.monotonic()

            savepoint = self._session.begin_nested()
            try:
                reversed_count, write_count = self._apply(payment, lines, reviewer_id)
                savepoint.commit()
            except Exception:
                savepoint.rollback()
                duration_ms = round((time.monotonic() - t0) * 1000, 2)
                logger.error(
                    "manual_allocation_failed",
                    extra={"duration_ms": duration_ms},
                    exc_info=True,
                )
                raise

            if self._auto_commit:
                self._session.commit()

            duration_ms = round((time.monotonic() - t0) * 1000, 2)
            logger.info(
                "manual_allocation_completed",
                extra={
                    "allocation_count": len(lines),
                    "allocated_total": str(payment.allocated_total),
                    "ledger_write_count": write_count,
                    "reversed_posting_count": reversed_count,
                    "duration_ms": duration_ms,
                },
            )
            return payment

    # Internal

    @staticmethod
    def _available_amount(payment: Payment) -> Decimal | None:
        """Upper bound on the allocation total, or None when uncapped."""
        if payment.status == PaymentStatus.RECONCILED:
            return ZERO
        if payment.status == PaymentStatus.REFUNDED:
            return to_cents(payment.net_amount - payment.refund_amount)
        return None

    def _validate(
        self,
        payment: Payment,
        lines: list[ManualAllocationLine],
        available: Decimal | None,
    ) -> None:
        requested = {line.enrollment_id for line in lines}
        owners = dict(
            self._session.execute(
                select(Enrollment.id, Enrollment.family_id).where(
                    Enrollment.id.in_(requested)
                )
            ).all()
        ) if requested else {}
        family_ids = {eid for eid, fid in owners.items() if fid == payment.family_id}

        errors = validate_manual_lines(lines, family_ids, set(owners), max_total=available)
        if errors:
            logger.warning(
                "manual_allocation_rejected",
                extra={
                    "reason": "validation",
                    "error_count": len(errors),
                    "error_codes": sorted({e["code"] for e in errors}),
                },
            )
            raise InvalidManualAllocationError(str(payment.id), errors)

    def _apply(
        self,
        payment: Payment,
        lines: list[ManualAllocationLine],
        reviewer_id: UUID,
    ) -> tuple[int, int]:
        """Body of the submission, inside the caller's savepoint."""
        self._ledger.lock_family(payment.family_id)

        default_period = BillingPeriod.containing(payment.payment_date)
        students = {
            e.id: e.student_id
            for e in self._ledger.family_enrollments(payment.family_id)
        }

        slots: dict[tuple[UUID, BillingPeriod], Decimal] = {}
        for line in lines:
            key = (line.enrollment_id, line.period or default_period)
            slots[key] = slots.get(key, ZERO) + to_cents(line.amount)

        keep_keys = {
            generate_posting_key(payment.id, enrollment_id, period)
            for enrollment_id, period in slots
        }
        reversals = self._ledger.reverse_payment(
            payment.id, keep_keys=keep_keys, actor_id=reviewer_id
        )

        previous_status = payment.attribution_status
        previous_allocations = payment.allocation_snapshot()
        payment.allocations = [
            PaymentAllocation(
                position=position,
                enrollment_id=line.enrollment_id,
                student_id=students[line.enrollment_id],
                amount=to_cents(line.amount),
                period_year=(line.period or default_period).year,
                period_month=(line.period or default_period).month,
                note=line.note,
                confirmed=True,
            )
            for position, line in enumerate(lines)
        ]

        writes = [
            self._ledger.record_payment(
                enrollment_id=enrollment_id,
                amount=amount,
                paid_on=payment.payment_date,
                payment_id=payment.id,
                period=period,
                actor_id=reviewer_id,
            )
            for (enrollment_id, period), amount in slots.items()
        ]

        now = self._clock.now()
        payment.attribution_status = AttributionStatus.MANUAL_MATCHED
        payment.attribution_method = AttributionMethod.MANUAL
        payment.attribution_confidence = MANUAL_CONFIDENCE
        payment.attribution_error = None
        payment.reviewed_by_id = reviewer_id
        payment.reviewed_at = now
        payment.processed_date = now
        if payment.status != PaymentStatus.REFUNDED:
            payment.status = PaymentStatus.ALLOCATED
        payment.updated_by_id = reviewer_id
        self._session.flush()

        self._auditor.record_manual_allocation(
            payment_id=payment.id,
            reviewer_id=reviewer_id,
            previous_status=previous_status.value,
            previous_allocations=previous_allocations,
            allocations=payment.allocation_snapshot(),
            allocated_total=payment.allocated_total,
            allocations_hash=hash_allocations(payment.id, payment.allocation_snapshot()),
            reversed_posting_count=len(reversals),
        )
        return len(reversals), sum(1 for w in writes if w.changed)
