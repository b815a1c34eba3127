"""
AttributionOrchestrator -- one automatic attribution run per payment.

Responsibility:
    Loads the family's active enrollments, evaluates the strategy chain
    against them, replaces the payment's allocations with the winning
    result, applies the immediate-period lines to the enrollment ledger and
    persists the payment's attribution outcome.

Architecture position:
    Kernel > Services -- imperative shell.  Owns the transaction boundary
    of an attribution run (``auto_commit``); delegates the decision to the
    pure StrategyChain and every ledger write to EnrollmentLedgerService.

Invariants enforced:
    - Atomicity: the run executes inside a SAVEPOINT.  Either every ledger
      write and the payment's final state succeed together, or none of
      them is visible.
    - Safe failure state: on any error the payment is persisted as
      ``unmatched`` / confidence 0 / status ``failed`` with
      ``attribution_error`` set, and the error is re-raised.
    - Prepayment semantics: only ``AttributionResult.ledger_lines()`` are
      written; future prepaid periods and unconfirmed suggestions stay on
      the payment as allocations only.
    - Conservation: allocations of any matched or needs-review result sum
      to ``net_amount`` before anything is persisted.
    - Serialisation: the family row is locked for the duration of the run.
    - Explicit time: the billing anchor is a parameter, defaulting to the
      injected clock's date.

Failure modes:
    - InvalidPaymentStateError: payment is not pending or failed.  Nothing
      is written.
    - InvalidPaymentError: non-positive net amount.  Nothing is written.
    - LedgerWriteConflictError / LedgerWriteError /
      AllocationConservationError / anything else raised during the run:
      payment reset to unmatched/failed, attribution_failed audited,
      error re-raised for the caller's retry policy.

Audit relevance:
    Every completed run writes a payment_attributed audit event carrying
    the strategy and the anchor period, plus the allocation list with its
    fingerprint, so a later replacement of the list never loses it.  If
    recording the failure state itself fails, that secondary error is logged
    and the run's original error is still the one re-raised.
"""

import time
from datetime import date
from uuid import UUID, uuid4

from sqlalchemy.orm import Session

from attribution_kernel.domain.allocation_builder import check_conservation
from attribution_kernel.domain.clock import Clock, SystemClock
from attribution_kernel.domain.dtos import (
    SYSTEM_ACTOR_ID,
    AttributionContext,
    AttributionResult,
    EnrollmentSnapshot,
)
from attribution_kernel.domain.strategy_chain import StrategyChain
from attribution_kernel.domain.values import (
    DEFAULT_RULES,
    ZERO,
    AttributionRules,
    AttributionStatus,
    BillingPeriod,
    to_cents,
)
from attribution_kernel.exceptions import InvalidPaymentError, InvalidPaymentStateError
from attribution_kernel.logging_config import LogContext, get_logger
from attribution_kernel.models.payment import Payment, PaymentAllocation, PaymentStatus
from attribution_kernel.services.auditor_service import AuditorService
from attribution_kernel.services.enrollment_ledger import (
    EnrollmentLedgerService,
    LedgerWriteResult,
)
from attribution_kernel.utils.hashing import hash_allocations

logger = get_logger("services.attribution_orchestrator")

ATTRIBUTABLE_STATUSES = frozenset({PaymentStatus.PENDING, PaymentStatus.FAILED})


class AttributionOrchestrator:
    """
    Runs the strategy chain for a payment and applies the result.

    Contract:
        ``attribute(payment, anchor_date=None)`` mutates and returns the
        payment with allocations, attribution status, method and
        confidence set.

    Guarantees:
        - auto-matched => payment status ``allocated``.
        - needs-review / unmatched => payment status stays ``pending`` so
          the run can be repeated once enrollments change.
        - A family with no active enrollments yields ``unmatched`` with no
          ledger side effects and no exception.

    Non-goals:
        - Does NOT retry.  Retry scheduling belongs to the caller.
        - Does NOT confirm proportional suggestions; that is
          ManualAllocationHandler's job.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        rules: AttributionRules | None = None,
        chain: StrategyChain | None = None,
        auto_commit: bool = True,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._rules = rules or DEFAULT_RULES
        self._chain = chain or StrategyChain()
        self._auto_commit = auto_commit
        self._auditor = AuditorService(session, self._clock)
        self._ledger = EnrollmentLedgerService(session, self._clock, self._auditor)

    def attribute(
        self,
        payment: Payment,
        anchor_date: date | None = None,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> Payment:
        """
        Attribute one payment.

        Preconditions:
            - ``payment`` is flushed (has an id) and is pending or failed.
            - ``payment.net_amount > 0``.

        Postconditions:
            - On success the payment and all ledger writes are flushed, and
              committed when ``auto_commit`` is set.
            - On failure the payment is unmatched/failed and the error is
              re-raised.

        Raises:
            InvalidPaymentStateError, InvalidPaymentError, or whatever the
            run raised.
        """
        anchor = BillingPeriod.containing(anchor_date or self._clock.today())

        with LogContext.bind_payment(
            payment, correlation_id=str(uuid4()), actor_id=str(actor_id)
        ):
            self._check_attributable(payment)

            logger.info(
                "attribution_started",
                extra={
                    "net_amount": str(payment.net_amount),
                    "anchor_period": str(anchor),
                    "strategies": list(self._chain.strategy_names),
                },
            )
            t0 = time.monotonic()

            savepoint = self._session.begin_nested()
            try:
                result, writes = self._run(payment, anchor, actor_id)
                savepoint.commit()
            except Exception as exc:
                savepoint.rollback()
                try:
                    self._record_failure(payment, exc, actor_id)
                    if self._auto_commit:
                        self._session.commit()
                except Exception:
                    # The run's own error stays the one the caller sees
                    logger.critical(
                        "attribution_failure_not_recorded",
                        extra={"error_type": type(exc).__name__},
                        exc_info=True,
                    )
                duration_ms = round((time.monotonic() - t0) * 1000, 2)
                logger.error(
                    "attribution_failed",
                    extra={
                        "duration_ms": duration_ms,
                        "error_type": type(exc).__name__,
                    },
                    exc_info=exc,
                )
                raise exc

            if self._auto_commit:
                self._session.commit()

            duration_ms = round((time.monotonic() - t0) * 1000, 2)
            logger.info(
                "attribution_completed",
                extra={
                    "attribution_status": result.status.value,
                    "attribution_method": (
                        result.method.value if result.method else None
                    ),
                    "confidence": str(result.confidence),
                    "strategy": result.strategy,
                    "allocation_count": len(result.allocations),
                    "ledger_write_count": sum(1 for w in writes if w.changed),
                    "duration_ms": duration_ms,
                },
            )
            return payment

    # Internal

    def _check_attributable(self, payment: Payment) -> None:
        if payment.status not in ATTRIBUTABLE_STATUSES:
            logger.warning(
                "attribution_rejected",
                extra={"reason": "state", "status": payment.status.value},
            )
            raise InvalidPaymentStateError(
                str(payment.id), payment.status.value, "attribute"
            )
        if payment.net_amount is None or payment.net_amount <= 0:
            logger.warning(
                "attribution_rejected",
                extra={"reason": "amount", "net_amount": str(payment.net_amount)},
            )
            raise InvalidPaymentError(
                str(payment.id), f"net amount must be positive, got {payment.net_amount}"
            )

    def _run(
        self,
        payment: Payment,
        anchor: BillingPeriod,
        actor_id: UUID,
    ) -> tuple[AttributionResult, list[LedgerWriteResult]]:
        """Body of one run, inside the caller's savepoint."""
        self._ledger.lock_family(payment.family_id)
        enrollments = self._ledger.find_active_enrollments(
            payment.family_id, payment.school_id
        )

        context = AttributionContext(
            payment_id=payment.id,
            family_id=payment.family_id,
            net_amount=to_cents(payment.net_amount),
            enrollments=tuple(EnrollmentSnapshot.from_model(e) for e in enrollments),
            anchor=anchor,
            rules=self._rules,
        )
        result = self._chain.attribute(context)

        if result.status != AttributionStatus.UNMATCHED:
            check_conservation(payment.id, result.allocations, context.net_amount)

        payment.allocations = [
            PaymentAllocation(
                position=position,
                enrollment_id=line.enrollment_id,
                student_id=line.student_id,
                amount=line.amount,
                period_year=line.period.year,
                period_month=line.period.month,
                note=line.note,
                confirmed=line.confirmed,
            )
            for position, line in enumerate(result.allocations)
        ]

        writes = [
            self._ledger.record_payment(
                enrollment_id=line.enrollment_id,
                amount=line.amount,
                paid_on=payment.payment_date,
                payment_id=payment.id,
                period=line.period,
                actor_id=actor_id,
            )
            for line in result.ledger_lines()
        ]

        payment.attribution_status = result.status
        payment.attribution_method = result.method
        payment.attribution_confidence = result.confidence
        payment.attribution_error = None
        payment.processed_date = self._clock.now()
        payment.status = (
            PaymentStatus.ALLOCATED
            if result.status == AttributionStatus.AUTO_MATCHED
            else PaymentStatus.PENDING
        )
        payment.updated_by_id = actor_id
        self._session.flush()

        self._auditor.record_payment_attributed(
            payment_id=payment.id,
            attribution_status=result.status.value,
            attribution_method=result.method.value if result.method else None,
            confidence=result.confidence,
            strategy=result.strategy,
            anchor_period=str(anchor),
            allocations=payment.allocation_snapshot(),
            allocations_hash=hash_allocations(payment.id, payment.allocation_snapshot()),
            allocation_count=len(result.allocations),
            ledger_write_count=sum(1 for w in writes if w.changed),
            actor_id=actor_id,
        )
        return result, writes

    def _record_failure(self, payment: Payment, exc: Exception, actor_id: UUID) -> None:
        """Persist the safe failure state after the savepoint was rolled back."""
        payment.allocations = []
        payment.attribution_status = AttributionStatus.UNMATCHED
        payment.attribution_method = None
        payment.attribution_confidence = ZERO
        payment.attribution_error = f"{type(exc).__name__}: {exc}"
        payment.status = PaymentStatus.FAILED
        payment.processed_date = self._clock.now()
        payment.updated_by_id = actor_id
        self._session.flush()

        self._auditor.record_attribution_failed(
            payment_id=payment.id,
            error_type=type(exc).__name__,
            error_code=getattr(exc, "code", None),
            error_message=str(exc),
            actor_id=actor_id,
        )
