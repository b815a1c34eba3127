"""
RefundService -- refunds as payment status transitions.

Responsibility:
    Moves a payment to ``refunded``, records the amount, date and reason,
    and for a full refund takes the payment's credit back out of the
    enrollment ledger.

Architecture position:
    Kernel > Services -- imperative shell.

Invariants enforced:
    - Payments are never deleted; a refund is a status transition.
    - 0 < refund amount <= net_amount.
    - A full refund reverses every live ledger slot of the payment.  A
      partial refund leaves the ledger alone; staff re-allocate the
      remainder through the manual allocation handler.
    - A payment is refunded at most once.

Failure modes:
    - InvalidRefundError: amount out of range.
    - InvalidPaymentStateError: payment already refunded.
"""

import time
from decimal import Decimal
from uuid import UUID

from sqlalchemy.orm import Session

from attribution_kernel.domain.clock import Clock, SystemClock
from attribution_kernel.domain.values import to_cents
from attribution_kernel.exceptions import InvalidPaymentStateError, InvalidRefundError
from attribution_kernel.logging_config import LogContext, get_logger
from attribution_kernel.models.payment import Payment, PaymentStatus
from attribution_kernel.services.auditor_service import AuditorService
from attribution_kernel.services.enrollment_ledger import EnrollmentLedgerService

logger = get_logger("services.refund")


class RefundService:
    """
    Records refunds against payments.

    Non-goals:
        - Does NOT move money; the processor refund happens elsewhere.
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

    def refund(
        self,
        payment: Payment,
        amount: Decimal,
        reason: str,
        actor_id: UUID,
    ) -> Payment:
        """Refund all or part of a payment."""
        with LogContext.bind_payment(payment, actor_id=str(actor_id)):
            if payment.status == PaymentStatus.REFUNDED:
                raise InvalidPaymentStateError(
                    str(payment.id), payment.status.value, "refund"
                )
            amount = to_cents(amount)
            if amount <= 0:
                raise InvalidRefundError(str(payment.id), f"amount must be positive, got {amount}")
            if amount > payment.net_amount:
                raise InvalidRefundError(
                    str(payment.id),
                    f"amount {amount} exceeds net amount {payment.net_amount}",
                )

            full_refund = amount == to_cents(payment.net_amount)
            t0 = time.monotonic()

            savepoint = self._session.begin_nested()
            try:
                self._ledger.lock_family(payment.family_id)
                reversals = (
                    self._ledger.reverse_payment(payment.id, actor_id=actor_id)
                    if full_refund
                    else []
                )

                payment.status = PaymentStatus.REFUNDED
                payment.refund_amount = amount
                payment.refund_date = self._clock.today()
                payment.refund_reason = reason
                payment.updated_by_id = actor_id
                self._session.flush()

                self._auditor.record_refund(
                    payment_id=payment.id,
                    amount=amount,
                    reason=reason,
                    full_refund=full_refund,
                    reversed_posting_count=len(reversals),
                    actor_id=actor_id,
                )
                savepoint.commit()
            except Exception:
                savepoint.rollback()
                logger.error("payment_refund_failed", exc_info=True)
                raise

            if self._auto_commit:
                self._session.commit()

            logger.info(
                "payment_refunded",
                extra={
                    "amount": str(amount),
                    "full_refund": full_refund,
                    "reversed_posting_count": len(reversals),
                    "duration_ms": round((time.monotonic() - t0) * 1000, 2),
                },
            )
            return payment
