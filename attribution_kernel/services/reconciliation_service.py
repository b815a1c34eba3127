"""
ReconciliationService -- closing settled payments against the bank.

Responsibility:
    Marks a payment as matched to a bank deposit once its attribution is
    settled, moving it to ``reconciled``.

Architecture position:
    Kernel > Services -- imperative shell.  The bank-feed matching itself
    happens outside the kernel; this service records its outcome.

Invariants enforced:
    - Only ``allocated`` payments whose attribution is settled
      (auto-matched or manual-matched) can be reconciled.
    - A reconciled payment is closed to attribution and manual allocation.
    - The enrollment ledger is not touched.

Failure modes:
    - InvalidPaymentStateError: the payment is not allocated, still needs
      review, or is already reconciled.
"""

from datetime import date
from uuid import UUID

from sqlalchemy.orm import Session

from attribution_kernel.domain.clock import Clock, SystemClock
from attribution_kernel.exceptions import InvalidPaymentStateError
from attribution_kernel.logging_config import LogContext, get_logger
from attribution_kernel.models.payment import Payment, PaymentStatus
from attribution_kernel.services.auditor_service import AuditorService

logger = get_logger("services.reconciliation")


class ReconciliationService:
    """Records bank reconciliation of settled payments."""

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

    def mark_reconciled(
        self,
        payment: Payment,
        actor_id: UUID,
        reconciled_on: date | None = None,
    ) -> Payment:
        """Mark a settled payment as reconciled to the bank."""
        with LogContext.bind_payment(payment, actor_id=str(actor_id)):
            if payment.status != PaymentStatus.ALLOCATED or not payment.is_settled:
                logger.warning(
                    "reconciliation_rejected",
                    extra={
                        "status": payment.status.value,
                        "attribution_status": payment.attribution_status.value,
                    },
                )
                raise InvalidPaymentStateError(
                    str(payment.id), payment.status.value, "reconcile"
                )

            reconciled_date = reconciled_on or self._clock.today()
            savepoint = self._session.begin_nested()
            try:
                payment.status = PaymentStatus.RECONCILED
                payment.reconciled_to_bank = True
                payment.reconciled_date = reconciled_date
                payment.updated_by_id = actor_id
                self._session.flush()

                self._auditor.record_reconciliation(
                    payment_id=payment.id,
                    reconciled_date=reconciled_date,
                    net_amount=payment.net_amount,
                    actor_id=actor_id,
                )
                savepoint.commit()
            except Exception:
                savepoint.rollback()
                logger.error("payment_reconciliation_failed", exc_info=True)
                raise

            if self._auto_commit:
                self._session.commit()

            logger.info(
                "payment_reconciled",
                extra={"reconciled_date": reconciled_date.isoformat()},
            )
            return payment
