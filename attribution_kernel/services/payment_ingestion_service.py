"""
PaymentIngestionService -- turns processor notifications into pending payments.

Responsibility:
    Entry point for money into the attribution engine.  Validates a
    PaymentNotification at the boundary, de-duplicates re-delivered
    notifications on (source, external_transaction_id), computes the net
    amount and creates the Payment row in status ``pending``.

Architecture position:
    Kernel > Services -- imperative shell, called by processor-specific
    adapters (webhook handlers, batch importers) before the orchestrator.

Invariants enforced:
    - net_amount == gross_amount - fees, quantized to cents.
    - Idempotency: UNIQUE (source, external_transaction_id) plus
      IntegrityError handling for concurrent inserts of the same
      notification.  Notifications without an external id (cash, check)
      are never de-duplicated.
    - Single currency: notifications in another currency than the
      configured one are rejected.

Failure modes:
    - InvalidPaymentError: unknown source or payment method, non-positive
      gross amount, negative fees, non-positive net amount, currency
      mismatch, unknown family or family of another school.
    - DUPLICATE: idempotent re-delivery; the existing payment is returned.

Audit relevance:
    payment_received on acceptance, payment_duplicate_ignored on
    re-delivery.
"""

from dataclasses import dataclass
from enum import Enum
from typing import NoReturn
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from attribution_kernel.domain.clock import Clock, SystemClock
from attribution_kernel.domain.dtos import SYSTEM_ACTOR_ID, PaymentNotification
from attribution_kernel.domain.values import ZERO, to_cents
from attribution_kernel.exceptions import InvalidPaymentError
from attribution_kernel.logging_config import get_logger
from attribution_kernel.models.family import Family
from attribution_kernel.models.payment import (
    Payment,
    PaymentMethod,
    PaymentSource,
    PaymentStatus,
)
from attribution_kernel.services.auditor_service import AuditorService

logger = get_logger("services.payment_ingestion")


class IngestStatus(str, Enum):
    """Status of an ingestion operation."""

    ACCEPTED = "accepted"
    DUPLICATE = "duplicate"  # Idempotent success


@dataclass(frozen=True)
class IngestResult:
    """Result of an ingestion operation."""

    status: IngestStatus
    payment: Payment
    message: str | None = None

    @property
    def is_success(self) -> bool:
        return self.status in (IngestStatus.ACCEPTED, IngestStatus.DUPLICATE)

    @property
    def is_duplicate(self) -> bool:
        return self.status == IngestStatus.DUPLICATE


class PaymentIngestionService:
    """
    Creates pending payments from processor notifications.

    Guarantees:
        - Delivering the same (source, external_transaction_id) twice
          yields one payment.
        - An accepted payment is flushed with status ``pending`` and
          attribution ``needs-review`` until the orchestrator runs.

    Non-goals:
        - Does NOT call ``session.commit()``; the caller controls boundaries.
        - Does NOT attribute the payment.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        auditor: AuditorService | None = None,
        currency: str = "USD",
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._auditor = auditor or AuditorService(session, self._clock)
        self._currency = currency

    def ingest(
        self,
        notification: PaymentNotification,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> IngestResult:
        """
        Ingest one payment notification.

        Postconditions:
            - ACCEPTED: a new Payment row is flushed and audited.
            - DUPLICATE: no row is created; the existing payment is returned.

        Raises:
            InvalidPaymentError: The notification fails boundary validation.
        """
        source, method = self._validate(notification)
        gross = to_cents(notification.gross_amount)
        fees = to_cents(notification.fees)

        if notification.external_transaction_id is not None:
            existing = self._find_existing(source, notification.external_transaction_id)
            if existing is not None:
                return self._duplicate(existing, actor_id, concurrent=False)

        payment = Payment(
            school_id=notification.school_id,
            family_id=notification.family_id,
            source=source,
            payment_method=method,
            external_transaction_id=notification.external_transaction_id,
            external_payer_id=notification.external_payer_id,
            last4=notification.last4,
            batch_id=notification.batch_id,
            batch_transfer_date=notification.batch_transfer_date,
            gross_amount=gross,
            fees=fees,
            net_amount=gross - fees,
            currency=notification.currency,
            payment_date=notification.payment_date,
            received_date=notification.received_date or self._clock.today(),
            status=PaymentStatus.PENDING,
            notes=notification.notes,
            created_by_id=actor_id,
        )

        savepoint = self._session.begin_nested()
        self._session.add(payment)
        try:
            self._session.flush()
            savepoint.commit()
        except IntegrityError:
            # Concurrent delivery of the same notification
            savepoint.rollback()
            logger.warning(
                "concurrent_payment_insert_conflict",
                extra={
                    "source": source.value,
                    "external_transaction_id": notification.external_transaction_id,
                },
            )
            existing = None
            if notification.external_transaction_id is not None:
                existing = self._find_existing(
                    source, notification.external_transaction_id
                )
            if existing is None:
                raise
            return self._duplicate(existing, actor_id, concurrent=True)

        self._auditor.record_payment_received(
            payment_id=payment.id,
            source=source.value,
            external_transaction_id=payment.external_transaction_id,
            gross_amount=gross,
            fees=fees,
            net_amount=payment.net_amount,
            actor_id=actor_id,
        )

        logger.info(
            "payment_ingested",
            extra={
                "payment_id": str(payment.id),
                "source": source.value,
                "net_amount": str(payment.net_amount),
            },
        )
        return IngestResult(
            status=IngestStatus.ACCEPTED,
            payment=payment,
            message="Payment ingested successfully",
        )

    def _validate(
        self, notification: PaymentNotification
    ) -> tuple[PaymentSource, PaymentMethod | None]:
        """Boundary validation.  Returns the parsed source and method."""
        try:
            source = PaymentSource(notification.source)
        except ValueError:
            self._reject(f"unknown payment source {notification.source!r}")

        method = None
        if notification.payment_method is not None:
            try:
                method = PaymentMethod(notification.payment_method)
            except ValueError:
                self._reject(f"unknown payment method {notification.payment_method!r}")

        if notification.gross_amount is None or notification.gross_amount <= 0:
            self._reject(f"gross amount must be positive, got {notification.gross_amount}")
        if notification.fees is None or notification.fees < 0:
            self._reject(f"fees must not be negative, got {notification.fees}")
        if to_cents(notification.gross_amount) - to_cents(notification.fees) <= ZERO:
            self._reject(
                f"net amount must be positive (gross {notification.gross_amount}, "
                f"fees {notification.fees})"
            )
        if notification.last4 is not None and not (
            len(notification.last4) == 4 and notification.last4.isdigit()
        ):
            self._reject(f"last4 must be four digits, got {notification.last4!r}")
        if notification.currency != self._currency:
            self._reject(
                f"currency {notification.currency} is not accepted, expected {self._currency}"
            )

        family = self._session.get(Family, notification.family_id)
        if family is None:
            self._reject(f"unknown family {notification.family_id}")
        if family.school_id != notification.school_id:
            self._reject(
                f"family {notification.family_id} does not belong to school "
                f"{notification.school_id}"
            )

        return source, method

    def _reject(self, reason: str) -> NoReturn:
        logger.warning("payment_rejected_validation", extra={"reason": reason})
        raise InvalidPaymentError(None, reason)

    def _find_existing(self, source: PaymentSource, external_transaction_id: str) -> Payment | None:
        return self._session.execute(
            select(Payment).where(
                Payment.source == source,
                Payment.external_transaction_id == external_transaction_id,
            )
        ).scalar_one_or_none()

    def _duplicate(self, existing: Payment, actor_id: UUID, concurrent: bool) -> IngestResult:
        self._auditor.record_payment_duplicate_ignored(
            payment_id=existing.id,
            source=existing.source.value,
            external_transaction_id=existing.external_transaction_id,
            actor_id=actor_id,
        )
        logger.info(
            "payment_duplicate",
            extra={
                "payment_id": str(existing.id),
                "external_transaction_id": existing.external_transaction_id,
                "concurrent": concurrent,
            },
        )
        return IngestResult(
            status=IngestStatus.DUPLICATE,
            payment=existing,
            message=(
                "Payment already ingested (concurrent)"
                if concurrent
                else "Payment already ingested"
            ),
        )
