"""
EnrollmentLedgerService -- the atomic "append payment" primitive.

Responsibility:
    Reads a family's active enrollments and records payments against them.
    Every write goes through a keyed ledger slot
    (EnrollmentPaymentPosting) so that a replayed attribution or a
    re-submitted manual allocation never double-credits an enrollment.

Architecture position:
    Kernel > Services -- imperative shell.  The orchestrator, the manual
    allocation handler and the refund service are its only callers.

Invariants enforced:
    - Set-insert: ``record_payment`` SETS the amount of the slot keyed by
      (payment, enrollment, period).  Same amount is a no-op, a different
      amount applies only the delta, zero reverses the slot.
    - Serialisation: ``lock_family`` takes ``SELECT ... FOR UPDATE`` on the
      family row; callers hold it for the whole attribution run.
    - Compare-and-swap: every enrollment UPDATE is conditioned on its
      ``version`` column.  A lost update surfaces as
      LedgerWriteConflictError, never as a silent overwrite.
    - Ledger consistency: enrollment.total_paid equals the sum of its
      posting amounts.

Failure modes:
    - EnrollmentNotFoundError: unknown enrollment id.
    - LedgerWriteError: negative amount requested.
    - LedgerWriteConflictError: version mismatch on the enrollment, or a
      concurrent insert of the same posting key.

Audit relevance:
    Every effective slot change produces a ledger_posting_applied /
    _adjusted / _reversed audit event on the enrollment.
"""

import calendar
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from attribution_kernel.domain.clock import Clock
from attribution_kernel.domain.dtos import SYSTEM_ACTOR_ID
from attribution_kernel.domain.values import ZERO, BillingPeriod, to_cents
from attribution_kernel.exceptions import (
    EnrollmentNotFoundError,
    LedgerWriteConflictError,
    LedgerWriteError,
)
from attribution_kernel.logging_config import get_logger
from attribution_kernel.models.audit_event import AuditAction
from attribution_kernel.models.enrollment import (
    Enrollment,
    EnrollmentPaymentStatus,
    EnrollmentStatus,
    PaymentFrequency,
)
from attribution_kernel.models.family import Family
from attribution_kernel.models.ledger_posting import EnrollmentPaymentPosting
from attribution_kernel.services.auditor_service import AuditorService
from attribution_kernel.services.base import BaseService
from attribution_kernel.utils.idempotency import generate_posting_key

logger = get_logger("services.enrollment_ledger")

# Days past due after which a late enrollment becomes delinquent
DELINQUENCY_THRESHOLD_DAYS = 30


class LedgerWriteOutcome(str, Enum):
    """What a record_payment call did to its slot."""

    APPLIED = "applied"  # New slot credited
    ADJUSTED = "adjusted"  # Existing slot changed to a different amount
    REVERSED = "reversed"  # Existing slot set to zero
    UNCHANGED = "unchanged"  # Idempotent replay, nothing written


@dataclass(frozen=True)
class LedgerWriteResult:
    """Result of one keyed ledger write."""

    outcome: LedgerWriteOutcome
    posting_key: str
    enrollment_id: UUID
    amount: Decimal
    previous_amount: Decimal

    @property
    def delta(self) -> Decimal:
        return self.amount - self.previous_amount

    @property
    def changed(self) -> bool:
        return self.outcome != LedgerWriteOutcome.UNCHANGED


def _add_month(day: date) -> date:
    """Same day next month, clamped to the last day of a shorter month."""
    year = day.year + day.month // 12
    month = day.month % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day.day, last_day))


class EnrollmentLedgerService(BaseService):
    """
    Keyed, idempotent enrollment ledger.

    Contract:
        ``record_payment(enrollment_id, amount, paid_on, payment_id, period)``
        sets the slot for (payment_id, enrollment_id, period) to ``amount``
        and moves the enrollment's running totals by the difference.

    Guarantees:
        - Calling record_payment twice with the same arguments changes the
          ledger exactly once.
        - Payment-history counters (on-time / late, average days late,
          next due date) move only when a new slot is first credited.

    Non-goals:
        - Does NOT call ``session.commit()``.
        - Does NOT decide which periods to write; callers do.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        auditor: AuditorService | None = None,
    ):
        super().__init__(session, clock)
        self._auditor = auditor or AuditorService(session, self.clock)

    # Reads

    def find_active_enrollments(self, family_id: UUID, school_id: UUID) -> list[Enrollment]:
        """Active enrollments of one family at one school, oldest first."""
        return list(
            self.session.execute(
                select(Enrollment)
                .where(
                    Enrollment.family_id == family_id,
                    Enrollment.school_id == school_id,
                    Enrollment.status == EnrollmentStatus.ACTIVE,
                )
                .order_by(Enrollment.created_at, Enrollment.id)
            ).scalars().all()
        )

    def family_enrollments(self, family_id: UUID) -> list[Enrollment]:
        """Every enrollment of a family, whatever its status."""
        return list(
            self.session.execute(
                select(Enrollment)
                .where(Enrollment.family_id == family_id)
                .order_by(Enrollment.created_at, Enrollment.id)
            ).scalars().all()
        )

    def get_enrollment(self, enrollment_id: UUID) -> Enrollment:
        enrollment = self.session.get(Enrollment, enrollment_id)
        if enrollment is None:
            raise EnrollmentNotFoundError(str(enrollment_id))
        return enrollment

    def postings_for_payment(self, payment_id: UUID) -> list[EnrollmentPaymentPosting]:
        """All ledger slots ever written for a payment, including reversed ones."""
        return list(
            self.session.execute(
                select(EnrollmentPaymentPosting)
                .where(EnrollmentPaymentPosting.payment_id == payment_id)
                .order_by(
                    EnrollmentPaymentPosting.period_year,
                    EnrollmentPaymentPosting.period_month,
                    EnrollmentPaymentPosting.posting_key,
                )
            ).scalars().all()
        )

    # Locking

    def lock_family(self, family_id: UUID) -> Family | None:
        """
        Take the per-family write lock (``SELECT ... FOR UPDATE``).

        Held until the caller's transaction ends.  A no-op on backends
        without row locks.
        """
        family = self.session.execute(
            select(Family).where(Family.id == family_id).with_for_update()
        ).scalar_one_or_none()
        logger.debug(
            "family_locked",
            extra={"family_id": str(family_id), "found": family is not None},
        )
        return family

    # Writes

    def record_payment(
        self,
        enrollment_id: UUID,
        amount: Decimal,
        paid_on: date,
        payment_id: UUID,
        period: BillingPeriod,
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> LedgerWriteResult:
        """
        Set the ledger slot (payment_id, enrollment_id, period) to ``amount``.

        Preconditions:
            - ``amount >= 0``; zero reverses the slot.

        Raises:
            EnrollmentNotFoundError, LedgerWriteError, LedgerWriteConflictError.
        """
        amount = to_cents(amount)
        posting_key = generate_posting_key(payment_id, enrollment_id, period)
        if amount < 0:
            raise LedgerWriteError(
                str(enrollment_id), posting_key, f"negative amount {amount}"
            )

        posting = self.session.execute(
            select(EnrollmentPaymentPosting)
            .where(EnrollmentPaymentPosting.posting_key == posting_key)
            .with_for_update()
        ).scalar_one_or_none()
        previous = posting.amount if posting is not None else ZERO

        if previous == amount:
            logger.debug(
                "ledger_posting_unchanged",
                extra={"posting_key": posting_key, "amount": str(amount)},
            )
            return LedgerWriteResult(
                outcome=LedgerWriteOutcome.UNCHANGED,
                posting_key=posting_key,
                enrollment_id=enrollment_id,
                amount=amount,
                previous_amount=previous,
            )

        enrollment = self.get_enrollment(enrollment_id)
        expected_version = enrollment.version
        delta = amount - previous

        if posting is None:
            outcome = LedgerWriteOutcome.APPLIED
            posting = EnrollmentPaymentPosting(
                posting_key=posting_key,
                payment_id=payment_id,
                enrollment_id=enrollment_id,
                period_year=period.year,
                period_month=period.month,
                amount=ZERO,
                owed_reduction=ZERO,
                paid_on=paid_on,
                revision=0,
                created_by_id=actor_id,
            )
            self.session.add(posting)
            self._record_history(enrollment, paid_on)
        elif amount == 0:
            outcome = LedgerWriteOutcome.REVERSED
        else:
            outcome = LedgerWriteOutcome.ADJUSTED

        if delta > 0:
            reduction = min(delta, max(enrollment.total_owed, ZERO))
            enrollment.total_owed = enrollment.total_owed - reduction
            posting.owed_reduction = posting.owed_reduction + reduction
        else:
            restored = min(-delta, posting.owed_reduction)
            enrollment.total_owed = enrollment.total_owed + restored
            posting.owed_reduction = posting.owed_reduction - restored

        enrollment.total_paid = enrollment.total_paid + delta
        enrollment.updated_by_id = actor_id
        enrollment.payment_status = self._standing(enrollment)

        posting.amount = amount
        posting.paid_on = paid_on
        posting.revision = posting.revision + 1
        posting.updated_by_id = actor_id

        try:
            self.session.flush()
        except StaleDataError as exc:
            logger.warning(
                "ledger_write_conflict",
                extra={
                    "enrollment_id": str(enrollment_id),
                    "posting_key": posting_key,
                    "expected_version": expected_version,
                },
            )
            raise LedgerWriteConflictError(str(enrollment_id), expected_version) from exc
        except IntegrityError as exc:
            logger.warning(
                "ledger_posting_key_conflict",
                extra={"enrollment_id": str(enrollment_id), "posting_key": posting_key},
            )
            raise LedgerWriteConflictError(str(enrollment_id), expected_version) from exc

        audit_action = {
            LedgerWriteOutcome.APPLIED: AuditAction.LEDGER_POSTING_APPLIED,
            LedgerWriteOutcome.ADJUSTED: AuditAction.LEDGER_POSTING_ADJUSTED,
            LedgerWriteOutcome.REVERSED: AuditAction.LEDGER_POSTING_REVERSED,
        }[outcome]
        self._auditor.record_ledger_posting(
            enrollment_id=enrollment_id,
            action=audit_action,
            posting_key=posting_key,
            payment_id=payment_id,
            amount=amount,
            previous_amount=previous,
            actor_id=actor_id,
        )

        logger.info(
            f"ledger_posting_{outcome.value}",
            extra={
                "enrollment_id": str(enrollment_id),
                "posting_key": posting_key,
                "amount": str(amount),
                "previous_amount": str(previous),
                "total_paid": str(enrollment.total_paid),
                "enrollment_version": enrollment.version,
            },
        )

        return LedgerWriteResult(
            outcome=outcome,
            posting_key=posting_key,
            enrollment_id=enrollment_id,
            amount=amount,
            previous_amount=previous,
        )

    def reverse_payment(
        self,
        payment_id: UUID,
        keep_keys: frozenset[str] | set[str] | tuple[str, ...] = (),
        actor_id: UUID = SYSTEM_ACTOR_ID,
    ) -> list[LedgerWriteResult]:
        """
        Reverse every live slot of ``payment_id`` whose key is not in ``keep_keys``.

        Returns one result per reversed slot.
        """
        keep = frozenset(keep_keys)
        results: list[LedgerWriteResult] = []
        for posting in self.postings_for_payment(payment_id):
            if posting.is_reversed or posting.posting_key in keep:
                continue
            results.append(
                self.record_payment(
                    enrollment_id=posting.enrollment_id,
                    amount=ZERO,
                    paid_on=posting.paid_on,
                    payment_id=payment_id,
                    period=BillingPeriod(posting.period_year, posting.period_month),
                    actor_id=actor_id,
                )
            )
        return results

    # Payment history

    def _record_history(self, enrollment: Enrollment, paid_on: date) -> None:
        """On-time / late bookkeeping for a newly received payment."""
        enrollment.last_payment_date = paid_on

        due = enrollment.next_payment_due
        if due is None or (paid_on - due).days <= 0:
            enrollment.on_time_payments += 1
        else:
            days_late = (paid_on - due).days
            enrollment.late_payments += 1
            previous_total = enrollment.average_days_late * (enrollment.late_payments - 1)
            enrollment.average_days_late = to_cents(
                (previous_total + days_late) / enrollment.late_payments
            )

        if enrollment.payment_frequency == PaymentFrequency.MONTHLY:
            enrollment.next_payment_due = _add_month(paid_on)

    def _standing(self, enrollment: Enrollment) -> EnrollmentPaymentStatus:
        if enrollment.total_owed <= 0:
            return EnrollmentPaymentStatus.PAID_IN_FULL
        due = enrollment.next_payment_due
        today = self.clock.today()
        if due is not None and due < today:
            if today - due > timedelta(days=DELINQUENCY_THRESHOLD_DAYS):
                return EnrollmentPaymentStatus.DELINQUENT
            return EnrollmentPaymentStatus.LATE
        return EnrollmentPaymentStatus.CURRENT
