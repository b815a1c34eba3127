"""
DTOs -- Pure domain data transfer objects.

Responsibility:
    Defines the immutable data structures that flow through attribution:
    PaymentNotification (ingestion input), EnrollmentSnapshot and
    AttributionContext (strategy input), AllocationLine and
    AttributionResult (strategy output), and ManualAllocationLine (staff
    submission input).

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.
    from_model() class methods are boundary converters invoked only from
    the service layer; ORM types are referenced under TYPE_CHECKING only.

Invariants enforced:
    - Strategies accept and return DTOs, never ORM entities.
    - AllocationLine.amount is a positive Decimal.
    - AttributionResult.allocations is empty iff status is ``unmatched``.

Data flow:
    Enrollment rows -> EnrollmentSnapshot -> AttributionContext
        -> StrategyChain -> AttributionResult -> PaymentAllocation rows
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from attribution_kernel.domain.values import (
    DEFAULT_RULES,
    ZERO,
    AttributionMethod,
    AttributionRules,
    AttributionStatus,
    BillingPeriod,
)

if TYPE_CHECKING:
    from attribution_kernel.models.enrollment import Enrollment as EnrollmentModel

# Actor recorded on rows and audit events written by automatic runs
SYSTEM_ACTOR_ID = UUID(int=0)


@dataclass(frozen=True)
class PaymentNotification:
    """
    A payment as delivered by a processor-specific adapter.

    ``source`` and ``payment_method`` are the wire values ("stripe",
    "esa-voucher", ...); the ingestion service validates them.
    """

    school_id: UUID
    family_id: UUID
    source: str
    gross_amount: Decimal
    payment_date: date
    fees: Decimal = ZERO
    external_transaction_id: str | None = None
    external_payer_id: str | None = None
    payment_method: str | None = None
    last4: str | None = None
    batch_id: str | None = None
    batch_transfer_date: date | None = None
    received_date: date | None = None
    currency: str = "USD"
    notes: str | None = None


@dataclass(frozen=True)
class EnrollmentSnapshot:
    """Read-only view of one active enrollment, as seen by the strategies."""

    enrollment_id: UUID
    student_id: UUID
    family_id: UUID
    monthly_tuition: Decimal

    @classmethod
    def from_model(cls, enrollment: EnrollmentModel) -> EnrollmentSnapshot:
        return cls(
            enrollment_id=enrollment.id,
            student_id=enrollment.student_id,
            family_id=enrollment.family_id,
            monthly_tuition=Decimal(enrollment.monthly_tuition),
        )


@dataclass(frozen=True)
class AttributionContext:
    """
    Everything a strategy may look at.

    Contract:
        Built once per attribution run by the orchestrator.  ``anchor`` is
        the billing period treated as "current"; strategies never consult a
        clock.
    """

    payment_id: UUID
    family_id: UUID
    net_amount: Decimal
    enrollments: tuple[EnrollmentSnapshot, ...]
    anchor: BillingPeriod
    rules: AttributionRules = DEFAULT_RULES

    @property
    def total_monthly_tuition(self) -> Decimal:
        return sum((e.monthly_tuition for e in self.enrollments), ZERO)

    @property
    def enrollment_count(self) -> int:
        return len(self.enrollments)


@dataclass(frozen=True)
class AllocationLine:
    """
    One proposed portion of a payment for one enrollment and billing period.

    ``confirmed`` is False only for proportional suggestions.
    """

    enrollment_id: UUID
    student_id: UUID
    amount: Decimal
    period: BillingPeriod
    note: str | None = None
    confirmed: bool = True

    def __post_init__(self) -> None:
        if self.amount <= 0:
            raise ValueError(
                f"Allocation amount must be positive, got {self.amount} "
                f"for enrollment {self.enrollment_id}"
            )


@dataclass(frozen=True)
class AttributionResult:
    """
    Outcome of one strategy (or of the empty-family short-circuit).

    Guarantees:
        - ``allocations`` preserves the order in which the strategy produced
          them.
        - ``ledger_lines()`` selects, per enrollment, only the lines of the
          earliest allocated period, and nothing for unconfirmed suggestions.
    """

    status: AttributionStatus
    method: AttributionMethod | None
    confidence: Decimal
    allocations: tuple[AllocationLine, ...] = field(default_factory=tuple)
    strategy: str | None = None

    @classmethod
    def unmatched(cls) -> AttributionResult:
        return cls(
            status=AttributionStatus.UNMATCHED,
            method=None,
            confidence=ZERO,
            allocations=(),
            strategy=None,
        )

    @property
    def allocated_total(self) -> Decimal:
        return sum((a.amount for a in self.allocations), ZERO)

    @property
    def periods(self) -> tuple[BillingPeriod, ...]:
        """Distinct billing periods covered, in chronological order."""
        return tuple(sorted({a.period for a in self.allocations}))

    def ledger_lines(self) -> tuple[AllocationLine, ...]:
        """
        Lines that are applied to the enrollment ledger immediately.

        Future periods of a prepayment stay on the payment as pre-allocated
        credit; unconfirmed suggestions are not applied at all.
        """
        if self.status != AttributionStatus.AUTO_MATCHED:
            return ()
        first_period: dict[UUID, BillingPeriod] = {}
        for line in self.allocations:
            current = first_period.get(line.enrollment_id)
            if current is None or line.period < current:
                first_period[line.enrollment_id] = line.period
        return tuple(
            line
            for line in self.allocations
            if line.confirmed and line.period == first_period[line.enrollment_id]
        )


@dataclass(frozen=True)
class ManualAllocationLine:
    """
    One line of a staff-submitted allocation.

    When ``period`` is omitted the line applies to the billing period the
    payment was made in.
    """

    enrollment_id: UUID
    amount: Decimal
    period: BillingPeriod | None = None
    note: str | None = None
