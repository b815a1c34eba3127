"""
Module: attribution_kernel.selectors.review_queue_selector
Responsibility: Read-only queries behind the staff review workflow: payments
    awaiting a human decision, payments the engine could not place, and the
    allocation detail of one payment.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - No silent money loss: every payment that is neither auto-matched nor
      manual-matched, and not refunded, appears in review_queue().
    - Deterministic order: oldest payment first, ties broken by id.

Audit relevance:
    needs_review() drives the review queue; unmatched() drives "contact
    family" nudges, including payments whose attribution run failed.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select

from attribution_kernel.domain.values import AttributionMethod, AttributionStatus
from attribution_kernel.models.payment import (
    SETTLED_ATTRIBUTION_STATUSES,
    Payment,
    PaymentAllocation,
    PaymentSource,
    PaymentStatus,
)
from attribution_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class ReviewItem:
    """A payment as shown in the staff review queue."""

    payment_id: UUID
    family_id: UUID
    source: PaymentSource
    net_amount: Decimal
    payment_date: date
    status: PaymentStatus
    attribution_status: AttributionStatus
    attribution_method: AttributionMethod | None
    attribution_confidence: Decimal
    allocation_count: int
    attribution_error: str | None = None

    @property
    def has_suggestion(self) -> bool:
        """True when the engine proposed a split for a human to confirm."""
        return self.attribution_status == AttributionStatus.NEEDS_REVIEW and self.allocation_count > 0


@dataclass(frozen=True)
class AllocationView:
    """One allocation line of a payment."""

    position: int
    enrollment_id: UUID
    student_id: UUID
    amount: Decimal
    period: str
    note: str | None
    confirmed: bool


class ReviewQueueSelector(BaseSelector[Payment]):
    """
    Selector for the payment review queue.

    Non-goals:
        - Does NOT paginate; callers slice the result.
    """

    def needs_review(self, school_id: UUID) -> list[ReviewItem]:
        """Payments with an unconfirmed automatic suggestion."""
        return self._items(
            school_id,
            Payment.attribution_status == AttributionStatus.NEEDS_REVIEW,
        )

    def unmatched(self, school_id: UUID) -> list[ReviewItem]:
        """Payments the engine could not place, including failed runs."""
        return self._items(
            school_id,
            Payment.attribution_status == AttributionStatus.UNMATCHED,
        )

    def review_queue(self, school_id: UUID) -> list[ReviewItem]:
        """Every live payment that is not settled."""
        return self._items(
            school_id,
            Payment.attribution_status.notin_(list(SETTLED_ATTRIBUTION_STATUSES)),
        )

    def allocations_for(self, payment_id: UUID) -> list[AllocationView]:
        rows = self.session.execute(
            select(PaymentAllocation)
            .where(PaymentAllocation.payment_id == payment_id)
            .order_by(PaymentAllocation.position)
        ).scalars().all()
        return [
            AllocationView(
                position=row.position,
                enrollment_id=row.enrollment_id,
                student_id=row.student_id,
                amount=row.amount,
                period=str(row.period),
                note=row.note,
                confirmed=row.confirmed,
            )
            for row in rows
        ]

    def _items(self, school_id: UUID, condition) -> list[ReviewItem]:
        allocation_counts = (
            select(
                PaymentAllocation.payment_id,
                func.count(PaymentAllocation.id).label("allocation_count"),
            )
            .group_by(PaymentAllocation.payment_id)
            .subquery()
        )
        rows = self.session.execute(
            select(Payment, func.coalesce(allocation_counts.c.allocation_count, 0))
            .outerjoin(allocation_counts, allocation_counts.c.payment_id == Payment.id)
            .where(
                Payment.school_id == school_id,
                Payment.status != PaymentStatus.REFUNDED,
                condition,
            )
            .order_by(Payment.payment_date, Payment.id)
        ).all()
        return [
            ReviewItem(
                payment_id=payment.id,
                family_id=payment.family_id,
                source=payment.source,
                net_amount=payment.net_amount,
                payment_date=payment.payment_date,
                status=payment.status,
                attribution_status=payment.attribution_status,
                attribution_method=payment.attribution_method,
                attribution_confidence=payment.attribution_confidence,
                allocation_count=count,
                attribution_error=payment.attribution_error,
            )
            for payment, count in rows
        ]
