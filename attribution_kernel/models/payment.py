"""
Module: attribution_kernel.models.payment
Responsibility: ORM persistence for inbound family payments and their
    allocations to enrollments and billing periods.
Architecture position: Kernel > Models.  May import from db/base.py and the
    pure value vocabulary in domain/values.py.

Invariants enforced:
    - Never deleted: refunds and voids are status transitions, not DELETEs
      (ORM before_delete listener in db/immutability.py).
    - Conservation: for auto-matched and needs-review payments the
      allocation amounts sum to net_amount (checked by the orchestrator
      before persisting).
    - Non-empty allocations: every payment whose attribution_status is not
      ``unmatched`` carries at least one allocation once attributed.
    - Wholesale replacement: allocations are a delete-orphan collection;
      re-attribution swaps the whole list, never edits individual rows.
    - Deduplication: (source, external_transaction_id) is unique.

Audit relevance:
    attribution_status / attribution_confidence / attribution_method are the
    downstream contract: review queues filter on needs-review, "contact
    family" nudges filter on unmatched.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from attribution_kernel.db.base import Base, EnumString, TrackedBase, UUIDString
from attribution_kernel.domain.values import (
    AttributionMethod,
    AttributionStatus,
    BillingPeriod,
)


class PaymentSource(str, Enum):
    """Processor or channel the money arrived through."""

    STRIPE = "stripe"  # Card processor
    OMELLA = "omella"  # K-12 card/ACH processor
    CLASSWALLET = "classwallet"  # ESA / voucher platform
    CHECK = "check"
    CASH = "cash"
    ACH = "ach"
    WIRE = "wire"
    OTHER = "other"


class PaymentMethod(str, Enum):
    """Instrument the family paid with."""

    CREDIT_CARD = "credit-card"
    DEBIT_CARD = "debit-card"
    ACH = "ach"
    CHECK = "check"
    CASH = "cash"
    ESA_VOUCHER = "esa-voucher"
    WIRE = "wire"


class PaymentStatus(str, Enum):
    """Overall processing status of a payment."""

    PENDING = "pending"
    PROCESSING = "processing"
    ALLOCATED = "allocated"
    RECONCILED = "reconciled"
    FAILED = "failed"
    REFUNDED = "refunded"


SETTLED_ATTRIBUTION_STATUSES = frozenset({
    AttributionStatus.AUTO_MATCHED,
    AttributionStatus.MANUAL_MATCHED,
})


class Payment(TrackedBase):
    """
    One inbound transfer of money from a family through one processor.

    Contract:
        Created by PaymentIngestionService in status PENDING.  Mutated only
        by AttributionOrchestrator, ManualAllocationHandler, RefundService
        and ReconciliationService.  Never deleted.

    Guarantees:
        - net_amount == gross_amount - fees (set at ingestion).
        - attribution_confidence is in [0, 1].
        - allocations preserve submission order via ``position``.
    """

    __tablename__ = "payments"

    __table_args__ = (
        UniqueConstraint(
            "source", "external_transaction_id", name="uq_payment_external_txn"
        ),
        Index("idx_payment_school_status", "school_id", "status"),
        Index("idx_payment_family_date", "school_id", "family_id", "payment_date"),
        Index("idx_payment_attribution", "school_id", "attribution_status"),
        Index("idx_payment_batch", "batch_id"),
    )

    school_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        nullable=False,
    )

    family_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("families.id"),
        nullable=False,
    )

    # Source information
    source: Mapped[PaymentSource] = mapped_column(
        EnumString(PaymentSource),
        nullable=False,
    )

    payment_method: Mapped[PaymentMethod | None] = mapped_column(
        EnumString(PaymentMethod),
        nullable=True,
    )

    # External IDs for tracking (processor transaction id is the dedup key)
    external_transaction_id: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )

    external_payer_id: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )

    batch_id: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
    )

    batch_transfer_date: Mapped[date | None] = mapped_column(
        nullable=True,
    )

    # Amounts
    gross_amount: Mapped[Decimal] = mapped_column(
        nullable=False,
    )

    fees: Mapped[Decimal] = mapped_column(
        nullable=False,
        default=Decimal("0"),
    )

    net_amount: Mapped[Decimal] = mapped_column(
        nullable=False,
    )

    currency: Mapped[str] = mapped_column(
        String(3),
        nullable=False,
        default="USD",
    )

    # Dates
    payment_date: Mapped[date] = mapped_column(
        nullable=False,
    )

    received_date: Mapped[date | None] = mapped_column(
        nullable=True,
    )

    processed_date: Mapped[datetime | None] = mapped_column(
        nullable=True,
    )

    # Lifecycle
    status: Mapped[PaymentStatus] = mapped_column(
        EnumString(PaymentStatus),
        nullable=False,
        default=PaymentStatus.PENDING,
    )

    # Attribution
    attribution_status: Mapped[AttributionStatus] = mapped_column(
        EnumString(AttributionStatus),
        nullable=False,
        default=AttributionStatus.NEEDS_REVIEW,
    )

    attribution_confidence: Mapped[Decimal] = mapped_column(
        Numeric(3, 2),
        nullable=False,
        default=Decimal("0"),
    )

    attribution_method: Mapped[AttributionMethod | None] = mapped_column(
        EnumString(AttributionMethod),
        nullable=True,
    )

    # Failure detail for the last attribution run, if it failed
    attribution_error: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    # Manual review
    reviewed_by_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        nullable=True,
    )

    reviewed_at: Mapped[datetime | None] = mapped_column(
        nullable=True,
    )

    # Refund tracking
    refund_amount: Mapped[Decimal] = mapped_column(
        nullable=False,
        default=Decimal("0"),
    )

    refund_date: Mapped[date | None] = mapped_column(
        nullable=True,
    )

    refund_reason: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    # Bank reconciliation
    reconciled_to_bank: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
    )

    reconciled_date: Mapped[date | None] = mapped_column(
        nullable=True,
    )

    # Last four digits of the card or account, for staff lookups
    last4: Mapped[str | None] = mapped_column(
        String(4),
        nullable=True,
    )

    notes: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    # Staff-only; never shown to the family
    internal_notes: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    allocations: Mapped[list["PaymentAllocation"]] = relationship(
        "PaymentAllocation",
        back_populates="payment",
        order_by="PaymentAllocation.position",
        cascade="all, delete-orphan",
    )

    @property
    def allocated_total(self) -> Decimal:
        """Sum of allocation amounts (zero when unallocated)."""
        return sum((a.amount for a in self.allocations), Decimal("0"))

    @property
    def is_settled(self) -> bool:
        """True iff no staff review is required."""
        return self.attribution_status in SETTLED_ATTRIBUTION_STATUSES

    def allocation_snapshot(self) -> list[dict]:
        """JSON-native view of the allocation list, in position order."""
        return [
            {
                "enrollment_id": str(a.enrollment_id),
                "amount": str(a.amount),
                "period": str(a.period),
                "confirmed": a.confirmed,
            }
            for a in self.allocations
        ]

    def __repr__(self) -> str:
        return (
            f"<Payment {self.id} net={self.net_amount} "
            f"{self.status}/{self.attribution_status}>"
        )


class PaymentAllocation(Base):
    """
    One portion of a payment applied to one enrollment for one billing period.

    Guarantees:
        - amount > 0.
        - enrollment belongs to the payment's family (checked by services).
        - confirmed is False only for proportional suggestions awaiting a
          human decision.
    """

    __tablename__ = "payment_allocations"

    __table_args__ = (
        Index("idx_allocation_payment", "payment_id", "position"),
        Index("idx_allocation_enrollment_period", "enrollment_id", "period_year", "period_month"),
    )

    payment_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("payments.id"),
        nullable=False,
    )

    position: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    enrollment_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("enrollments.id"),
        nullable=False,
    )

    # Denormalized for reporting
    student_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        nullable=False,
    )

    amount: Mapped[Decimal] = mapped_column(
        nullable=False,
    )

    period_year: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    period_month: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    note: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )

    confirmed: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
    )

    payment: Mapped[Payment] = relationship(
        Payment,
        back_populates="allocations",
    )

    @property
    def period(self) -> BillingPeriod:
        return BillingPeriod(year=self.period_year, month=self.period_month)

    def __repr__(self) -> str:
        return (
            f"<PaymentAllocation {self.amount} -> {self.enrollment_id} "
            f"{self.period_year:04d}-{self.period_month:02d}>"
        )
