"""
Module: attribution_kernel.models.enrollment
Responsibility: ORM persistence for a student's billing relationship with
    the school -- the Enrollment Ledger record.  Holds the per-period
    tuition amount and the running payment-history aggregates.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Optimistic locking: ``version`` is a SQLAlchemy version_id_col.  Every
      UPDATE is a compare-and-swap on the version; a lost update surfaces as
      StaleDataError, which EnrollmentLedgerService maps to
      LedgerWriteConflictError.
    - Payment-history aggregates (total_paid, on_time_payments, ...) are only
      mutated through EnrollmentLedgerService.record_payment().

Audit relevance:
    total_paid is derivable from the sum of this enrollment's
    EnrollmentPaymentPosting amounts; the ledger service keeps both in step.
"""

from datetime import date
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import ForeignKey, Index, Integer
from sqlalchemy.orm import Mapped, mapped_column, relationship

from attribution_kernel.db.base import EnumString, TrackedBase, UUIDString


class EnrollmentStatus(str, Enum):
    """Enrollment lifecycle status. Only ACTIVE enrollments are attributed to."""

    PENDING = "pending"
    ACTIVE = "active"
    WITHDRAWN = "withdrawn"
    GRADUATED = "graduated"
    WAITLIST = "waitlist"
    DECLINED = "declined"


class PaymentFrequency(str, Enum):
    """How often tuition is billed."""

    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUAL = "annual"
    PER_CLASS = "per-class"


class EnrollmentPaymentStatus(str, Enum):
    """Collections standing of an enrollment."""

    CURRENT = "current"
    LATE = "late"
    DELINQUENT = "delinquent"
    PAID_IN_FULL = "paid-in-full"


class Enrollment(TrackedBase):
    """
    A student's active billing relationship.

    Contract:
        monthly_tuition is the per-period amount the attribution strategies
        reason about.  Only EnrollmentLedgerService writes the payment
        history fields.

    Guarantees:
        - version increments on every UPDATE (compare-and-swap).
        - family_id never changes after creation.
    """

    __tablename__ = "enrollments"

    __table_args__ = (
        Index("idx_enrollment_family", "school_id", "family_id", "status"),
        Index("idx_enrollment_payment_status", "school_id", "payment_status"),
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

    # Students live in the SIS; denormalized here for reporting
    student_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        nullable=False,
    )

    status: Mapped[EnrollmentStatus] = mapped_column(
        EnumString(EnrollmentStatus),
        nullable=False,
        default=EnrollmentStatus.ACTIVE,
    )

    monthly_tuition: Mapped[Decimal] = mapped_column(
        nullable=False,
    )

    payment_frequency: Mapped[PaymentFrequency] = mapped_column(
        EnumString(PaymentFrequency),
        nullable=False,
        default=PaymentFrequency.MONTHLY,
    )

    # Payment tracking
    total_paid: Mapped[Decimal] = mapped_column(
        nullable=False,
        default=Decimal("0"),
    )

    total_owed: Mapped[Decimal] = mapped_column(
        nullable=False,
        default=Decimal("0"),
    )

    payment_status: Mapped[EnrollmentPaymentStatus] = mapped_column(
        EnumString(EnrollmentPaymentStatus),
        nullable=False,
        default=EnrollmentPaymentStatus.CURRENT,
    )

    last_payment_date: Mapped[date | None] = mapped_column(
        nullable=True,
    )

    next_payment_due: Mapped[date | None] = mapped_column(
        nullable=True,
    )

    # Payment behavior metrics
    on_time_payments: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    late_payments: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    missed_payments: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
    )

    average_days_late: Mapped[Decimal] = mapped_column(
        nullable=False,
        default=Decimal("0"),
    )

    # Compare-and-swap counter
    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
    )

    family: Mapped["Family"] = relationship(  # noqa: F821
        "Family",
        back_populates="enrollments",
    )

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return (
            f"<Enrollment {self.id} student={self.student_id} "
            f"tuition={self.monthly_tuition} ({self.status})>"
        )
