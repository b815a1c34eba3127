"""
Module: attribution_kernel.models.ledger_posting
Responsibility: ORM persistence for keyed enrollment ledger postings -- one
    slot per (payment, enrollment, billing period) holding the amount of
    that payment currently credited to that enrollment for that period.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Set-insert semantics: posting_key is UNIQUE.  Re-writing a slot with
      the same amount is a no-op; a different amount applies only the delta
      to the enrollment.  A replayed attribution or a re-submitted manual
      allocation therefore never double-credits the ledger.
    - Reversal is a write of zero, never a DELETE; the slot and its revision
      history remain inspectable.

Audit relevance:
    For every enrollment, total_paid equals the sum of the amounts of its
    postings.  Each applied / adjusted / reversed slot also produces an
    AuditEvent.
"""

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from attribution_kernel.db.base import TrackedBase, UUIDString


class EnrollmentPaymentPosting(TrackedBase):
    """
    One ledger slot: the credit of one payment to one enrollment-period.

    Guarantees:
        - posting_key == "<payment_id>:<enrollment_id>:<YYYY-MM>".
        - amount >= 0; zero means the slot has been reversed.
        - revision increments on every effective change of amount.
    """

    __tablename__ = "enrollment_payment_postings"

    __table_args__ = (
        Index("idx_posting_payment", "payment_id"),
        Index("idx_posting_enrollment_period", "enrollment_id", "period_year", "period_month"),
    )

    posting_key: Mapped[str] = mapped_column(
        String(100),
        nullable=False,
        unique=True,
    )

    payment_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("payments.id"),
        nullable=False,
    )

    enrollment_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("enrollments.id"),
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

    # Amount currently credited through this slot
    amount: Mapped[Decimal] = mapped_column(
        nullable=False,
        default=Decimal("0"),
    )

    # Portion of amount that reduced the enrollment's total_owed; restored on reversal
    owed_reduction: Mapped[Decimal] = mapped_column(
        nullable=False,
        default=Decimal("0"),
    )

    paid_on: Mapped[date] = mapped_column(
        nullable=False,
    )

    revision: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
    )

    @property
    def is_reversed(self) -> bool:
        return self.amount == 0

    def __repr__(self) -> str:
        return f"<EnrollmentPaymentPosting {self.posting_key} amount={self.amount} r{self.revision}>"
