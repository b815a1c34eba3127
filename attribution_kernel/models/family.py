"""
Module: attribution_kernel.models.family
Responsibility: ORM persistence for the family -- the household that pays
    tuition for one or more enrolled students.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - Family isolation: every allocation of a payment references an
      enrollment whose family_id equals the payment's family_id.  The
      family row is the anchor for that check.
    - Serialisation: the family row is locked (SELECT ... FOR UPDATE) for
      the duration of one attribution run or manual allocation, so two
      payments from the same household never interleave their ledger writes.

Audit relevance:
    Family is the unit the attribution engine reasons about; a single
    payment may cover several children of the same family.
"""

from uuid import UUID

from sqlalchemy import Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from attribution_kernel.db.base import TrackedBase, UUIDString


class Family(TrackedBase):
    """
    Household grouping one or more enrollments.

    Guarantees:
        - school_id scopes the family to one school.
        - enrollments lists every enrollment of the family, active or not.
    """

    __tablename__ = "families"

    __table_args__ = (
        Index("idx_family_school", "school_id"),
    )

    school_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        nullable=False,
    )

    # Primary contact
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    email: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
    )

    enrollments: Mapped[list["Enrollment"]] = relationship(  # noqa: F821
        "Enrollment",
        back_populates="family",
    )

    def __repr__(self) -> str:
        return f"<Family {self.name} ({self.id})>"
