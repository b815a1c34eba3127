"""
Values -- Immutable domain value objects for payment attribution.

Responsibility:
    Provides the attribution outcome vocabulary (AttributionStatus,
    AttributionMethod), the BillingPeriod value object, cent rounding, and
    the AttributionRules that parameterise the strategy chain.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  Imported by the
    ORM models for their enum columns; imports nothing from the kernel.

Invariants enforced:
    - Money is Decimal, quantized to cents with ROUND_HALF_UP.  Never float.
    - BillingPeriod months are 1..12; advancing past December rolls the
      year forward.

Failure modes:
    - ValueError on a BillingPeriod with an out-of-range month.
    - ValueError on AttributionRules with non-positive epsilon, confidence
      outside [0, 1], or max_prepaid_periods < 2.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

CENT = Decimal("0.01")
ZERO = Decimal("0")


def to_cents(value: Decimal) -> Decimal:
    """Quantize a Decimal amount to whole cents (ROUND_HALF_UP)."""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


class AttributionStatus(str, Enum):
    """
    Outcome of attribution.

    AUTO_MATCHED and MANUAL_MATCHED are settled; everything else belongs in
    the staff review queue.  SPLIT_PAYMENT is reserved for processor
    adapters that pre-split a batch transfer; the engine never assigns it.
    """

    AUTO_MATCHED = "auto-matched"
    MANUAL_MATCHED = "manual-matched"
    NEEDS_REVIEW = "needs-review"
    UNMATCHED = "unmatched"
    SPLIT_PAYMENT = "split-payment"


class AttributionMethod(str, Enum):
    """Which path produced the allocations."""

    EXACT_MATCH = "exact-match"
    FAMILY_MATCH = "family-match"
    AMOUNT_MATCH = "amount-match"
    MANUAL = "manual"


@dataclass(frozen=True, order=True)
class BillingPeriod:
    """
    A (year, month) pair tuition is owed for.

    Guarantees:
        - Immutable, hashable and totally ordered chronologically.
        - ``str(period)`` is ``"YYYY-MM"``.
    """

    year: int
    month: int

    def __post_init__(self) -> None:
        if not 1 <= self.month <= 12:
            raise ValueError(f"Billing month must be 1..12, got {self.month}")

    @classmethod
    def containing(cls, day: date) -> BillingPeriod:
        """The billing period a calendar date falls in."""
        return cls(year=day.year, month=day.month)

    @classmethod
    def parse(cls, text: str) -> BillingPeriod:
        """Parse ``"YYYY-MM"``."""
        year, _, month = text.partition("-")
        if not month:
            raise ValueError(f"Invalid billing period: {text!r}")
        return cls(year=int(year), month=int(month))

    def advance(self, months: int) -> BillingPeriod:
        """The period ``months`` calendar months later."""
        index = self.year * 12 + (self.month - 1) + months
        return BillingPeriod(year=index // 12, month=index % 12 + 1)

    def __str__(self) -> str:
        return f"{self.year:04d}-{self.month:02d}"


@dataclass(frozen=True)
class AttributionRules:
    """
    Tunable parameters of the strategy chain.

    The defaults reproduce the production behaviour: a one-dollar matching
    tolerance, prepayment of at most a year, and the fixed confidence ladder
    0.99 / 0.95 / 0.90 / 0.50.
    """

    epsilon: Decimal = Decimal("1.00")
    max_prepaid_periods: int = 12
    exact_match_confidence: Decimal = Decimal("0.99")
    single_enrollment_confidence: Decimal = Decimal("0.95")
    multi_period_confidence: Decimal = Decimal("0.90")
    proportional_confidence: Decimal = Decimal("0.50")
    suggestion_note: str = "AI suggested allocation - needs review"

    def __post_init__(self) -> None:
        if self.epsilon <= 0:
            raise ValueError("epsilon must be positive")
        if self.max_prepaid_periods < 2:
            raise ValueError("max_prepaid_periods must be at least 2")
        for name in (
            "exact_match_confidence",
            "single_enrollment_confidence",
            "multi_period_confidence",
            "proportional_confidence",
        ):
            value = getattr(self, name)
            if not ZERO <= value <= 1:
                raise ValueError(f"{name} must be within [0, 1], got {value}")


DEFAULT_RULES = AttributionRules()
