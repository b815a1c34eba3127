"""
Attribution strategies -- pure matchers from payment amount to allocations.

An AttributionStrategy is a pure function of an AttributionContext.  It has
NO side effects and NO access to:
- Database
- Clock/time (the billing anchor is part of the context)
- I/O

Each strategy either declines (returns None) or returns an
AttributionResult carrying allocations, a confidence and a method.  The
StrategyChain evaluates them in a fixed order, first match wins.

Order and triggers:
    1. ExactMatchStrategy           |net - total tuition| < epsilon      0.99
    2. SingleEnrollmentStrategy     exactly one active enrollment        0.95
    3. MultiPeriodStrategy          net ~= k * total, 1 < k <= 12        0.90
    4. ProportionalFallbackStrategy any enrollments (needs review)       0.50
"""

from abc import ABC, abstractmethod
from decimal import ROUND_HALF_UP, Decimal

from attribution_kernel.domain.allocation_builder import (
    absorb_residual,
    prepaid_rounds,
    proportional_split,
    tuition_round,
)
from attribution_kernel.domain.dtos import (
    AllocationLine,
    AttributionContext,
    AttributionResult,
)
from attribution_kernel.domain.values import AttributionMethod, AttributionStatus


class AttributionStrategy(ABC):
    """
    Abstract base for attribution strategies.

    Strategies MUST be:
    - Pure: No side effects
    - Deterministic: Same context always produces the same result
    - Stateless: No internal state changes between calls
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Stable identifier used in logs and results."""
        ...

    @abstractmethod
    def evaluate(self, context: AttributionContext) -> AttributionResult | None:
        """Return a result if this strategy applies, otherwise None."""
        ...

    def _result(
        self,
        status: AttributionStatus,
        method: AttributionMethod | None,
        confidence: Decimal,
        lines: list[AllocationLine] | None,
    ) -> AttributionResult | None:
        if not lines:
            return None
        return AttributionResult(
            status=status,
            method=method,
            confidence=confidence,
            allocations=tuple(lines),
            strategy=self.name,
        )


class ExactMatchStrategy(AttributionStrategy):
    """Payment equals one month of the family's combined tuition."""

    @property
    def name(self) -> str:
        return "exact_match"

    def evaluate(self, context: AttributionContext) -> AttributionResult | None:
        total = context.total_monthly_tuition
        if total <= 0 or abs(context.net_amount - total) >= context.rules.epsilon:
            return None
        lines = absorb_residual(
            tuition_round(context.enrollments, context.anchor),
            context.net_amount,
        )
        return self._result(
            AttributionStatus.AUTO_MATCHED,
            AttributionMethod.EXACT_MATCH,
            context.rules.exact_match_confidence,
            lines,
        )


class SingleEnrollmentStrategy(AttributionStrategy):
    """
    The family has exactly one active enrollment.

    The whole net amount goes to that enrollment for the anchor period,
    whatever the amount: partial payments, discounts and fee variance all
    land here for single-child families.
    """

    @property
    def name(self) -> str:
        return "single_enrollment"

    def evaluate(self, context: AttributionContext) -> AttributionResult | None:
        if context.enrollment_count != 1:
            return None
        enrollment = context.enrollments[0]
        line = AllocationLine(
            enrollment_id=enrollment.enrollment_id,
            student_id=enrollment.student_id,
            amount=context.net_amount,
            period=context.anchor,
        )
        return self._result(
            AttributionStatus.AUTO_MATCHED,
            AttributionMethod.FAMILY_MATCH,
            context.rules.single_enrollment_confidence,
            [line],
        )


class MultiPeriodStrategy(AttributionStrategy):
    """
    Payment is a whole number of months of combined tuition (prepayment).

    Allocates one full tuition round per period for ``k`` consecutive
    periods starting at the anchor.  Only the first period is applied to
    the ledger; that rule belongs to the orchestrator, not this strategy.
    """

    @property
    def name(self) -> str:
        return "multi_period"

    def periods_covered(self, context: AttributionContext) -> int | None:
        """The multiple ``k`` if the payment is a prepayment, else None."""
        total = context.total_monthly_tuition
        if total <= 0:
            return None
        k = int((context.net_amount / total).to_integral_value(rounding=ROUND_HALF_UP))
        if not 1 < k <= context.rules.max_prepaid_periods:
            return None
        if abs(context.net_amount - total * k) >= context.rules.epsilon:
            return None
        return k

    def evaluate(self, context: AttributionContext) -> AttributionResult | None:
        k = self.periods_covered(context)
        if k is None:
            return None
        lines = absorb_residual(
            prepaid_rounds(context.enrollments, context.anchor, k),
            context.net_amount,
        )
        return self._result(
            AttributionStatus.AUTO_MATCHED,
            AttributionMethod.AMOUNT_MATCH,
            context.rules.multi_period_confidence,
            lines,
        )


class ProportionalFallbackStrategy(AttributionStrategy):
    """
    Suggest a split proportional to each enrollment's share of tuition.

    Always applies when the family has enrollments.  The result is an
    unconfirmed suggestion: status needs-review, no method, and every line
    carries the suggestion note.  Nothing is written to the ledger until
    staff confirm it through manual allocation.
    """

    @property
    def name(self) -> str:
        return "proportional_fallback"

    def evaluate(self, context: AttributionContext) -> AttributionResult | None:
        if not context.enrollments:
            return None
        lines = proportional_split(
            context.net_amount,
            context.enrollments,
            context.anchor,
            note=context.rules.suggestion_note,
        )
        return self._result(
            AttributionStatus.NEEDS_REVIEW,
            None,
            context.rules.proportional_confidence,
            lines,
        )
