"""
StrategyChain -- ordered, first-match-wins evaluation of attribution strategies.

Responsibility:
    Runs an immutable, ordered tuple of AttributionStrategy instances
    against one AttributionContext and returns the first non-None result.

Architecture position:
    Kernel > Domain -- pure functional core.  Safe to share across threads
    and to run concurrently for different payments.

Invariants enforced:
    - Precedence is positional: when several strategies could apply (for
      example a single $700 enrollment paid exactly $700), the earlier one
      wins, so exact-match beats family-match.
    - A family with no enrollments short-circuits to ``unmatched`` before
      any strategy runs.
"""

from attribution_kernel.domain.dtos import AttributionContext, AttributionResult
from attribution_kernel.domain.strategy import (
    AttributionStrategy,
    ExactMatchStrategy,
    MultiPeriodStrategy,
    ProportionalFallbackStrategy,
    SingleEnrollmentStrategy,
)
from attribution_kernel.logging_config import get_logger

logger = get_logger("domain.strategy_chain")


class StrategyChain:
    """
    Ordered first-match evaluator.

    Contract:
        ``evaluate()`` returns the first strategy result, or None when every
        strategy declines.  ``attribute()`` additionally turns "no
        enrollments" and "everyone declined" into an ``unmatched`` result.

    Non-goals:
        - Does NOT touch the ledger; applying results is the orchestrator's job.
    """

    def __init__(self, strategies: tuple[AttributionStrategy, ...] | None = None):
        self._strategies = tuple(strategies) if strategies is not None else (
            ExactMatchStrategy(),
            SingleEnrollmentStrategy(),
            MultiPeriodStrategy(),
            ProportionalFallbackStrategy(),
        )

    @property
    def strategy_names(self) -> tuple[str, ...]:
        return tuple(s.name for s in self._strategies)

    def evaluate(self, context: AttributionContext) -> AttributionResult | None:
        for strategy in self._strategies:
            result = strategy.evaluate(context)
            if result is not None:
                logger.debug(
                    "strategy_matched",
                    extra={
                        "strategy": strategy.name,
                        "attribution_status": result.status.value,
                        "confidence": str(result.confidence),
                        "allocation_count": len(result.allocations),
                    },
                )
                return result
            logger.debug("strategy_declined", extra={"strategy": strategy.name})
        return None

    def attribute(self, context: AttributionContext) -> AttributionResult:
        """Evaluate the chain, defaulting to an unmatched result."""
        if not context.enrollments:
            return AttributionResult.unmatched()
        result = self.evaluate(context)
        return result if result is not None else AttributionResult.unmatched()
