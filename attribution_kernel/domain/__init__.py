"""
Pure domain layer: strategies, allocation building, value objects, DTOs.

Nothing in this package performs I/O or imports SQLAlchemy at runtime.
"""

from attribution_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from attribution_kernel.domain.dtos import (
    SYSTEM_ACTOR_ID,
    AllocationLine,
    AttributionContext,
    AttributionResult,
    EnrollmentSnapshot,
    ManualAllocationLine,
    PaymentNotification,
)
from attribution_kernel.domain.strategy import (
    AttributionStrategy,
    ExactMatchStrategy,
    MultiPeriodStrategy,
    ProportionalFallbackStrategy,
    SingleEnrollmentStrategy,
)
from attribution_kernel.domain.strategy_chain import StrategyChain
from attribution_kernel.domain.values import (
    DEFAULT_RULES,
    AttributionMethod,
    AttributionRules,
    AttributionStatus,
    BillingPeriod,
)

__all__ = [
    "Clock",
    "DeterministicClock",
    "SystemClock",
    "SYSTEM_ACTOR_ID",
    "AllocationLine",
    "AttributionContext",
    "AttributionResult",
    "EnrollmentSnapshot",
    "ManualAllocationLine",
    "PaymentNotification",
    "AttributionStrategy",
    "ExactMatchStrategy",
    "MultiPeriodStrategy",
    "ProportionalFallbackStrategy",
    "SingleEnrollmentStrategy",
    "StrategyChain",
    "DEFAULT_RULES",
    "AttributionMethod",
    "AttributionRules",
    "AttributionStatus",
    "BillingPeriod",
]
