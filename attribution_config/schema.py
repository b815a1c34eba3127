"""
Configuration schema (``attribution_config.schema``).

Frozen dataclasses describing the effective settings of one deployment.
Every object is immutable once loaded; the loader is the only producer.

  AttributionPolicy   = strategy-chain tolerances and confidence ladder
  DatabaseSettings    = engine URL and pool sizing
  LoggingSettings     = root level of the attribution_kernel logger tree
  AttributionSettings = the three above, plus the source checksum
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal


@dataclass(frozen=True)
class AttributionPolicy:
    """Tunable parameters of automatic attribution."""

    epsilon: Decimal = Decimal("1.00")
    max_prepaid_periods: int = 12
    exact_match_confidence: Decimal = Decimal("0.99")
    single_enrollment_confidence: Decimal = Decimal("0.95")
    multi_period_confidence: Decimal = Decimal("0.90")
    proportional_confidence: Decimal = Decimal("0.50")
    suggestion_note: str = "AI suggested allocation - needs review"
    currency: str = "USD"


@dataclass(frozen=True)
class DatabaseSettings:
    url: str = "sqlite:///:memory:"
    echo: bool = False
    pool_size: int = 10
    max_overflow: int = 10


@dataclass(frozen=True)
class LoggingSettings:
    level: str = "INFO"


@dataclass(frozen=True)
class AttributionSettings:
    """
    Effective configuration.

    ``checksum`` is the SHA-256 of the canonical JSON form of the settings
    and identifies the configuration in logs.
    """

    policy: AttributionPolicy = field(default_factory=AttributionPolicy)
    database: DatabaseSettings = field(default_factory=DatabaseSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)
    checksum: str = ""
