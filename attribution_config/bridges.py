"""
Config -> Kernel bridges.

Functions that convert AttributionSettings into kernel inputs.  They live
here, in the producer, because attribution_kernel must never import
attribution_config.

Usage:
    from attribution_config import get_active_config
    from attribution_config.bridges import (
        apply_logging_settings,
        build_attribution_rules,
        build_engine,
    )

    settings = get_active_config()
    apply_logging_settings(settings)  # before build_engine
    engine = build_engine(settings)
    orchestrator = AttributionOrchestrator(
        session, rules=build_attribution_rules(settings)
    )
"""

from __future__ import annotations

import logging

from sqlalchemy.engine import Engine

from attribution_config.schema import AttributionSettings
from attribution_kernel.db.engine import init_engine_from_url
from attribution_kernel.domain.values import AttributionRules
from attribution_kernel.logging_config import configure_logging


def build_attribution_rules(settings: AttributionSettings) -> AttributionRules:
    """Strategy-chain parameters from the policy section."""
    policy = settings.policy
    return AttributionRules(
        epsilon=policy.epsilon,
        max_prepaid_periods=policy.max_prepaid_periods,
        exact_match_confidence=policy.exact_match_confidence,
        single_enrollment_confidence=policy.single_enrollment_confidence,
        multi_period_confidence=policy.multi_period_confidence,
        proportional_confidence=policy.proportional_confidence,
        suggestion_note=policy.suggestion_note,
    )


def build_engine(settings: AttributionSettings) -> Engine:
    """Initialize the global engine from the database section."""
    database = settings.database
    return init_engine_from_url(
        database.url,
        echo=database.echo,
        pool_size=database.pool_size,
        max_overflow=database.max_overflow,
    )


def apply_logging_settings(settings: AttributionSettings) -> None:
    """Configure the attribution_kernel logger tree at the configured level."""
    configure_logging(level=logging.getLevelName(settings.logging.level))
