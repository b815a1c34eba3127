"""
attribution_config -- single public entrypoint for engine configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  No other component reads configuration files
    or environment variables directly.

Architecture position:
    Configuration.  Sits above ``attribution_kernel``; the kernel MUST
    NEVER import from ``attribution_config``.  ``bridges`` translates
    settings into kernel inputs.

Invariants enforced:
    - Single entrypoint: all runtime config flows through
      ``get_active_config()``.
    - Validation before use: unknown keys, out-of-range confidences or a
      non-positive epsilon raise ``ValueError``.

Audit relevance:
    Every successful call logs ``attribution_config_loaded`` with the
    settings checksum, tying each attribution run back to the exact
    configuration that governed it.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path

from attribution_config.loader import load_settings
from attribution_config.schema import (
    AttributionPolicy,
    AttributionSettings,
    DatabaseSettings,
    LoggingSettings,
)

_logger = logging.getLogger("attribution_kernel.config")


def get_active_config(
    path: Path | str | None = None,
    environ: Mapping[str, str] | None = None,
) -> AttributionSettings:
    """The ONLY public configuration entrypoint.

    Args:
        path: Optional YAML file overlaid on the built-in defaults.
        environ: Environment mapping; defaults to ``os.environ``.

    Raises:
        FileNotFoundError: If ``path`` does not exist.
        ValueError: If the merged configuration is invalid.
    """
    settings = load_settings(Path(path) if path is not None else None, environ)

    _logger.info(
        "attribution_config_loaded",
        extra={
            "checksum": settings.checksum,
            "source": str(path) if path is not None else "defaults",
            "currency": settings.policy.currency,
            "log_level": settings.logging.level,
        },
    )
    return settings


__all__ = [
    "AttributionPolicy",
    "AttributionSettings",
    "DatabaseSettings",
    "LoggingSettings",
    "get_active_config",
]
