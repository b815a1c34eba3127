"""
Configuration loader (``attribution_config.loader``).

Responsibility
--------------
Reads YAML files, merges them over the built-in defaults, applies
environment overrides and parses the result into the frozen dataclasses of
``attribution_config.schema``.  Callers use
``attribution_config.get_active_config()``, not this module.

Invariants enforced
-------------------
* Unknown keys are errors, never silently ignored.
* Money and confidence values are parsed as ``Decimal`` from their string
  form; floats in YAML are rejected.
* ``compute_checksum`` is deterministic for equal settings.

Failure modes
-------------
* Missing overlay file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Bad keys or values  -> ``ValueError``.
"""

from __future__ import annotations

import hashlib
import json
import os
from collections.abc import Mapping
from dataclasses import asdict, fields
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import yaml

from attribution_config.schema import (
    AttributionPolicy,
    AttributionSettings,
    DatabaseSettings,
    LoggingSettings,
)

DEFAULTS_PATH = Path(__file__).parent / "defaults.yaml"

_DECIMAL_FIELDS = frozenset({
    "epsilon",
    "exact_match_confidence",
    "single_enrollment_confidence",
    "multi_period_confidence",
    "proportional_confidence",
})

_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the document is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: top-level YAML document must be a mapping")
    return data


def merge(base: Mapping[str, Any], overlay: Mapping[str, Any]) -> dict[str, Any]:
    """Recursive dict merge; overlay wins, nested mappings merge."""
    merged = dict(base)
    for key, value in overlay.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def apply_env_overrides(
    data: dict[str, Any], environ: Mapping[str, str] | None = None
) -> dict[str, Any]:
    """Overlay ATTRIBUTION_DATABASE_URL / DATABASE_URL and ATTRIBUTION_LOG_LEVEL."""
    env = os.environ if environ is None else environ
    overrides: dict[str, Any] = {}
    url = env.get("ATTRIBUTION_DATABASE_URL") or env.get("DATABASE_URL")
    if url:
        overrides["database"] = {"url": url}
    level = env.get("ATTRIBUTION_LOG_LEVEL")
    if level:
        overrides["logging"] = {"level": level}
    return merge(data, overrides)


def _check_keys(section: str, data: Mapping[str, Any], cls: type) -> None:
    allowed = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - allowed)
    if unknown:
        raise ValueError(f"Unknown {section} setting(s): {', '.join(unknown)}")


def _parse_decimal(name: str, value: Any) -> Decimal:
    if isinstance(value, float):
        raise ValueError(f"policy.{name} must be quoted, got float {value!r}")
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"policy.{name} is not a decimal: {value!r}") from exc


def parse_policy(data: Mapping[str, Any]) -> AttributionPolicy:
    _check_keys("policy", data, AttributionPolicy)
    values = {
        key: _parse_decimal(key, value) if key in _DECIMAL_FIELDS else value
        for key, value in data.items()
    }
    policy = AttributionPolicy(**values)
    if policy.epsilon <= 0:
        raise ValueError("policy.epsilon must be positive")
    if policy.max_prepaid_periods < 2:
        raise ValueError("policy.max_prepaid_periods must be at least 2")
    for name in _DECIMAL_FIELDS - {"epsilon"}:
        confidence = getattr(policy, name)
        if not Decimal("0") <= confidence <= Decimal("1"):
            raise ValueError(f"policy.{name} must be within [0, 1], got {confidence}")
    if len(policy.currency) != 3:
        raise ValueError(f"policy.currency must be an ISO 4217 code, got {policy.currency!r}")
    return policy


def parse_database(data: Mapping[str, Any]) -> DatabaseSettings:
    _check_keys("database", data, DatabaseSettings)
    settings = DatabaseSettings(**data)
    if not settings.url:
        raise ValueError("database.url must not be empty")
    return settings


def parse_logging(data: Mapping[str, Any]) -> LoggingSettings:
    _check_keys("logging", data, LoggingSettings)
    level = str(data.get("level", "INFO")).upper()
    if level not in _LOG_LEVELS:
        raise ValueError(f"logging.level must be one of {sorted(_LOG_LEVELS)}, got {level!r}")
    return LoggingSettings(level=level)


def compute_checksum(data: Mapping[str, Any]) -> str:
    """SHA-256 of the canonical JSON form of ``data``."""
    canonical = json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def parse_settings(data: Mapping[str, Any]) -> AttributionSettings:
    unknown = sorted(set(data) - {"policy", "database", "logging"})
    if unknown:
        raise ValueError(f"Unknown configuration section(s): {', '.join(unknown)}")
    policy = parse_policy(data.get("policy") or {})
    database = parse_database(data.get("database") or {})
    logging_settings = parse_logging(data.get("logging") or {})
    checksum = compute_checksum({
        "policy": asdict(policy),
        "database": asdict(database),
        "logging": asdict(logging_settings),
    })
    return AttributionSettings(
        policy=policy,
        database=database,
        logging=logging_settings,
        checksum=checksum,
    )


def load_settings(
    path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> AttributionSettings:
    """Defaults, then the overlay file at ``path``, then the environment."""
    data = load_yaml_file(DEFAULTS_PATH)
    if path is not None:
        data = merge(data, load_yaml_file(path))
    data = apply_env_overrides(data, environ)
    return parse_settings(data)
