"""
Configuration loading tests.

Covers the built-in defaults, YAML overlays, environment overrides,
validation of unknown keys and bad values, checksum stability, and the
bridge into kernel AttributionRules.
"""

from decimal import Decimal

import pytest

from attribution_config import get_active_config
from attribution_config.bridges import build_attribution_rules
from attribution_config.loader import (
    apply_env_overrides,
    compute_checksum,
    load_settings,
    merge,
    parse_settings,
)
from attribution_kernel.domain.values import DEFAULT_RULES, AttributionRules


def _write(tmp_path, body: str):
    path = tmp_path / "school.yaml"
    path.write_text(body)
    return path


class TestDefaults:
    def test_defaults_match_kernel_rules(self):
        settings = load_settings(environ={})

        assert build_attribution_rules(settings) == DEFAULT_RULES

    def test_default_values(self):
        settings = load_settings(environ={})

        assert settings.policy.epsilon == Decimal("1.00")
        assert settings.policy.max_prepaid_periods == 12
        assert settings.policy.currency == "USD"
        assert settings.database.url == "sqlite:///:memory:"
        assert settings.logging.level == "INFO"
        assert len(settings.checksum) == 64

    def test_decimals_are_not_floats(self):
        settings = load_settings(environ={})

        assert isinstance(settings.policy.proportional_confidence, Decimal)


class TestOverlay:
    def test_overlay_merges_over_defaults(self, tmp_path):
        path = _write(
            tmp_path,
            'policy:\n  epsilon: "0.50"\n  max_prepaid_periods: 6\n',
        )

        settings = load_settings(path, environ={})

        assert settings.policy.epsilon == Decimal("0.50")
        assert settings.policy.max_prepaid_periods == 6
        assert settings.policy.exact_match_confidence == Decimal("0.99")

    def test_missing_overlay_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_settings(tmp_path / "nope.yaml", environ={})

    def test_non_mapping_document_rejected(self, tmp_path):
        path = _write(tmp_path, "- just\n- a list\n")

        with pytest.raises(ValueError, match="mapping"):
            load_settings(path, environ={})

    def test_merge_is_recursive(self):
        merged = merge({"a": {"x": 1, "y": 2}, "b": 1}, {"a": {"y": 3}})

        assert merged == {"a": {"x": 1, "y": 3}, "b": 1}


class TestEnvironment:
    def test_database_url_override(self):
        settings = load_settings(
            environ={"ATTRIBUTION_DATABASE_URL": "postgresql://localhost/tuition"}
        )

        assert settings.database.url == "postgresql://localhost/tuition"

    def test_generic_database_url_fallback(self):
        data = apply_env_overrides({}, {"DATABASE_URL": "sqlite:///school.db"})

        assert data == {"database": {"url": "sqlite:///school.db"}}

    def test_specific_variable_wins(self):
        data = apply_env_overrides(
            {},
            {
                "ATTRIBUTION_DATABASE_URL": "postgresql://localhost/a",
                "DATABASE_URL": "postgresql://localhost/b",
            },
        )

        assert data["database"]["url"] == "postgresql://localhost/a"

    def test_log_level_override_is_normalised(self):
        settings = load_settings(environ={"ATTRIBUTION_LOG_LEVEL": "debug"})

        assert settings.logging.level == "DEBUG"


class TestValidation:
    @pytest.mark.parametrize(
        "body, message",
        [
            ("policy:\n  epsilom: \"1.00\"\n", "Unknown policy"),
            ("polcy:\n  epsilon: \"1.00\"\n", "Unknown configuration section"),
            ("policy:\n  epsilon: 1.5\n", "must be quoted"),
            ("policy:\n  epsilon: \"0\"\n", "epsilon must be positive"),
            ("policy:\n  max_prepaid_periods: 1\n", "at least 2"),
            ("policy:\n  exact_match_confidence: \"1.20\"\n", "within"),
            ("policy:\n  currency: DOLLARS\n", "ISO 4217"),
            ("logging:\n  level: LOUD\n", "logging.level"),
            ("database:\n  url: \"\"\n", "must not be empty"),
        ],
    )
    def test_invalid_settings_rejected(self, tmp_path, body, message):
        path = _write(tmp_path, body)

        with pytest.raises(ValueError, match=message):
            load_settings(path, environ={})


class TestChecksum:
    def test_checksum_is_deterministic(self):
        assert load_settings(environ={}).checksum == load_settings(environ={}).checksum

    def test_checksum_changes_with_policy(self, tmp_path):
        path = _write(tmp_path, 'policy:\n  epsilon: "0.25"\n')

        assert load_settings(path, environ={}).checksum != load_settings(environ={}).checksum

    def test_checksum_ignores_key_order(self):
        assert compute_checksum({"a": 1, "b": 2}) == compute_checksum({"b": 2, "a": 1})

    def test_parse_settings_accepts_empty_document(self):
        settings = parse_settings({})

        assert settings.policy.epsilon == Decimal("1.00")


class TestBridges:
    def test_rules_follow_policy(self, tmp_path):
        path = _write(
            tmp_path,
            'policy:\n  epsilon: "0.05"\n  proportional_confidence: "0.40"\n'
            '  suggestion_note: "Check with the office"\n',
        )

        rules = build_attribution_rules(load_settings(path, environ={}))

        assert isinstance(rules, AttributionRules)
        assert rules.epsilon == Decimal("0.05")
        assert rules.proportional_confidence == Decimal("0.40")
        assert rules.suggestion_note == "Check with the office"


class TestActiveConfig:
    def test_load_is_logged_with_checksum(self, captured_logs):
        settings = get_active_config(environ={})

        loaded = [r for r in captured_logs() if r["message"] == "attribution_config_loaded"]
        assert len(loaded) == 1
        assert loaded[0]["checksum"] == settings.checksum
        assert loaded[0]["source"] == "defaults"

    def test_path_accepted_as_string(self, tmp_path):
        path = _write(tmp_path, "policy:\n  max_prepaid_periods: 3\n")

        settings = get_active_config(str(path), environ={})

        assert settings.policy.max_prepaid_periods == 3
