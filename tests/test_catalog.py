"""
Tests for the rule catalog.
"""

import json
from datetime import timedelta

import pytest

from admission_core.catalog import (
    RuleCatalog,
    load_catalog,
    parse_duration,
    scale_for_batch,
    severity_for,
)
from admission_core.errors import ConfigurationMissing
from admission_core.models import RateLimitConfig, RateLimitRule, Role, Severity


class TestParseDuration:
    """Tests for duration labels."""

    @pytest.mark.parametrize("label,expected", [
        ("15 m", timedelta(minutes=15)),
        ("24 h", timedelta(hours=24)),
        ("30s", timedelta(seconds=30)),
        ("2 d", timedelta(days=2)),
        ("500ms", timedelta(milliseconds=500)),
        (90, timedelta(seconds=90)),
    ])
    def test_parses_labels(self, label, expected):
        """Should parse unit-suffixed labels and bare seconds."""
        assert parse_duration(label) == expected

    def test_rejects_garbage(self):
        """Should reject unknown units."""
        with pytest.raises(ValueError):
            parse_duration("15 fortnights")


class TestRuleCatalog:
    """Tests for config resolution."""

    def test_login_config(self):
        """Should ship the login policy: 5 per 15 minutes, 30 minute block."""
        config = RuleCatalog().get("auth_login")

        assert config.key == "auth:login"
        assert config.primary_rule.requests_allowed == 5
        assert config.primary_rule.window == timedelta(minutes=15)
        assert config.block_duration == timedelta(minutes=30)

    def test_strict_lookup_raises(self):
        """Strict lookup should raise ConfigurationMissing for unknown names."""
        with pytest.raises(ConfigurationMissing) as exc:
            RuleCatalog().get("nope")

        assert exc.value.name == "nope"
        assert isinstance(exc.value, KeyError)

    def test_resolve_falls_back_to_public(self):
        """Unknown names should resolve to the public tier."""
        assert RuleCatalog().resolve("nope").key == "public"

    def test_operations_take_precedence(self):
        """Operation configs should be found by name."""
        assert RuleCatalog().resolve("password_change").key == "op:password_change"

    @pytest.mark.parametrize("role,key", [
        (None, "api:user"),
        (Role.USER, "api:user"),
        (Role.ADMIN, "api:admin"),
        (Role.SECURITY_LEAD, "api:security_lead"),
    ])
    def test_role_tiers(self, role, key):
        """The authenticated API tier should follow the caller's role."""
        assert RuleCatalog().resolve("api_user", role).key == key

    def test_role_ignored_elsewhere(self):
        """Role should not change non-API configs."""
        assert RuleCatalog().resolve("auth_login", Role.ADMIN).key == "auth:login"

    def test_unknown_default_rejected(self):
        """Should refuse a default that is not defined."""
        with pytest.raises(ValueError):
            RuleCatalog(default_name="missing")

    def test_from_mapping_overrides(self):
        """Overrides should merge over the defaults."""
        catalog = RuleCatalog.from_mapping({
            "endpoints": {
                "auth_login": {
                    "key": "auth:login",
                    "rules": [{"requests": 10, "window": "1 m"}, {"requests": 50, "window": "1 h"}],
                    "block_duration": "5 m",
                },
            },
        })

        config = catalog.get("auth_login")
        assert [r.requests_allowed for r in config.rules] == [10, 50]
        assert config.block_duration == timedelta(minutes=5)
        assert catalog.get("public").key == "public"

    def test_load_catalog_from_file(self, tmp_path):
        """Should load JSON overrides from disk."""
        path = tmp_path / "limits.json"
        path.write_text(json.dumps({
            "operations": {"export": {"key": "op:export", "rules": [{"requests": 1, "window": "1 d"}]}},
        }))

        catalog = load_catalog(path)

        export = catalog.get("export")
        assert export.key == "op:export"
        assert export.block_duration is None

    def test_load_catalog_without_path(self):
        """No path should yield the built-in catalog."""
        assert "auth_login" in load_catalog().names()


class TestSeverityAndBatch:
    """Tests for severity tags and batch scaling."""

    def test_severity_map(self):
        """Severity should follow the config key."""
        assert severity_for("auth:login") == Severity.CRITICAL
        assert severity_for("api:admin") == Severity.LOW
        assert severity_for("unknown") == Severity.MEDIUM

    def test_scale_for_batch(self):
        """Allowance should be divided by the batch size."""
        config = RateLimitConfig(
            key="api:user",
            rules=(RateLimitRule(100, timedelta(hours=1)),),
        )

        scaled = scale_for_batch(config, 10)

        assert scaled.primary_rule.requests_allowed == 10
        assert scaled.primary_rule.window == timedelta(hours=1)
        assert scale_for_batch(config, 1000).primary_rule.requests_allowed == 1

    def test_scale_rejects_zero(self):
        """Batch size must be positive."""
        config = RuleCatalog().default
        with pytest.raises(ValueError):
            scale_for_batch(config, 0)


class TestModels:
    """Tests for rule and config validation."""

    def test_rule_requires_positive_values(self):
        """Rules need a positive allowance and window."""
        with pytest.raises(ValueError):
            RateLimitRule(0, timedelta(minutes=1))
        with pytest.raises(ValueError):
            RateLimitRule(1, timedelta(0))

    def test_config_requires_rules(self):
        """Configs need at least one rule."""
        with pytest.raises(ValueError):
            RateLimitConfig(key="empty", rules=())

    def test_config_accepts_list(self):
        """Rule lists should be stored as tuples."""
        config = RateLimitConfig(key="k", rules=[RateLimitRule(1, timedelta(seconds=1))])
        assert isinstance(config.rules, tuple)
