"""Tests for environment configuration."""

from decimal import Decimal
from pathlib import Path

import pytest

from sentinel.config import DEFAULT_MODEL_VARIANTS, SentinelConfig
from sentinel.errors import ConfigError


def test_defaults():
    config = SentinelConfig.from_env({})
    assert config.api_keys == []
    assert config.model_variants == list(DEFAULT_MODEL_VARIANTS)
    assert config.max_attempts == 14
    assert config.hourly_limit == Decimal("1000000")
    assert config.database_url is None


def test_collects_distinct_keys_in_order():
    config = SentinelConfig.from_env({
        "GEMINI_API_KEY": "a",
        "GEMINI_API_KEY_1": "b",
        "GEMINI_API_KEY_2": "a",
        "GEMINI_API_KEY_6": " c ",
    })
    assert config.api_keys == ["a", "b", "c"]


def test_postgres_scheme_rewritten():
    config = SentinelConfig.from_env({"DATABASE_URL": "postgres://u:p@db/sentinel"})
    assert config.database_url == "postgresql://u:p@db/sentinel"


def test_home_and_paths(tmp_path):
    config = SentinelConfig.from_env({"SENTINEL_HOME": str(tmp_path)})
    assert config.sqlite_path == tmp_path / "sentinel.db"
    assert config.audit_key_path.parent == tmp_path / ".secrets"


def test_overrides():
    config = SentinelConfig.from_env({
        "SENTINEL_MODEL_VARIANTS": "m1, m2,",
        "SENTINEL_HOURLY_LIMIT": "500",
        "SENTINEL_FALLBACK_AUTO_APPROVE": "false",
        "SENTINEL_POLICY_PATH": "/etc/sentinel/policy.md",
    })
    assert config.model_variants == ["m1", "m2"]
    assert config.hourly_limit == Decimal("500")
    assert config.fallback_auto_approve is False
    assert config.policy_path == Path("/etc/sentinel/policy.md")


@pytest.mark.parametrize(
    "env",
    [
        {"SENTINEL_MAX_ATTEMPTS": "many"},
        {"SENTINEL_MAX_ATTEMPTS": "0"},
        {"SENTINEL_HOURLY_LIMIT": "lots"},
        {"SENTINEL_HOURLY_LIMIT": "-5"},
        {"SENTINEL_HTTP_TIMEOUT": "soon"},
    ],
)
def test_invalid_values(env):
    with pytest.raises(ConfigError):
        SentinelConfig.from_env(env)
