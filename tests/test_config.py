"""Unit tests for centralized configuration parsing and validation."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from contracts.model import Impact
from infra.config import (
    CollectorConfig,
    EngineConfig,
    Settings,
    ValidationError,
    clear_settings_cache,
    get_settings,
)


def test_defaults() -> None:
    settings = Settings.from_env(env={}, env_file=".missing.env")

    assert settings.collector.max_parallel_collections == 50
    assert settings.collector.retryable_codes == (408, 429, 500, 502, 503, 504)
    assert settings.collector.skippable_codes == (403, 404)
    assert settings.collector.backoff_max_attempts == 100
    assert settings.collector.backoff_max_wait_seconds == 30.0
    assert settings.collector.backoff_max_elapsed_seconds == 3600.0
    assert settings.rate_limits.resource_search_per_minute == 350.0
    assert settings.rate_limits.subnets_burst == 5000
    assert settings.engine.resource_cache_ttl_seconds == 1800.0
    assert settings.engine.excluded_rules == ()
    assert settings.logging.level == "INFO"


def test_settings_reads_flat_env_keys() -> None:
    """Flat env keys should map to nested settings models."""
    env = {
        "MAX_PARALLEL_COLLECTIONS": "7",
        "RETRYABLE_CODES": "429, 503,503",
        "SKIPPABLE_CODES": "404",
        "RATE_LIMIT_FINDINGS_PER_MINUTE": "60",
        "ENVIRONMENT_TAG": "1111/environment",
        "IMPACT_MAP": "prod=high, dev=IMPACT_LOW",
        "EXCLUDED_RULES": "BUCKET_IS_PUBLIC, ,VM_HAS_PUBLIC_IP",
        "MODRON_LOG_LEVEL": "debug",
        "MODRON_LOG_JSON": "1",
    }
    settings = Settings.from_env(env=env, env_file=".missing.env")

    assert settings.collector.max_parallel_collections == 7
    assert settings.collector.retryable_codes == (429, 503)
    assert settings.collector.skippable_codes == (404,)
    assert settings.rate_limits.findings_per_minute == 60.0
    assert settings.tags.environment == "1111/environment"
    assert settings.tags.impact_map == {"prod": Impact.HIGH, "dev": Impact.LOW}
    assert settings.engine.excluded_rules == ("BUCKET_IS_PUBLIC", "VM_HAS_PUBLIC_IP")
    assert settings.logging.level == "DEBUG"
    assert settings.logging.json_logs is True


def test_settings_reads_nested_env_keys() -> None:
    """Nested env keys should be supported with `__` delimiter and win over flat ones."""
    env = {
        "COLLECTOR__MAX_PARALLEL_COLLECTIONS": "3",
        "MAX_PARALLEL_COLLECTIONS": "9",
        "COLLECTOR__SKIPPABLE_CODES": "404",
        "TAGS__EMPLOYEE_DATA": "1111/employee_data",
        "ENGINE__RULE_CONFIGS": '{"EXPORTED_KEY_EXPIRY_TOO_LONG": {"expiry_months": 12}}',
        "RATE_LIMITS__SUBNETS_BURST": "10",
    }
    settings = Settings.from_env(env=env, env_file=".missing.env")

    assert settings.collector.max_parallel_collections == 3
    assert settings.collector.skippable_codes == (404,)
    assert settings.tags.employee_data == "1111/employee_data"
    assert settings.engine.rule_configs == {"EXPORTED_KEY_EXPIRY_TOO_LONG": {"expiry_months": 12}}
    assert settings.rate_limits.subnets_burst == 10


def test_dotenv_is_read_and_process_env_wins(tmp_path: Path) -> None:
    env_file = tmp_path / ".env"
    env_file.write_text(
        "# comment\nBACKOFF_MAX_ATTEMPTS='12'\nMAX_PARALLEL_COLLECTIONS=4\nnot a pair\n",
        encoding="utf-8",
    )

    settings = Settings.from_env(env={"MAX_PARALLEL_COLLECTIONS": "8"}, env_file=str(env_file))

    assert settings.collector.backoff_max_attempts == 12
    assert settings.collector.max_parallel_collections == 8


@pytest.mark.parametrize(
    "env",
    [
        {"MAX_PARALLEL_COLLECTIONS": "0"},
        {"RETRYABLE_CODES": "700"},
        {"RETRYABLE_CODES": "abc"},
        {"IMPACT_MAP": "prod"},
        {"IMPACT_MAP": "prod=catastrophic"},
        {"RULE_CONFIGS": "{not json"},
        {"RULE_CONFIGS": "[1, 2]"},
        {"RATE_LIMIT_IAM_SEARCH_PER_MINUTE": "0"},
    ],
)
def test_invalid_values_raise_validation_error(env: dict[str, str]) -> None:
    """Invalid constrained values should fail schema validation."""
    with pytest.raises(ValidationError):
        Settings.from_env(env=env, env_file=".missing.env")


def test_invalid_log_level_falls_back_to_info() -> None:
    settings = Settings.from_env(env={"MODRON_LOG_LEVEL": "verbose"}, env_file=".missing.env")
    assert settings.logging.level == "INFO"


def test_tag_settings_build_tag_config() -> None:
    env = {
        "ENVIRONMENT_TAG": "1111/environment",
        "CUSTOMER_DATA_TAG": "1111/customer_data",
        "IMPACT_MAP": "prod=high",
    }
    tags = Settings.from_env(env=env, env_file=".missing.env").tags.to_tag_config()

    assert tags.environment == "1111/environment"
    assert tags.customer_data == "1111/customer_data"
    assert tags.employee_data == ""
    assert dict(tags.impact_map) == {"prod": Impact.HIGH}


def test_models_accept_python_values() -> None:
    collector = CollectorConfig(retryable_codes=[503, 429], skippable_codes=frozenset({404}))
    engine = EngineConfig(excluded_rules=["A", " B "], rule_configs={"A": {"x": 1}})

    assert collector.retryable_codes == (503, 429)
    assert collector.skippable_codes == (404,)
    assert engine.excluded_rules == ("A", "B")
    assert engine.rule_configs == {"A": {"x": 1}}


def test_get_settings_reload_rebuilds_cache(monkeypatch: Any) -> None:
    """Reload should rebuild cached settings from current process env."""
    clear_settings_cache()
    monkeypatch.setenv("MAX_PARALLEL_COLLECTIONS", "3")
    first = get_settings(reload=True)
    cached = get_settings()

    monkeypatch.setenv("MAX_PARALLEL_COLLECTIONS", "5")
    second = get_settings(reload=True)

    assert first.collector.max_parallel_collections == 3
    assert cached is first
    assert second.collector.max_parallel_collections == 5
    clear_settings_cache()
