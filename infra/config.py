"""Centralized application configuration with schema validation.

Flat environment names (for example ``MODRON_LOG_LEVEL`` or
``MAX_PARALLEL_COLLECTIONS``) and nested names (for example
``COLLECTOR__MAX_PARALLEL_COLLECTIONS``) are both accepted; a local ``.env``
file is read before process env values.
"""

from __future__ import annotations

import json
import os
from collections.abc import Mapping
from pathlib import Path
from threading import Lock
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from contracts.model import Impact, TagConfig

_DEFAULT_RETRYABLE_CODES = (408, 429, 500, 502, 503, 504)
_DEFAULT_SKIPPABLE_CODES = (403, 404)


def _parse_codes(value: object, default: tuple[int, ...]) -> tuple[int, ...]:
    """Accept a list or a comma-separated string of HTTP status codes."""
    if value is None:
        return default
    if isinstance(value, str):
        parts = [part.strip() for part in value.split(",") if part.strip()]
    elif isinstance(value, (list, tuple, set, frozenset)):
        parts = [str(part).strip() for part in value if str(part).strip()]
    else:
        raise TypeError("status codes must be a list[int] or comma-separated string")
    codes: list[int] = []
    for part in parts:
        code = int(part)
        if code < 100 or code > 599:
            raise ValueError(f"not an HTTP status code: {code}")
        if code not in codes:
            codes.append(code)
    return tuple(codes)


def _parse_bool(value: object, default: bool) -> bool:
    if value is None:
        return default
    text = str(value).strip().lower()
    if text in {"1", "true", "yes", "on"}:
        return True
    if text in {"0", "false", "no", "off"}:
        return False
    return default


class CollectorConfig(BaseModel):
    """Collection orchestrator and backoff settings."""

    model_config = ConfigDict(frozen=True)

    max_parallel_collections: int = Field(default=50, ge=1, le=1000)
    retryable_codes: tuple[int, ...] = Field(default=_DEFAULT_RETRYABLE_CODES)
    skippable_codes: tuple[int, ...] = Field(default=_DEFAULT_SKIPPABLE_CODES)
    backoff_max_attempts: int = Field(default=100, ge=1)
    backoff_max_wait_seconds: float = Field(default=30.0, gt=0.0)
    backoff_max_elapsed_seconds: float = Field(default=3600.0, gt=0.0)

    @field_validator("retryable_codes", mode="before")
    @classmethod
    def _normalize_retryable(cls, value: object) -> tuple[int, ...]:
        return _parse_codes(value, _DEFAULT_RETRYABLE_CODES)

    @field_validator("skippable_codes", mode="before")
    @classmethod
    def _normalize_skippable(cls, value: object) -> tuple[int, ...]:
        return _parse_codes(value, _DEFAULT_SKIPPABLE_CODES)


class RateLimitConfig(BaseModel):
    """Per-minute quotas of the shared provider rate limiters."""

    model_config = ConfigDict(frozen=True)

    resource_search_per_minute: float = Field(default=350.0, gt=0.0)
    resource_search_burst: int = Field(default=1, ge=1)
    iam_search_per_minute: float = Field(default=350.0, gt=0.0)
    iam_search_burst: int = Field(default=1, ge=1)
    findings_per_minute: float = Field(default=1000.0, gt=0.0)
    findings_burst: int = Field(default=1, ge=1)
    subnets_per_minute: float = Field(default=10_000.0, gt=0.0)
    subnets_burst: int = Field(default=5000, ge=1)


class TagSettings(BaseModel):
    """Tag keys driving the impact classification of resource groups."""

    model_config = ConfigDict(frozen=True)

    environment: str = Field(default="")
    employee_data: str = Field(default="")
    customer_data: str = Field(default="")
    impact_map: dict[str, Impact] = Field(default_factory=dict)

    @field_validator("environment", "employee_data", "customer_data", mode="before")
    @classmethod
    def _normalize_key(cls, value: object) -> str:
        return str(value or "").strip()

    @field_validator("impact_map", mode="before")
    @classmethod
    def _normalize_impact_map(cls, value: object) -> dict[str, Impact]:
        """Accept a mapping or a ``prod=high,dev=low`` string."""
        if value is None:
            return {}
        items: list[tuple[str, object]]
        if isinstance(value, str):
            items = []
            for part in value.split(","):
                if not part.strip():
                    continue
                if "=" not in part:
                    raise ValueError(f"impact map entry must be env=impact: {part.strip()!r}")
                env_name, impact = part.split("=", 1)
                items.append((env_name.strip(), impact.strip()))
        elif isinstance(value, Mapping):
            items = [(str(k).strip(), v) for k, v in value.items()]
        else:
            raise TypeError("tags.impact_map must be a mapping or 'env=impact,...' string")
        out: dict[str, Impact] = {}
        for env_name, impact in items:
            if not env_name:
                raise ValueError("impact map entry has an empty environment name")
            out[env_name] = impact if isinstance(impact, Impact) else Impact.parse(str(impact))
        return out

    def to_tag_config(self) -> TagConfig:
        return TagConfig(
            environment=self.environment,
            employee_data=self.employee_data,
            customer_data=self.customer_data,
            impact_map=dict(self.impact_map),
        )


class EngineConfig(BaseModel):
    """Rule engine settings."""

    model_config = ConfigDict(frozen=True)

    excluded_rules: tuple[str, ...] = Field(default=())
    rule_configs: dict[str, dict[str, Any]] = Field(default_factory=dict)
    resource_cache_ttl_seconds: float = Field(default=1800.0, ge=0.0)

    @field_validator("excluded_rules", mode="before")
    @classmethod
    def _normalize_excluded(cls, value: object) -> tuple[str, ...]:
        if value is None:
            return ()
        if isinstance(value, str):
            parts = [part.strip() for part in value.split(",")]
        elif isinstance(value, (list, tuple, set, frozenset)):
            parts = [str(part).strip() for part in value]
        else:
            raise TypeError("engine.excluded_rules must be a list[str] or comma-separated string")
        return tuple(part for part in parts if part)

    @field_validator("rule_configs", mode="before")
    @classmethod
    def _parse_rule_configs(cls, value: object) -> object:
        """Accept a mapping or a JSON object keyed by rule name."""
        if value is None:
            return {}
        if isinstance(value, str):
            text = value.strip()
            if not text:
                return {}
            try:
                parsed = json.loads(text)
            except json.JSONDecodeError as exc:
                raise ValueError(f"engine.rule_configs is not valid JSON: {exc}") from exc
            if not isinstance(parsed, dict):
                raise ValueError("engine.rule_configs must be a JSON object")
            return parsed
        return value


class LoggingSettings(BaseModel):
    """Repository-wide logging settings."""

    model_config = ConfigDict(frozen=True)

    level: str = Field(default="INFO")
    json_logs: bool = Field(default=False)
    override_root_handlers: bool = Field(default=False)

    @field_validator("level")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        text = str(value or "").strip().upper()
        if text in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            return text
        return "INFO"

    @field_validator("json_logs", "override_root_handlers", mode="before")
    @classmethod
    def _normalize_flag(cls, value: object) -> bool:
        return _parse_bool(value, False)


class Settings(BaseModel):
    """Top-level settings model."""

    model_config = ConfigDict(frozen=True)

    collector: CollectorConfig = Field(default_factory=CollectorConfig)
    rate_limits: RateLimitConfig = Field(default_factory=RateLimitConfig)
    tags: TagSettings = Field(default_factory=TagSettings)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def from_env(
        cls,
        *,
        env: Mapping[str, str] | None = None,
        env_file: str = ".env",
    ) -> Settings:
        """Build settings from `.env` then environment variables."""
        runtime_env = os.environ if env is None else env
        merged_env = _merge_env(_load_dotenv(Path(env_file)), runtime_env)
        payload = _build_payload(merged_env)
        return cls.model_validate(payload)


def _load_dotenv(path: Path) -> dict[str, str]:
    """Parse a minimal `.env` file format."""
    if not path.exists() or not path.is_file():
        return {}

    values: dict[str, str] = {}
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" not in line:
            continue
        key, raw_value = line.split("=", 1)
        key_clean = key.strip()
        value = raw_value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        if key_clean:
            values[key_clean] = value
    return values


def _merge_env(dotenv_values: Mapping[str, str], runtime_env: Mapping[str, str]) -> dict[str, str]:
    """Return env map where process env overrides `.env` values."""
    merged = {str(k): str(v) for k, v in dotenv_values.items()}
    for key, value in runtime_env.items():
        merged[str(key)] = str(value)
    return merged


def _first_non_empty(env: Mapping[str, str], *keys: str) -> str | None:
    """Return the first non-empty value for the provided keys."""
    for key in keys:
        value = str(env.get(key, "")).strip()
        if value:
            return value
    return None


def _build_payload(env: Mapping[str, str]) -> dict[str, object]:
    """Build nested settings payload from env values."""
    collector = {
        "max_parallel_collections": _first_non_empty(
            env, "COLLECTOR__MAX_PARALLEL_COLLECTIONS", "MAX_PARALLEL_COLLECTIONS"
        ),
        "retryable_codes": _first_non_empty(env, "COLLECTOR__RETRYABLE_CODES", "RETRYABLE_CODES"),
        "skippable_codes": _first_non_empty(env, "COLLECTOR__SKIPPABLE_CODES", "SKIPPABLE_CODES"),
        "backoff_max_attempts": _first_non_empty(
            env, "COLLECTOR__BACKOFF_MAX_ATTEMPTS", "BACKOFF_MAX_ATTEMPTS"
        ),
        "backoff_max_wait_seconds": _first_non_empty(
            env, "COLLECTOR__BACKOFF_MAX_WAIT_SECONDS", "BACKOFF_MAX_WAIT_SECONDS"
        ),
        "backoff_max_elapsed_seconds": _first_non_empty(
            env, "COLLECTOR__BACKOFF_MAX_ELAPSED_SECONDS", "BACKOFF_MAX_ELAPSED_SECONDS"
        ),
    }
    rate_limits = {
        field_name: _first_non_empty(env, f"RATE_LIMITS__{field_name.upper()}", f"RATE_LIMIT_{field_name.upper()}")
        for field_name in RateLimitConfig.model_fields
    }
    tags = {
        "environment": _first_non_empty(env, "TAGS__ENVIRONMENT", "ENVIRONMENT_TAG"),
        "employee_data": _first_non_empty(env, "TAGS__EMPLOYEE_DATA", "EMPLOYEE_DATA_TAG"),
        "customer_data": _first_non_empty(env, "TAGS__CUSTOMER_DATA", "CUSTOMER_DATA_TAG"),
        "impact_map": _first_non_empty(env, "TAGS__IMPACT_MAP", "IMPACT_MAP"),
    }
    engine = {
        "excluded_rules": _first_non_empty(env, "ENGINE__EXCLUDED_RULES", "EXCLUDED_RULES"),
        "rule_configs": _first_non_empty(env, "ENGINE__RULE_CONFIGS", "RULE_CONFIGS"),
        "resource_cache_ttl_seconds": _first_non_empty(
            env, "ENGINE__RESOURCE_CACHE_TTL_SECONDS", "RESOURCE_CACHE_TTL_SECONDS"
        ),
    }
    logging_settings = {
        "level": _first_non_empty(env, "LOGGING__LEVEL", "MODRON_LOG_LEVEL"),
        "json_logs": _first_non_empty(env, "LOGGING__JSON_LOGS", "MODRON_LOG_JSON"),
        "override_root_handlers": _first_non_empty(
            env, "LOGGING__OVERRIDE_ROOT_HANDLERS", "MODRON_LOG_OVERRIDE"
        ),
    }
    return {
        "collector": {k: v for k, v in collector.items() if v is not None},
        "rate_limits": {k: v for k, v in rate_limits.items() if v is not None},
        "tags": {k: v for k, v in tags.items() if v is not None},
        "engine": {k: v for k, v in engine.items() if v is not None},
        "logging": {k: v for k, v in logging_settings.items() if v is not None},
    }


_SETTINGS_LOCK = Lock()
_SETTINGS_CACHE: Settings | None = None


def get_settings(*, reload: bool = False) -> Settings:
    """Return cached settings, optionally forcing reload from env."""
    global _SETTINGS_CACHE
    with _SETTINGS_LOCK:
        if reload or _SETTINGS_CACHE is None:
            _SETTINGS_CACHE = Settings.from_env()
        return _SETTINGS_CACHE


def clear_settings_cache() -> None:
    """Clear in-process settings cache."""
    global _SETTINGS_CACHE
    with _SETTINGS_LOCK:
        _SETTINGS_CACHE = None


__all__ = [
    "CollectorConfig",
    "EngineConfig",
    "LoggingSettings",
    "RateLimitConfig",
    "Settings",
    "TagSettings",
    "get_settings",
    "clear_settings_cache",
    "ValidationError",
]
