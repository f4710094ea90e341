"""Centralized logging configuration.

Text logs for humans and JSON logs for collectors. Collection and scan code
tags records with `extra={"resource_group": ..., "collect_id": ...}`; the JSON
formatter lifts those fields onto the record, and `set_run_context()` values
are merged into every record emitted while the context is active.
"""

from __future__ import annotations

import json
import logging
import sys
import time
from collections.abc import Mapping
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

from infra.config import get_settings
from version import ENGINE_NAME, ENGINE_VERSION

# Run-scoped fields (collect_id, scan_id, ...) merged into JSON records.
run_ctx: ContextVar[dict[str, Any] | None] = ContextVar("run_ctx", default=None)

_STANDARD_ATTRS = frozenset(
    {
        "name", "msg", "args", "levelname", "levelno", "pathname", "filename", "module",
        "exc_info", "exc_text", "stack_info", "lineno", "funcName", "created", "msecs",
        "relativeCreated", "thread", "threadName", "processName", "process", "taskName",
        "message", "asctime",
    }
)


def set_run_context(**kwargs: Any) -> None:
    """Set values included in all subsequent JSON log entries of this task."""
    current = dict(run_ctx.get() or {})
    current.update(kwargs)
    run_ctx.set(current)


def clear_run_context() -> None:
    run_ctx.set({})


def get_run_context() -> dict[str, Any]:
    ctx = run_ctx.get()
    return dict(ctx) if ctx else {}


def _utc_iso8601() -> str:
    # Example: 2026-01-24T18:03:12.123Z
    return datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _jsonable(value: Any) -> Any:
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(v) for v in value]
    if isinstance(value, Mapping):
        return {str(k): _jsonable(v) for k, v in value.items()}
    return str(value)


class JsonFormatter(logging.Formatter):
    """
    JSON formatter:
      - one valid JSON object per record
      - `extra=` fields and run context lifted to top level
      - exception text included when present
    """

    def __init__(self, *, extra_fields: Mapping[str, Any] | None = None) -> None:
        super().__init__()
        self._extra_fields = dict(extra_fields or {})

    def format(self, record: logging.LogRecord) -> str:
        base: dict[str, Any] = {
            "timestamp": _utc_iso8601(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "func": record.funcName,
            "line": record.lineno,
            "thread": record.threadName,
        }

        for k, v in self._extract_extras(record).items():
            if k not in base:
                base[k] = _jsonable(v)

        for k, v in self._extra_fields.items():
            base.setdefault(k, _jsonable(v))

        if record.exc_info:
            base["exception"] = self.formatException(record.exc_info)

        for k, v in get_run_context().items():
            base.setdefault(k, _jsonable(v))

        return json.dumps(base, ensure_ascii=False)

    @staticmethod
    def _extract_extras(record: logging.LogRecord) -> dict[str, Any]:
        return {k: v for k, v in record.__dict__.items() if k not in _STANDARD_ATTRS}


class TextFormatter(logging.Formatter):
    """Human-friendly logs with UTC timestamps."""

    converter = time.gmtime  # UTC

    def __init__(self) -> None:
        super().__init__("%(asctime)sZ | %(levelname)s | %(name)s | %(message)s")


def setup_logging(
    *,
    level: str | None = None,
    json_logs: bool | None = None,
    override_root_handlers: bool | None = None,
    extra_fields: Mapping[str, Any] | None = None,
) -> None:
    """
    Configure the root logger.

    Env vars:
      - MODRON_LOG_LEVEL: DEBUG|INFO|WARNING|ERROR (default INFO)
      - MODRON_LOG_JSON:  1/0 (default 0)
      - MODRON_LOG_OVERRIDE: 1/0 (default 0)
         If 1, replaces any pre-configured root handlers.
         If 0, only configures logging if root has no handlers.
    """
    config = get_settings(reload=True).logging

    resolved_level = (level or config.level).upper()
    use_json = json_logs if json_logs is not None else config.json_logs
    override = override_root_handlers if override_root_handlers is not None else config.override_root_handlers

    root = logging.getLogger()
    root.setLevel(getattr(logging, resolved_level, logging.INFO))

    handler = logging.StreamHandler(sys.stdout)
    if use_json:
        handler.setFormatter(JsonFormatter(
            extra_fields={"engine": ENGINE_NAME, "engine_version": ENGINE_VERSION, **dict(extra_fields or {})}
        ))
    else:
        handler.setFormatter(TextFormatter())

    if override:
        for h in list(root.handlers):
            root.removeHandler(h)
        root.addHandler(handler)
    elif not root.handlers:
        root.addHandler(handler)

    # Provider SDK noise
    logging.getLogger("botocore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
