"""Unit tests for logging setup and formatters."""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Iterator

import pytest

from infra.config import clear_settings_cache
from infra.logging_config import (
    JsonFormatter,
    TextFormatter,
    clear_run_context,
    get_run_context,
    set_run_context,
    setup_logging,
)


@pytest.fixture
def restore_root() -> Iterator[logging.Logger]:
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)
    clear_run_context()
    clear_settings_cache()


def _record(msg: str = "collected %d resources", *args: object, **extra: object) -> logging.LogRecord:
    record = logging.LogRecord("collector.orchestrator", logging.INFO, __file__, 10, msg, args or (3,), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_lifts_extras_and_run_context() -> None:
    set_run_context(collect_id="collect-1")
    try:
        payload = json.loads(
            JsonFormatter(extra_fields={"engine": "modron"}).format(
                _record(resource_group="projects/p", codes=(403, 404))
            )
        )
    finally:
        clear_run_context()

    assert payload["message"] == "collected 3 resources"
    assert payload["level"] == "INFO"
    assert payload["logger"] == "collector.orchestrator"
    assert payload["resource_group"] == "projects/p"
    assert payload["codes"] == [403, 404]
    assert payload["collect_id"] == "collect-1"
    assert payload["engine"] == "modron"
    assert payload["timestamp"].endswith("Z")


def test_json_formatter_includes_exception() -> None:
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())

    payload = json.loads(JsonFormatter().format(record))

    assert "RuntimeError: boom" in payload["exception"]


def test_run_context_accumulates() -> None:
    clear_run_context()
    set_run_context(collect_id="c")
    set_run_context(scan_id="s")

    assert get_run_context() == {"collect_id": "c", "scan_id": "s"}
    clear_run_context()
    assert get_run_context() == {}


def test_text_formatter_is_utc() -> None:
    line = TextFormatter().format(_record())

    assert " | INFO | collector.orchestrator | collected 3 resources" in line
    assert line.split(" | ")[0].endswith("Z")


def test_setup_logging_override_installs_json_handler(
    restore_root: logging.Logger, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("MODRON_LOG_LEVEL", "WARNING")
    monkeypatch.setenv("MODRON_LOG_JSON", "1")

    setup_logging(override_root_handlers=True)

    assert restore_root.level == logging.WARNING
    assert len(restore_root.handlers) == 1
    assert isinstance(restore_root.handlers[0].formatter, JsonFormatter)
    assert logging.getLogger("botocore").level == logging.WARNING


def test_setup_logging_arguments_win_over_env(
    restore_root: logging.Logger, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("MODRON_LOG_JSON", "1")

    setup_logging(level="debug", json_logs=False, override_root_handlers=True)

    assert restore_root.level == logging.DEBUG
    assert isinstance(restore_root.handlers[0].formatter, TextFormatter)
