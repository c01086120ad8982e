from __future__ import annotations

import logging
import sys
from collections.abc import Callable
from typing import Protocol, cast

import pytest
import structlog

from portfolio_core.logging import (
    configure_structlog,
    get_log_level_value,
    log_exception,
    log_info,
    log_warning,
)
from portfolio_core.settings import AiBreakerSettings
from tests.portfolio_core.support.fakes import FakeLogger


def _root_renderer() -> object:
    handlers = logging.getLogger().handlers
    assert len(handlers) == 1
    formatter = handlers[0].formatter
    assert isinstance(formatter, structlog.stdlib.ProcessorFormatter)
    return formatter.processors[-1]


@pytest.mark.parametrize(
    ("level", "expected"),
    [
        ("debug", logging.DEBUG),
        (" Warning ", logging.WARNING),
        ("CRITICAL", logging.CRITICAL),
    ],
)
def test_get_log_level_value_normalizes_names(level: str, expected: int) -> None:
    assert get_log_level_value(level) == expected


def test_get_log_level_value_lists_choices_on_unknown_level() -> None:
    with pytest.raises(ValueError, match="DEBUG, ERROR"):
        get_log_level_value("verbose")


@pytest.mark.parametrize(
    ("isatty", "json_output", "renderer_type"),
    [
        (True, None, structlog.dev.ConsoleRenderer),
        (False, None, structlog.processors.JSONRenderer),
        (True, True, structlog.processors.JSONRenderer),
        (False, False, structlog.dev.ConsoleRenderer),
    ],
)
def test_configure_structlog_selects_renderer(
    monkeypatch: pytest.MonkeyPatch,
    isatty: bool,
    json_output: bool | None,
    renderer_type: type,
) -> None:
    monkeypatch.setattr(sys.stderr, "isatty", lambda: isatty, raising=False)

    configure_structlog(log_level="INFO", json_output=json_output)

    assert isinstance(_root_renderer(), renderer_type)


def test_settings_configure_logging_applies_level_and_renderer(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(sys.stderr, "isatty", lambda: True, raising=False)
    monkeypatch.setenv("AI_BREAKER_LOG_LEVEL", "warning")
    monkeypatch.setenv("AI_BREAKER_LOG_JSON", "true")

    AiBreakerSettings().configure_logging()
    AiBreakerSettings().configure_logging()

    assert logging.getLogger().level == logging.WARNING
    assert isinstance(_root_renderer(), structlog.processors.JSONRenderer)


def test_configured_stdlib_records_render_breaker_fields(
    capsys: pytest.CaptureFixture[str],
) -> None:
    configure_structlog(log_level="INFO", json_output=True)
    logger = logging.getLogger("tests.portfolio_core.logging.render")

    log_info(logger, "circuit_breaker.state_changed", breaker="github")

    err = capsys.readouterr().err
    assert '"event": "circuit_breaker.state_changed"' in err
    assert '"level": "info"' in err


class _CaptureHandler(logging.Handler):
    def __init__(self) -> None:
        super().__init__()
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


class _RecordWithBreakerFields(Protocol):
    breaker: str
    failure_count: int


@pytest.mark.parametrize(
    ("log_fn", "level"),
    [
        (log_info, "info"),
        (log_warning, "warning"),
        (log_exception, "exception"),
    ],
)
def test_helpers_pass_fields_as_keywords_to_structured_loggers(
    log_fn: Callable[..., None],
    level: str,
) -> None:
    logger = FakeLogger()

    log_fn(logger, "circuit_breaker.call_failed", breaker="ai", failure_count=2)

    assert logger.calls == [
        (level, "circuit_breaker.call_failed", {"breaker": "ai", "failure_count": 2})
    ]


def test_helpers_pass_fields_as_extra_to_stdlib_loggers() -> None:
    logger = logging.getLogger("tests.portfolio_core.logging.helpers")
    logger.handlers.clear()
    logger.propagate = False
    logger.setLevel(logging.INFO)
    handler = _CaptureHandler()
    logger.addHandler(handler)

    log_warning(logger, "circuit_breaker.call_failed", breaker="ai", failure_count=2)

    [record] = handler.records
    typed_record = cast(_RecordWithBreakerFields, record)
    assert record.levelno == logging.WARNING
    assert record.getMessage() == "circuit_breaker.call_failed"
    assert typed_record.breaker == "ai"
    assert typed_record.failure_count == 2
