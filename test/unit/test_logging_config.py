"""Unit tests for structured logging configuration."""

from __future__ import annotations

import json
import logging

from logging_config import (
    ContextFilter,
    JsonFormatter,
    PlainFormatter,
    bind_context,
    configure_logging,
    get_context,
    log_context,
)


def _record(message: str = "Linked release") -> logging.LogRecord:
    record = logging.LogRecord("releases.linker", logging.INFO, __file__, 1, message, None, None)
    ContextFilter().filter(record)
    return record


def test_log_context_is_scoped() -> None:
    """Bound values disappear when the block exits."""
    with log_context({"event_id": "evt-1", "cluster": None}):
        assert get_context() == {"event_id": "evt-1"}
        with log_context({"version_history_id": 7}):
            assert get_context() == {"event_id": "evt-1", "version_history_id": "7"}
        assert "version_history_id" not in get_context()
    assert "event_id" not in get_context()


def test_json_formatter_includes_context() -> None:
    """JSON lines carry core fields and the bound context."""
    with log_context({"event_id": "evt-9"}):
        payload = json.loads(JsonFormatter().format(_record()))

    assert payload["level"] == "INFO"
    assert payload["logger"] == "releases.linker"
    assert payload["message"] == "Linked release"
    assert payload["event_id"] == "evt-9"


def test_plain_formatter_appends_sorted_context() -> None:
    """Plain lines end with key=value pairs."""
    with log_context({"b": "2", "a": "1"}):
        line = PlainFormatter().format(_record())

    assert line.endswith("Linked release a=1 b=2")


def test_configure_logging_replaces_handlers() -> None:
    """Repeated configuration leaves a single stdout handler."""
    root = logging.getLogger()
    original_handlers = list(root.handlers)
    original_level = root.level
    try:
        with log_context({}):
            configure_logging(level="debug", json_output=True, service="deploytrail-test")
            configure_logging(level="info", json_output=True)
            assert get_context()["service"] == "deploytrail-test"

        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JsonFormatter)
        assert root.level == logging.INFO
    finally:
        root.handlers[:] = original_handlers
        root.setLevel(original_level)


def test_bind_context_ignores_empty_call() -> None:
    """Binding nothing leaves the context unchanged."""
    with log_context({"event_id": "evt-1"}):
        bind_context()
        assert get_context() == {"event_id": "evt-1"}
