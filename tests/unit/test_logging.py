"""
Unit tests for logging setup.
"""

import json
import logging
import sys

import pytest

from consumer_autoscaler.logging import JSONFormatter, TraceContextFilter, setup_logging


@pytest.fixture
def restore_root_logger(monkeypatch):
    monkeypatch.delenv("LOG_LEVEL", raising=False)
    monkeypatch.delenv("LOG_FORMAT", raising=False)
    root = logging.getLogger()
    level = root.level
    yield root
    for handler in list(root.handlers):
        if any(isinstance(f, TraceContextFilter) for f in handler.filters):
            root.removeHandler(handler)
    root.setLevel(level)


@pytest.mark.unit
class TestSetupLogging:
    def test_json_output(self, restore_root_logger, capsys):
        setup_logging(level="INFO", log_format="json")

        logging.getLogger("consumer_autoscaler.test").info("reconciled", extra={"key": "default/consumer"})

        entry = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
        assert entry["message"] == "reconciled"
        assert entry["level"] == "INFO"
        assert entry["service"] == "consumer-autoscaler"
        assert entry["logger"] == "consumer_autoscaler.test"
        assert entry["key"] == "default/consumer"
        assert "trace_id" not in entry

    def test_text_output(self, restore_root_logger, capsys):
        setup_logging(level="DEBUG", log_format="text")

        logging.getLogger("consumer_autoscaler.test").debug("queued")

        line = capsys.readouterr().out.strip().splitlines()[-1]
        assert "DEBUG" in line
        assert "[consumer-autoscaler]" in line
        assert line.endswith("queued")

    def test_environment_overrides_arguments(self, restore_root_logger, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "warning")

        setup_logging(level="DEBUG")

        assert restore_root_logger.level == logging.WARNING

    def test_replaces_existing_handlers(self, restore_root_logger):
        handler = setup_logging()

        assert restore_root_logger.handlers == [handler]
        assert logging.getLogger("urllib3").level == logging.WARNING


@pytest.mark.unit
class TestFormatting:
    def test_trace_filter_without_span(self):
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "msg", None, None)

        assert TraceContextFilter().filter(record) is True
        assert record.trace_id == "0" * 32
        assert record.span_id == "0" * 16

    def test_exception_is_structured(self):
        try:
            raise ValueError("bad quantity")
        except ValueError:
            record = logging.getLogger("x").makeRecord(
                "x", logging.ERROR, __file__, 1, "failed", None, exc_info=sys.exc_info()
            )

        entry = json.loads(JSONFormatter().format(record))

        assert entry["exception"]["type"] == "ValueError"
        assert entry["exception"]["message"] == "bad quantity"
