# tests/unit/logging/test_logger.py - v1
"""Tests for logging/logger.py - formatters, setup and operator alerts."""

from __future__ import annotations

import json
import logging
import sys

import pytest

from fleetdeploy.logging.context import clear_context, set_domain_context, set_orchestration_context
from fleetdeploy.logging.logger import (
    ALERT_LOGGER_NAME,
    JsonFormatter,
    TextFormatter,
    get_logger,
    setup_logging,
    surface_alert,
)


def _record(msg: str = "Hello", level: int = logging.INFO, **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="fleetdeploy.test", level=level, pathname="", lineno=0,
        msg=msg, args=(), exc_info=None,
    )
    record.__dict__.update(extra)
    return record


@pytest.fixture(autouse=True)
def _clean_context():
    clear_context()
    yield
    clear_context()


class TestJsonFormatter:
    def test_format_basic(self):
        parsed = json.loads(JsonFormatter().format(_record()))
        assert parsed["level"] == "INFO"
        assert parsed["message"] == "Hello"
        assert parsed["logger"] == "fleetdeploy.test"
        assert "timestamp" in parsed
        assert "context" not in parsed

    def test_format_with_context(self):
        set_orchestration_context("orchestration-1")
        set_domain_context("a.example.com", "VERIFY")
        parsed = json.loads(JsonFormatter().format(_record()))
        assert parsed["context"] == {
            "orchestration_id": "orchestration-1",
            "domain_id": "a.example.com",
            "phase": "VERIFY",
        }

    def test_extra_data(self):
        parsed = json.loads(JsonFormatter().format(_record(data={"attempt": 2})))
        assert parsed["data"] == {"attempt": 2}

    def test_exception(self):
        try:
            raise RuntimeError("provider down")
        except RuntimeError:
            record = _record(level=logging.ERROR)
            record.exc_info = sys.exc_info()
        parsed = json.loads(JsonFormatter().format(record))
        assert "RuntimeError: provider down" in parsed["exception"]


class TestTextFormatter:
    def test_format_basic(self):
        output = TextFormatter().format(_record("Hello text"))
        assert "Hello text" in output
        assert "INFO" in output

    def test_domain_and_phase(self):
        set_domain_context("a.example.com", "DEPLOY")
        output = TextFormatter().format(_record())
        assert "[a.example.com]" in output
        assert "(DEPLOY)" in output


class TestGetLogger:
    def test_namespaced(self):
        assert get_logger("deployment").name == "fleetdeploy.deployment"


class TestSetupLogging:
    def test_setup_json(self):
        setup_logging(level="DEBUG", log_format="json")
        root = logging.getLogger("fleetdeploy")
        assert root.level == logging.DEBUG
        assert isinstance(root.handlers[0].formatter, JsonFormatter)

    def test_setup_text_reinit_no_duplicates(self):
        setup_logging(level="INFO", log_format="text")
        setup_logging(level="INFO", log_format="text")
        root = logging.getLogger("fleetdeploy")
        assert root.level == logging.INFO
        assert len(root.handlers) == 1

    def test_setup_with_file(self, tmp_path):
        log_file = tmp_path / "logs" / "deploy.log"
        setup_logging(level="INFO", log_file=str(log_file))
        root = logging.getLogger("fleetdeploy")
        try:
            assert len(root.handlers) == 2
            logging.getLogger("fleetdeploy.test").info("written to file")
            for handler in root.handlers:
                handler.flush()
            assert "written to file" in log_file.read_text(encoding="utf-8")
        finally:
            for handler in root.handlers[1:]:
                handler.close()
            setup_logging(level="INFO")


class TestSurfaceAlert:
    def test_alert_ignores_quiet_level(self, capsys):
        setup_logging(level="ERROR", log_format="json")
        surface_alert("ROLLBACK FAILED for a.example.com", domain_id="a.example.com")
        err = capsys.readouterr().err
        parsed = json.loads(err.strip().splitlines()[-1])
        assert parsed["level"] == "CRITICAL"
        assert parsed["logger"] == ALERT_LOGGER_NAME
        assert parsed["data"] == {"domain_id": "a.example.com"}
        setup_logging(level="INFO")

    def test_alert_does_not_propagate(self):
        setup_logging(level="INFO")
        assert logging.getLogger(ALERT_LOGGER_NAME).propagate is False
