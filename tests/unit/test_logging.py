"""Tests for structured logging setup."""

from __future__ import annotations

import json
import logging

import pytest
import structlog

from codified.config import LoggingConfig
from codified.core.logging import configure_logging


@pytest.fixture
def restore_logging():
    yield
    structlog.reset_defaults()
    for handler in logging.root.handlers[:]:
        logging.root.removeHandler(handler)
        handler.close()


def test_json_format_writes_to_log_file(tmp_path, restore_logging):
    log_file = tmp_path / "codified.log"

    configure_logging(LoggingConfig(level="INFO", format="json", file=str(log_file)))
    structlog.get_logger("codified.test").info("merge_scheduled", task_id="t-1")
    structlog.get_logger("codified.test").debug("below_threshold")
    for handler in logging.root.handlers:
        handler.flush()

    (line,) = log_file.read_text().splitlines()
    record = json.loads(line)
    assert record["event"] == "merge_scheduled"
    assert record["task_id"] == "t-1"
    assert record["level"] == "info"
    assert logging.root.level == logging.INFO


def test_missing_log_directory_skips_file(tmp_path, restore_logging):
    configure_logging(LoggingConfig(format="text", file=str(tmp_path / "absent" / "codified.log")))

    assert not any(isinstance(h, logging.FileHandler) for h in logging.root.handlers)
    assert not (tmp_path / "absent").exists()


def test_defaults_to_application_config(monkeypatch, tmp_path, restore_logging):
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    monkeypatch.setenv("LOG_FILE", str(tmp_path / "codified.log"))

    configure_logging()

    assert logging.root.level == logging.WARNING
    assert any(isinstance(h, logging.FileHandler) for h in logging.root.handlers)
