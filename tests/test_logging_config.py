"""Tests for logging configuration."""

import json
import logging
import sys

from dbwarden.logging_config import JSONFormatter, setup_file_logging, setup_logging


def test_invalid_log_level_falls_back_to_info(capsys):
    """Invalid LOG_LEVEL should warn and fall back to INFO."""
    setup_logging(level="BOGUS")
    captured = capsys.readouterr()
    assert "Invalid LOG_LEVEL" in captured.err
    assert logging.root.level == logging.INFO


def test_valid_log_level_works():
    setup_logging(level="DEBUG")
    assert logging.root.level == logging.DEBUG
    setup_logging(level="INFO")


def test_json_format_selected():
    setup_logging("json", level="INFO")
    assert isinstance(logging.root.handlers[0].formatter, JSONFormatter)
    setup_logging("dev", level="INFO")
    assert not isinstance(logging.root.handlers[0].formatter, JSONFormatter)


def test_json_formatter_fields():
    record = logging.LogRecord(
        "dbwarden.storage", logging.WARNING, __file__, 10,
        "dropped %s", ("widgets",), None,
    )
    record.table = "widgets"
    entry = json.loads(JSONFormatter().format(record))
    assert entry["level"] == "WARNING"
    assert entry["logger"] == "dbwarden.storage"
    assert entry["message"] == "dropped widgets"
    assert entry["table"] == "widgets"


def test_json_formatter_includes_exception():
    try:
        raise ValueError("boom")
    except ValueError:
        record = logging.LogRecord(
            "x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info(),
        )
    entry = json.loads(JSONFormatter().format(record))
    assert "ValueError: boom" in entry["exception"]


def test_file_logging(tmp_path):
    log_file = tmp_path / "logs" / "dbwarden.log"
    setup_file_logging(log_file, level="INFO")
    logging.getLogger("dbwarden.test").info("written to disk")
    for handler in logging.root.handlers:
        handler.flush()
    assert "written to disk" in log_file.read_text()
    setup_logging(level="INFO")
