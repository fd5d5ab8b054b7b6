from __future__ import annotations

import logging
import sys
from io import StringIO
from unittest.mock import patch

import wbs_ingest.logging.init
from wbs_ingest.logging.init import (
    SUMMARY_LEVEL,
    LabeledFormatter,
    get_logger,
    log_summary,
    set_debug,
    setup_logging,
)


def test_setup_logging_creates_logger_with_labeled_formatter():
    """setup_logging configures the application logger with one stdout handler."""
    logger = setup_logging()

    assert logger.name == "wbs_ingest"
    assert logger.level == logging.INFO
    assert len(logger.handlers) == 1
    assert logger.propagate is False

    handler = logger.handlers[0]
    assert isinstance(handler, logging.StreamHandler)
    assert isinstance(handler.formatter, LabeledFormatter)


def test_logging_labeled_prefixes():
    """Each line starts with INFO|WARN|ERROR|SUMMARY."""
    captured_output = StringIO()

    logger = logging.getLogger("test_wbs_ingest_labels")
    logger.setLevel(logging.INFO)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
    logging.addLevelName(SUMMARY_LEVEL, "SUMMARY")

    handler = logging.StreamHandler(captured_output)
    handler.setLevel(logging.INFO)
    handler.setFormatter(LabeledFormatter())
    logger.addHandler(handler)
    logger.propagate = False

    logger.info("Test info message")
    logger.warning("Test warning message")
    logger.error("Test error message")
    logger.log(SUMMARY_LEVEL, "Test summary message")

    lines = captured_output.getvalue().strip().split("\n")
    assert lines == [
        "INFO Test info message",
        "WARN Test warning message",
        "ERROR Test error message",
        "SUMMARY Test summary message",
    ]


def test_module_loggers_propagate_into_app_logger(capsys):
    """Loggers under wbs_ingest.* share the application format."""
    setup_logging()
    logging.getLogger("wbs_ingest.services.orchestrator").warning("chunk 3 upload failed")
    out = capsys.readouterr().out
    assert "WARN chunk 3 upload failed" in out


def test_get_logger_returns_configured_logger():
    setup_logger = setup_logging()
    assert get_logger() is setup_logger


def test_get_logger_configures_on_first_use():
    wbs_ingest.logging.init.reset_logging()
    logger = get_logger()
    assert logger.name == "wbs_ingest"
    assert len(logger.handlers) == 1


def test_setup_logging_idempotent():
    logger1 = setup_logging()
    logger2 = setup_logging()
    assert logger1 is logger2
    # ハンドラは増えない
    assert len(logger1.handlers) == 1


def test_set_debug_lowers_logger_and_handlers():
    logger = setup_logging()
    set_debug(logger)
    assert logger.level == logging.DEBUG
    assert all(h.level == logging.DEBUG for h in logger.handlers)


def test_summary_level_logging():
    logger = setup_logging()
    assert logging.getLevelName(SUMMARY_LEVEL) == "SUMMARY"
    with patch.object(logger, "_log") as mock_log:
        logger.log(SUMMARY_LEVEL, "estimation=est-1 rows=10")
        mock_log.assert_called_once()


def test_log_summary_convenience_function(capsys):
    setup_logging()
    log_summary("estimation=est-1 rows=10")
    assert capsys.readouterr().out.strip() == "SUMMARY estimation=est-1 rows=10"


def test_exception_traceback_is_appended():
    formatter = LabeledFormatter()
    try:
        raise ValueError("boom")
    except ValueError:
        record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", None, sys.exc_info())
    text = formatter.format(record)
    assert text.startswith("ERROR failed\n")
    assert "ValueError: boom" in text
