"""Tests for the JSON formatter and logging configuration."""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import pytest

from taskrelay.config.models import LoggingConfig
from taskrelay.logging.config import configure_logging
from taskrelay.logging.context import JobContextFilter, job_context
from taskrelay.logging.handlers import JSONFormatter


@pytest.fixture
def restore_root_logger():
    """Put the root logger back after configure_logging replaced it."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


def make_record(**extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="taskrelay.jobs.scheduler",
        level=logging.WARNING,
        pathname=__file__,
        lineno=10,
        msg="Job %d failed",
        args=(7,),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    """Tests for JSONFormatter."""

    def test_basic_fields(self) -> None:
        """Each entry has timestamp, level, logger and message."""
        entry = json.loads(JSONFormatter().format(make_record()))

        assert entry["level"] == "WARNING"
        assert entry["message"] == "Job 7 failed"
        assert entry["logger"] == "taskrelay.jobs.scheduler"
        assert entry["timestamp"].endswith("+00:00")
        assert "context" not in entry

    def test_extra_fields_in_context(self) -> None:
        """Extra attributes are collected under context."""
        entry = json.loads(JSONFormatter().format(make_record(attempt=2)))
        assert entry["context"] == {"attempt": 2}

    def test_job_context_included(self) -> None:
        """Job fields from the filter appear in context."""
        record = make_record()
        with job_context(7, "report"):
            JobContextFilter().filter(record)

        entry = json.loads(JSONFormatter().format(record))

        assert entry["context"] == {"job_id": 7, "job_type": "report"}

    def test_exception(self) -> None:
        """Exceptions are rendered as text."""
        try:
            raise ValueError("bad")
        except ValueError:
            record = make_record()
            record.exc_info = sys.exc_info()

        entry = json.loads(JSONFormatter().format(record))

        assert "ValueError: bad" in entry["exception"]

    def test_unserializable_values(self) -> None:
        """Values json cannot encode are stringified."""
        entry = json.loads(JSONFormatter().format(make_record(path=Path("/x"))))
        assert entry["context"]["path"] == "/x"


class TestConfigureLogging:
    """Tests for configure_logging."""

    def test_stderr_by_default(self, restore_root_logger) -> None:
        """Without a file one stderr handler is installed."""
        configure_logging(LoggingConfig(level="debug"))

        assert restore_root_logger.level == logging.DEBUG
        assert len(restore_root_logger.handlers) == 1
        handler = restore_root_logger.handlers[0]
        assert any(isinstance(f, JobContextFilter) for f in handler.filters)

    def test_json_file(self, restore_root_logger, tmp_path: Path) -> None:
        """File logging writes JSON lines."""
        log_file = tmp_path / "logs" / "taskrelay.log"
        configure_logging(LoggingConfig(file=log_file, format="json"))

        logging.getLogger("taskrelay.test").info("hello")
        for handler in restore_root_logger.handlers:
            handler.flush()

        entry = json.loads(log_file.read_text().strip().splitlines()[-1])
        assert entry["message"] == "hello"

    def test_file_and_stderr(self, restore_root_logger, tmp_path: Path) -> None:
        """include_stderr adds a second handler."""
        configure_logging(
            LoggingConfig(file=tmp_path / "t.log", include_stderr=True)
        )
        assert len(restore_root_logger.handlers) == 2
