"""Tests for job logging context."""

from __future__ import annotations

import logging

from taskrelay.logging.context import (
    JobContextFilter,
    clear_job_context,
    get_job_context,
    job_context,
    set_job_context,
)


def make_record(msg: str = "hello") -> logging.LogRecord:
    return logging.LogRecord(
        name="taskrelay.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=(),
        exc_info=None,
    )


class TestJobContext:
    """Tests for context propagation."""

    def test_default_is_empty(self) -> None:
        """Outside a job there is no context."""
        assert get_job_context() == (None, None)

    def test_context_manager_restores_previous(self) -> None:
        """Nested contexts restore the outer one on exit."""
        with job_context(1, "report"):
            with job_context(2, "email"):
                assert get_job_context() == (2, "email")
            assert get_job_context() == (1, "report")
        assert get_job_context() == (None, None)

    def test_restored_after_exception(self) -> None:
        """The context is reset even when the body raises."""
        try:
            with job_context(5, "report"):
                raise RuntimeError("boom")
        except RuntimeError:
            pass
        assert get_job_context() == (None, None)

    def test_set_and_clear(self) -> None:
        """set_job_context and clear_job_context are symmetric."""
        set_job_context(3, "report")
        assert get_job_context() == (3, "report")
        clear_job_context()
        assert get_job_context() == (None, None)


class TestJobContextFilter:
    """Tests for JobContextFilter."""

    def test_adds_tag_inside_job(self) -> None:
        """Records emitted during a job carry its id and type."""
        record = make_record()
        with job_context(42, "report"):
            assert JobContextFilter().filter(record) is True

        assert record.job_id == 42
        assert record.job_type == "report"
        assert record.job_tag == "[report:42] "

    def test_type_only(self) -> None:
        """A job type without an id is tagged by type."""
        record = make_record()
        with job_context(None, "report"):
            JobContextFilter().filter(record)
        assert record.job_tag == "[report] "

    def test_empty_outside_job(self) -> None:
        """Records outside a job get an empty tag."""
        record = make_record()
        JobContextFilter().filter(record)
        assert record.job_id is None
        assert record.job_tag == ""
