"""Unit tests for the widget contract and payload schemas."""

from unittest.mock import MagicMock

import pytest
from pydantic import BaseModel

from taskrelay.jobs.exceptions import ValidationError
from taskrelay.jobs.payloads import JobPayload, parse_payload, validate_payload
from taskrelay.jobs.widget import Widget, WidgetConfig


class ReportPayload(JobPayload):
    report_id: int
    format: str = "pdf"


class OtherPayload(BaseModel):
    name: str


class EchoWidget(Widget):
    def config(self):
        return WidgetConfig(name="Echo", description="Echo items")

    def discover_items(self):
        return []

    def execute(self, item):
        return item


class TestWidgetConfig:
    """Tests for WidgetConfig validation."""

    def test_defaults(self):
        """Optional fields have sensible defaults."""
        config = WidgetConfig(name="Reports", description="Build reports")
        assert config.batch_size == 1
        assert config.priority == 10
        assert config.max_attempts == 3

    @pytest.mark.parametrize(
        ("overrides", "field"),
        [
            ({"name": ""}, "name"),
            ({"name": "   "}, "name"),
            ({"description": None}, "description"),
            ({"batch_size": 0}, "batch_size"),
            ({"priority": 0}, "priority"),
            ({"priority": 101}, "priority"),
            ({"priority": True}, "priority"),
            ({"max_attempts": 0}, "max_attempts"),
            ({"max_attempts": "3"}, "max_attempts"),
        ],
    )
    def test_rejects_invalid(self, overrides, field):
        """Each invalid value names its field."""
        values = {"name": "Reports", "description": "Build reports", **overrides}
        with pytest.raises(ValidationError) as exc_info:
            WidgetConfig(**values)
        assert exc_info.value.field == field

    def test_from_mapping_ignores_unknown_keys(self):
        """Extra keys in a mapping are dropped."""
        config = WidgetConfig.from_mapping(
            {"name": "A", "description": "B", "priority": 50, "colour": "red"}
        )
        assert config.priority == 50

    def test_from_mapping_requires_keys(self):
        """A missing required key is reported by name."""
        with pytest.raises(ValidationError) as exc_info:
            WidgetConfig.from_mapping({"name": "A"})
        assert exc_info.value.field == "description"


class TestWidget:
    """Tests for the Widget base class."""

    def test_cannot_instantiate_abstract(self):
        """Widget requires the abstract methods."""
        with pytest.raises(TypeError):
            Widget()

    def test_default_hooks(self):
        """Default hooks allow retries and do nothing else."""
        widget = EchoWidget()
        assert widget.on_error("item", RuntimeError()) is True
        assert widget.on_complete() is None
        assert widget.on_failure() is None

    def test_report_progress_unbound_is_ignored(self):
        """Progress outside execution is a no-op."""
        EchoWidget().report_progress(1, 2)

    def test_report_progress_forwards_to_callback(self):
        """A bound widget forwards progress to the scheduler."""
        widget = EchoWidget()
        callback = MagicMock()
        job = MagicMock()

        widget.bind(job, callback)
        widget.report_progress(3, 10)

        callback.assert_called_once_with(3, 10)
        assert widget.current_job is job

    def test_report_progress_swallows_callback_errors(self):
        """A failing progress callback does not break execution."""
        widget = EchoWidget()
        widget.bind(MagicMock(), MagicMock(side_effect=RuntimeError("db")))

        widget.report_progress(1, 1)

    def test_unbind(self):
        """unbind clears the current job."""
        widget = EchoWidget()
        widget.bind(MagicMock(), MagicMock())
        widget.unbind()
        assert widget.current_job is None

    def test_logger_name(self):
        """Each widget logs under its class name."""
        assert EchoWidget().logger.name == "taskrelay.widget.EchoWidget"


class TestPayloads:
    """Tests for payload validation and parsing."""

    def test_free_form_payload(self):
        """Without a model any mapping is stored as a dict."""
        assert validate_payload(None, {"a": 1}) == {"a": 1}
        assert validate_payload(None, None) == {}

    def test_rejects_non_mapping(self):
        """Lists and scalars are not payloads."""
        with pytest.raises(ValidationError):
            validate_payload(None, [1, 2])

    def test_model_applies_defaults(self):
        """Validated payloads are normalized through the model."""
        assert validate_payload(ReportPayload, {"report_id": 3}) == {
            "report_id": 3,
            "format": "pdf",
        }

    def test_model_rejects_bad_payload(self):
        """Schema violations name the offending location."""
        with pytest.raises(ValidationError) as exc_info:
            validate_payload(ReportPayload, {"report_id": "abc"})
        assert "report_id" in str(exc_info.value)
        assert exc_info.value.field == "payload"

    def test_model_rejects_extra_keys(self):
        """JobPayload models forbid unknown keys."""
        with pytest.raises(ValidationError):
            validate_payload(ReportPayload, {"report_id": 1, "extra": True})

    def test_accepts_model_instance(self):
        """A model instance is dumped as JSON-compatible data."""
        assert validate_payload(ReportPayload, ReportPayload(report_id=2)) == {
            "report_id": 2,
            "format": "pdf",
        }

    def test_rejects_wrong_model_instance(self):
        """An instance of another model is refused."""
        with pytest.raises(ValidationError):
            validate_payload(ReportPayload, OtherPayload(name="x"))

    def test_parse_returns_model(self):
        """Stored payloads come back as model instances."""
        parsed = parse_payload(ReportPayload, {"report_id": 5, "format": "csv"})
        assert parsed == ReportPayload(report_id=5, format="csv")

    def test_parse_free_form(self):
        """Without a model the stored dict is returned."""
        assert parse_payload(None, None) == {}

    def test_parse_rejects_stale_payload(self):
        """A stored payload that no longer fits the schema raises."""
        with pytest.raises(ValidationError):
            parse_payload(ReportPayload, {"report": 5})
