"""Tests for logging setup and helpers."""

from __future__ import annotations

import pytest

from buildmedia import logging as logging_module
from buildmedia.storage.exceptions import OperationCanceledError, ValidationError


@pytest.fixture
def records():
    """Capture log records synchronously."""
    logging_module.logger.remove()
    captured: list[dict] = []

    def sink(message):
        captured.append(message.record)

    logging_module.logger.add(sink, enqueue=False, level="TRACE")
    yield captured
    logging_module.logger.remove()


def test_setup_logging_respects_progress_min_level(tmp_path):
    """Test progress sink respects minimum log level."""
    messages: list[str] = []
    logging_module.setup_logging(
        debug=False,
        trace=False,
        log_dir=tmp_path / "logs",
        progress_sink=messages.append,
        progress_min_level="WARNING",
    )

    log = logging_module.get_logger(source="test", tags=["unit"])
    log.info("Info message")
    log.warning("Warning message")

    logging_module.logger.complete()
    logging_module.logger.remove()

    assert messages == ["Warning message"]


def test_setup_logging_creates_log_files(tmp_path):
    """Test operations and structured logs are written to the log directory."""
    log_dir = tmp_path / "logs"
    logging_module.setup_logging(debug=True, log_dir=log_dir)

    logging_module.get_logger(source="test").info("Written to disk")
    logging_module.logger.complete()
    logging_module.logger.remove()

    assert "Written to disk" in (log_dir / "operations.log").read_text()
    assert (log_dir / "structured.jsonl").exists()
    assert (log_dir / "debug.log").exists()


def test_get_logger_preserves_context_metadata(records):
    """Test bound logger keeps job_id, tags, and source metadata."""
    log = logging_module.get_logger(job_id="job-123", tags=["extract"], source="extract")
    log.info("Context test")

    record = records[0]
    assert record["extra"]["job_id"] == "job-123"
    assert record["extra"]["tags"] == ["extract"]
    assert record["extra"]["source"] == "extract"


def test_combined_filter_blocks_tool_output_above_trace():
    """Test combined filter suppresses raw tool output above TRACE level."""
    record = {
        "message": "[==== 45.0% ====]",
        "extra": {"tags": ["tool-output"]},
        "level": logging_module.logger.level("DEBUG"),
    }

    assert logging_module._combined_filter(record) is False

    record["level"] = logging_module.logger.level("TRACE")
    assert logging_module._combined_filter(record) is True

    record["level"] = logging_module.logger.level("WARNING")
    assert logging_module._combined_filter(record) is True


def test_combined_filter_keeps_regular_records():
    record = {
        "message": "Extraction started",
        "extra": {"tags": ["extract"]},
        "level": logging_module.logger.level("INFO"),
    }
    assert logging_module._combined_filter(record) is True


class TestOperationContext:
    """Tests for operation_context timing and outcome logging."""

    def test_success_logs_start_and_completion(self, records):
        with logging_module.operation_context("extract", iso="Win11.iso") as log:
            log.debug("Working")

        messages = [record["message"] for record in records]
        assert "Extract started" in messages
        assert "Extract completed" in messages
        assert records[-1]["level"].name == "SUCCESS"

    def test_failure_logs_error_and_reraises(self, records):
        with pytest.raises(ValidationError):
            with logging_module.operation_context("convert"):
                raise ValidationError("bad image")

        assert records[-1]["level"].name == "ERROR"
        assert records[-1]["extra"]["error_type"] == "ValidationError"

    def test_cancellation_logs_warning(self, records):
        with pytest.raises(OperationCanceledError):
            with logging_module.operation_context("package"):
                raise OperationCanceledError()

        assert records[-1]["level"].name == "WARNING"
        assert records[-1]["message"] == "Package cancelled"


class TestLoggerFactory:
    """Tests for domain-specific loggers."""

    def test_extract_logger_has_job_id(self, records):
        logging_module.LoggerFactory.for_extract().info("hello")
        extra = records[0]["extra"]
        assert extra["source"] == "extract"
        assert extra["job_id"].startswith("extract-")

    def test_tool_output_logger_is_tagged(self, records):
        logging_module.LoggerFactory.for_tool_output("dism").trace("line")
        assert records[0]["extra"]["tags"] == ["tool-output"]
        assert records[0]["extra"]["source"] == "dism"


class TestThrottledLogger:
    """Tests for ThrottledLogger."""

    def test_repeated_key_is_throttled(self, records):
        throttled = logging_module.ThrottledLogger(
            logging_module.get_logger(source="test"), interval_seconds=60
        )
        throttled.info("dism", "10%")
        throttled.info("dism", "20%")
        throttled.info("oscdimg", "5%")

        assert [record["message"] for record in records] == ["10%", "5%"]
