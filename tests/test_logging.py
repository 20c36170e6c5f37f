"""Tests for logging.py - sinks, context loggers and throttling."""

from unittest.mock import Mock, patch

import pytest
from loguru import logger

from picore_baker.logging import (
    LoggerFactory,
    ThrottledLogger,
    get_logger,
    operation_context,
    setup_logging,
)


@pytest.fixture
def captured():
    """Capture formatted records with their extras."""
    records = []
    handler_id = logger.add(lambda message: records.append(message.record), level="TRACE")
    yield records
    logger.remove(handler_id)


class TestSetupLogging:
    """Tests for setup_logging()."""

    def test_creates_log_files(self, tmp_path):
        setup_logging(debug=True, log_dir=tmp_path)
        logger.info("hello")

        assert (tmp_path / "operations.log").exists()
        assert (tmp_path / "debug.log").exists()
        assert (tmp_path / "structured.jsonl").exists()
        assert not (tmp_path / "trace.log").exists()
        logger.remove()

    def test_no_log_files(self, tmp_path):
        setup_logging(log_dir=tmp_path / "logs", file_logging=False)

        assert not (tmp_path / "logs").exists()
        logger.remove()


class TestContextLoggers:
    """Tests for get_logger() and LoggerFactory."""

    def test_get_logger_binds_context(self, captured):
        get_logger(job_id="bake-1", tags=["x"], source="test").info("message")

        extra = captured[-1]["extra"]
        assert extra["job_id"] == "bake-1"
        assert extra["tags"] == ["x"]
        assert extra["source"] == "test"

    @pytest.mark.parametrize(
        "factory, source",
        [
            (LoggerFactory.for_lifecycle, "lifecycle"),
            (LoggerFactory.for_partition, "partition"),
            (LoggerFactory.for_provision, "provision"),
            (LoggerFactory.for_archive, "archive"),
            (LoggerFactory.for_system, "system"),
        ],
    )
    def test_factory_sources(self, captured, factory, source):
        factory().info("message")

        assert captured[-1]["extra"]["source"] == source

    def test_finalize_logger_job_id(self, captured):
        LoggerFactory.for_finalize().info("generated")
        LoggerFactory.for_finalize("bake-42").info("explicit")

        assert captured[-2]["extra"]["job_id"].startswith("finalize-")
        assert captured[-1]["extra"]["job_id"] == "bake-42"


class TestOperationContext:
    """Tests for operation_context()."""

    def test_success_is_logged(self, captured):
        with operation_context("format", partition="/dev/mapper/loop0p2"):
            pass

        messages = [record["message"] for record in captured]
        assert "Format started" in messages
        assert "Format completed" in messages

    def test_failure_is_logged_and_reraised(self, captured):
        with pytest.raises(ValueError):
            with operation_context("partition"):
                raise ValueError("bad table")

        failure = captured[-1]
        assert failure["level"].name == "ERROR"
        assert failure["message"] == "Partition failed: bad table"
        assert failure["extra"]["error_type"] == "ValueError"


class TestThrottledLogger:
    """Tests for ThrottledLogger."""

    def test_throttles_by_key(self):
        target = Mock()
        throttled = ThrottledLogger(target, interval_seconds=5.0)

        with patch("picore_baker.logging.time.time", side_effect=[100.0, 101.0, 106.0]):
            throttled.info("dd", "first")
            throttled.info("dd", "second")
            throttled.info("dd", "third")

        assert [call.args[0] for call in target.info.call_args_list] == ["first", "third"]

    def test_keys_are_independent(self):
        target = Mock()
        throttled = ThrottledLogger(target, interval_seconds=5.0)

        with patch("picore_baker.logging.time.time", return_value=100.0):
            throttled.debug("a", "one")
            throttled.debug("b", "two")

        assert target.debug.call_count == 2
