"""
Tests for Logging Infrastructure
"""
import pytest
import json
import logging
from io import StringIO
from unittest.mock import patch

from app.core.logging import (
    CorrelationIdFilter,
    correlation_id_var,
    event_correlation_scope,
    get_logger,
    set_correlation_id,
    get_correlation_id,
    generate_correlation_id,
    JSONFormatter,
    log_async_operation
)


def _json_logger(name: str, level: int = logging.INFO) -> tuple[logging.Logger, StringIO]:
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(JSONFormatter())

    logger = get_logger(name)
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False
    return logger, stream


class TestCorrelationId:
    """Tests for correlation ID management"""

    @pytest.mark.unit
    def test_generate_correlation_id(self):
        cid = generate_correlation_id()

        assert len(cid) == 8
        assert cid.isalnum()

    @pytest.mark.unit
    def test_set_and_get_correlation_id(self):
        result = set_correlation_id("replay01")

        assert result == "replay01"
        assert get_correlation_id() == "replay01"

    @pytest.mark.unit
    def test_set_correlation_id_generates_if_none(self):
        result = set_correlation_id(None)

        assert len(result) == 8
        assert get_correlation_id() == result

    @pytest.mark.unit
    def test_filter_stamps_record(self):
        set_correlation_id("filter01")
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "msg", (), None)

        assert CorrelationIdFilter().filter(record) is True
        assert record.correlation_id == "filter01"


class TestJSONFormatter:
    """Tests for JSON log formatting"""

    @pytest.mark.unit
    def test_json_format_basic(self):
        logger, stream = _json_logger("test_json_basic")

        logger.info("Webhook queued")

        log_entry = json.loads(stream.getvalue())
        assert log_entry["level"] == "INFO"
        assert log_entry["message"] == "Webhook queued"
        assert log_entry["logger"] == "test_json_basic"
        assert log_entry["timestamp"].endswith("Z")

    @pytest.mark.unit
    def test_json_format_includes_service_name(self):
        logger, stream = _json_logger("test_json_service")

        with patch("app.core.logging._service_name", "retry-worker"):
            logger.info("tick")

        assert json.loads(stream.getvalue())["service"] == "retry-worker"

    @pytest.mark.unit
    def test_json_format_with_correlation_id(self):
        set_correlation_id("testcorr")
        logger, stream = _json_logger("test_json_corr")

        logger.info("Correlated message")

        assert json.loads(stream.getvalue()).get("correlation_id") == "testcorr"

    @pytest.mark.unit
    def test_json_format_with_exception(self):
        logger, stream = _json_logger("test_json_exc", logging.ERROR)

        try:
            raise ValueError("Test error")
        except ValueError:
            logger.error("Error occurred", exc_info=True)

        log_entry = json.loads(stream.getvalue())
        assert log_entry["level"] == "ERROR"
        assert "ValueError" in log_entry["exception"]

    @pytest.mark.unit
    def test_non_serializable_extra_falls_back_to_str(self):
        from datetime import datetime

        logger, stream = _json_logger("test_json_default")

        logger.info("rescheduled", extra_data={"next_retry_at": datetime(2024, 1, 1, 12, 0)})

        assert json.loads(stream.getvalue())["extra"]["next_retry_at"] == "2024-01-01 12:00:00"


class TestStructuredLogger:
    """Tests for structured logger functionality"""

    @pytest.mark.unit
    def test_get_logger(self):
        logger = get_logger("test.module")

        assert logger.name == "test.module"

    @pytest.mark.unit
    def test_logger_with_extra_data(self):
        logger, stream = _json_logger("test.extra")

        logger.warning("Webhook replay failed", extra_data={"provider": "mux", "retry_count": 2})

        log_entry = json.loads(stream.getvalue())
        assert log_entry["extra"] == {"provider": "mux", "retry_count": 2}


class TestAsyncLoggingDecorator:
    """Tests for async operation logging decorator"""

    @pytest.mark.unit
    async def test_log_async_operation_success(self):
        @log_async_operation("test_operation")
        async def success_func():
            return "success"

        assert await success_func() == "success"
        assert success_func.__name__ == "success_func"

    @pytest.mark.unit
    async def test_log_async_operation_failure(self):
        @log_async_operation("failing_operation")
        async def failing_func():
            raise ValueError("Test failure")

        with pytest.raises(ValueError):
            await failing_func()


class TestEventCorrelationScope:
    """Tests for per-event correlation IDs during replay"""

    @pytest.mark.unit
    def test_nested_under_batch_id_and_restored(self):
        set_correlation_id("batch01")

        with event_correlation_scope("mux", "evt_1") as cid:
            assert cid == "batch01/mux:evt_1"
            assert get_correlation_id() == "batch01/mux:evt_1"

        assert get_correlation_id() == "batch01"

    @pytest.mark.unit
    def test_without_batch_id(self):
        token = correlation_id_var.set("")
        try:
            with event_correlation_scope("stripe", "evt_2") as cid:
                assert cid == "stripe:evt_2"
            assert correlation_id_var.get() == ""
        finally:
            correlation_id_var.reset(token)

    @pytest.mark.unit
    def test_restored_when_replay_raises(self):
        set_correlation_id("batch02")

        with pytest.raises(RuntimeError):
            with event_correlation_scope("twilio", "SM1"):
                raise RuntimeError("handler failed")

        assert get_correlation_id() == "batch02"
