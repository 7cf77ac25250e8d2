"""
Tests for the JSON log pipeline.
"""
import io
import json
import logging
from typing import Iterator

import pytest
import structlog

from event_settlement.monitoring.logging import SettlementJsonFormatter, setup_logging


@pytest.fixture
def log_stream() -> Iterator[io.StringIO]:
    """Run setup_logging with its JSON handler pointed at a buffer."""
    root_logger = logging.getLogger()
    # pytest attaches its capture handlers per phase and removes them itself
    saved_handlers = [
        h for h in root_logger.handlers if not type(h).__module__.startswith("_pytest")
    ]
    saved_level = root_logger.level
    saved_config = structlog.get_config()

    setup_logging()
    stream = io.StringIO()
    for handler in root_logger.handlers:
        if isinstance(handler.formatter, SettlementJsonFormatter):
            handler.setStream(stream)
    stream.truncate(0)
    stream.seek(0)

    yield stream

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in saved_handlers:
        root_logger.addHandler(handler)
    root_logger.setLevel(saved_level)
    structlog.configure(**saved_config)


def _lines(stream: io.StringIO) -> list:
    return [json.loads(line) for line in stream.getvalue().splitlines() if line]


class TestJsonFormatter:
    """Test suite for the record formatter."""

    @pytest.mark.unit
    def test_record_fields_are_filled(self) -> None:
        formatter = SettlementJsonFormatter("%(message)s", rename_fields={"message": "event"})
        record = logging.LogRecord(
            name="event_settlement.core.ledger",
            level=logging.WARNING,
            pathname=__file__,
            lineno=1,
            msg="payment_attempt_failed",
            args=None,
            exc_info=None,
        )
        record.transaction_id = "txn_1"

        line = json.loads(formatter.format(record))

        assert line["event"] == "payment_attempt_failed"
        assert line["level"] == "WARNING"
        assert line["logger"] == "event_settlement.core.ledger"
        assert line["timestamp"]
        assert line["transaction_id"] == "txn_1"


class TestSetupLogging:
    """Test suite for the structlog to stdlib pipeline."""

    @pytest.mark.unit
    def test_structlog_event_is_one_flat_json_object(self, log_stream: io.StringIO) -> None:
        logger = structlog.get_logger("event_settlement.tests")

        logger.warning("webhook_rejected", reason="bad_signature", attempt=2)

        [line] = _lines(log_stream)
        assert line["event"] == "webhook_rejected"
        assert line["reason"] == "bad_signature"
        assert line["attempt"] == 2
        assert line["level"] == "WARNING"
        assert line["logger"] == "event_settlement.tests"
        assert line["timestamp"] is not None
        assert line["app_env"] == "test"

    @pytest.mark.unit
    def test_context_vars_are_merged(self, log_stream: io.StringIO) -> None:
        structlog.contextvars.bind_contextvars(request_id="req_123")
        try:
            structlog.get_logger("event_settlement.tests").error("checkin_failed")
        finally:
            structlog.contextvars.clear_contextvars()

        [line] = _lines(log_stream)
        assert line["request_id"] == "req_123"
        assert line["level"] == "ERROR"

    @pytest.mark.unit
    def test_below_configured_level_is_dropped(self, log_stream: io.StringIO) -> None:
        structlog.get_logger("event_settlement.tests").debug("noise", detail="x")

        assert _lines(log_stream) == []
