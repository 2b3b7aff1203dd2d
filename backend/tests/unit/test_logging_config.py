"""
Tests for structured JSON logging configuration.

This module tests:
- JSONFormatter (JSON log output)
- setup_logging() (logging configuration)
- log_with_context() (gateway context fields)

Tests follow AAA (Arrange, Act, Assert) pattern.
"""

import io
import json
import logging

import pytest

from datagate.core.logging_config import (
    JSONFormatter,
    RequestIdFilter,
    get_logger,
    log_with_context,
    request_id_var,
    setup_logging,
)


@pytest.fixture
def captured():
    """Logger writing JSON into a StringIO; handlers restored afterwards."""
    logger = logging.getLogger("datagate.tests.captured")
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(JSONFormatter())
    logger.handlers = [handler]

    def records():
        return [json.loads(line) for line in stream.getvalue().splitlines() if line]

    yield logger, records

    logger.handlers = []
    logger.propagate = True


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    root.handlers = handlers
    root.setLevel(level)


class TestJSONFormatter:
    """Tests for JSON log formatter."""

    def test_basic_fields(self, captured):
        """
        Test JSONFormatter outputs valid JSON with the required fields.

        Arrange: Logger with JSONFormatter
        Act: Log a message
        Assert: timestamp, level, message and logger present
        """
        # Arrange
        logger, records = captured

        # Act
        logger.info("Gateway started")

        # Assert
        record = records()[0]
        assert record["level"] == "INFO"
        assert record["message"] == "Gateway started"
        assert record["logger"] == "datagate.tests.captured"
        assert "timestamp" in record

    def test_extra_fields_are_included(self, captured):
        logger, records = captured

        logger.warning("Query parameters rejected", extra={"entity": "products", "kind": "disallowed_field"})

        record = records()[0]
        assert record["entity"] == "products"
        assert record["kind"] == "disallowed_field"

    def test_none_values_are_omitted(self, captured):
        logger, records = captured

        logger.info("Request", extra={"request_id": None, "path": "/api/products"})

        record = records()[0]
        assert "request_id" not in record
        assert record["path"] == "/api/products"

    def test_exception_is_formatted(self, captured):
        logger, records = captured

        try:
            raise ValueError("boom")
        except ValueError:
            logger.exception("Unhandled")

        assert "ValueError: boom" in records()[0]["exception"]

    def test_non_serializable_values_use_str(self, captured):
        logger, records = captured

        logger.info("Accepted", extra={"tables": {"products"}})

        assert records()[0]["tables"] == "{'products'}"


class TestSetupLogging:

    def test_replaces_root_handlers(self, restore_root_logger):
        """Test setup_logging installs exactly one stdout handler."""
        root = restore_root_logger
        root.addHandler(logging.NullHandler())

        setup_logging(level="DEBUG", json_format=True)

        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JSONFormatter)
        assert root.level == logging.DEBUG

    def test_plain_text_format(self, restore_root_logger):
        setup_logging(level="WARNING", json_format=False)

        formatter = restore_root_logger.handlers[0].formatter
        assert not isinstance(formatter, JSONFormatter)
        assert restore_root_logger.level == logging.WARNING

    def test_quiets_third_party_loggers(self, restore_root_logger):
        setup_logging(level="DEBUG")

        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING


class TestLogWithContext:

    def test_context_fields(self, captured):
        """Test request, entity and operation context plus arbitrary extras."""
        logger, records = captured

        log_with_context(
            logger,
            "info",
            "Bulk create finished",
            request_id="req-1",
            entity="products",
            operation="bulk_create",
            succeeded=9,
            failed=1,
        )

        record = records()[0]
        assert record["request_id"] == "req-1"
        assert record["entity"] == "products"
        assert record["operation"] == "bulk_create"
        assert record["succeeded"] == 9
        assert record["failed"] == 1
        assert record["level"] == "INFO"

    def test_level_is_case_insensitive(self, captured):
        logger, records = captured

        log_with_context(logger, "ERROR", "Transaction failed")

        assert records()[0]["level"] == "ERROR"

    def test_get_logger(self):
        assert get_logger("datagate.x") is logging.getLogger("datagate.x")


class TestRequestContext:
    """Request ids published by the middleware reach every record."""

    def test_formatter_uses_context_request_id(self, captured):
        logger, records = captured
        token = request_id_var.set("req-ctx")
        try:
            logger.info("Inside a request")
        finally:
            request_id_var.reset(token)
        logger.info("Outside a request")

        inside, outside = records()
        assert inside["request_id"] == "req-ctx"
        assert "request_id" not in outside

    def test_explicit_request_id_wins(self, captured):
        logger, records = captured
        token = request_id_var.set("req-ctx")
        try:
            logger.info("Explicit", extra={"request_id": "req-explicit"})
        finally:
            request_id_var.reset(token)

        assert records()[0]["request_id"] == "req-explicit"

    def test_filter_stamps_plain_records(self):
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "msg", None, None)

        RequestIdFilter().filter(record)

        assert record.request_id == "-"
