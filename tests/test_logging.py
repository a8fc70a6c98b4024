"""Tests for the structured logging system (retail_kernel/logging_config.py)."""

import json
import logging
from decimal import Decimal
from io import StringIO
from uuid import uuid4

import pytest

from retail_kernel.exceptions import InsufficientStockError
from retail_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    get_logger,
    reset_logging,
)


@pytest.fixture(autouse=True)
def _clean_logging():
    """Reset logging state between tests, then restore the suite's handler."""
    reset_logging()
    LogContext.clear()
    yield
    LogContext.clear()
    reset_logging()
    configure_logging(level=logging.DEBUG, stream=StringIO())


def _make_handler() -> tuple[logging.Handler, StringIO]:
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    return handler, stream


def _parse_log(stream: StringIO) -> dict:
    """Parse the first JSON log line from a stream."""
    line = stream.getvalue().strip().split("\n")[0]
    return json.loads(line)


def _parse_all_logs(stream: StringIO) -> list[dict]:
    lines = stream.getvalue().strip().split("\n")
    return [json.loads(line) for line in lines if line]


# ---------------------------------------------------------------------------
# StructuredFormatter tests
# ---------------------------------------------------------------------------


class TestStructuredFormatter:
    """Tests for JSON log output format."""

    def test_basic_json_output(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("hello")

        record = _parse_log(stream)
        assert record["level"] == "INFO"
        assert record["message"] == "hello"
        assert record["logger"] == "retail_kernel.test"
        assert "ts" in record

    def test_extra_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("stock_issued", extra={"qty": Decimal("2.5"), "ref": "r-1:1"})

        record = _parse_log(stream)
        assert record["qty"] == "2.5"
        assert record["ref"] == "r-1:1"

    def test_context_fields_included(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        LogContext.set(scope="pos_receipts", idempotency_key="till-1:0001")
        get_logger("test").info("test_msg")

        record = _parse_log(stream)
        assert record["scope"] == "pos_receipts"
        assert record["idempotency_key"] == "till-1:0001"

    def test_exception_fields(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        try:
            raise ValueError("boom")
        except ValueError:
            get_logger("test").error("failed", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_type"] == "ValueError"
        assert record["exc_message"] == "boom"
        assert "traceback" in record

    def test_kernel_exception_fields_extracted(self):
        """Kernel exceptions carry a .code and structured attributes."""
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        try:
            raise InsufficientStockError("issue", "p-1", "b-1", Decimal("5"), Decimal("2"))
        except InsufficientStockError:
            get_logger("test").error("stock_error", exc_info=True)

        record = _parse_log(stream)
        assert record["exc_code"] == "INSUFFICIENT_STOCK"
        assert record["exc_type"] == "InsufficientStockError"
        assert record["exc_requested"] == "5"
        assert record["exc_available"] == "2"
        assert record["exc_operation"] == "issue"

    def test_no_context_fields_when_empty(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        get_logger("test").info("bare_message")

        record = _parse_log(stream)
        assert "scope" not in record
        assert "actor_id" not in record

    def test_uuid_serialized(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        uid = uuid4()
        get_logger("test").info("with_uuid", extra={"receipt_id": uid})

        assert _parse_log(stream)["receipt_id"] == str(uid)

    def test_debug_filtered_at_info(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler)
        logger = get_logger("test")
        logger.info("first")
        logger.warning("second", extra={"k": "v"})
        logger.debug("third")

        logs = _parse_all_logs(stream)
        assert [record["message"] for record in logs] == ["first", "second"]


# ---------------------------------------------------------------------------
# LogContext tests
# ---------------------------------------------------------------------------


class TestLogContext:
    def test_set_and_get(self):
        LogContext.set(scope="x", actor_id="y")
        assert LogContext.get_all() == {"scope": "x", "actor_id": "y"}

    def test_unknown_names_ignored(self):
        LogContext.set(scope="x", colour="blue")
        assert LogContext.get_all() == {"scope": "x"}

    def test_clear(self):
        LogContext.set(correlation_id="x")
        LogContext.clear()
        assert LogContext.get_all() == {}

    def test_bind_context_manager(self):
        LogContext.set(idempotency_key="outer")
        with LogContext.bind(idempotency_key="inner"):
            assert LogContext.get_all()["idempotency_key"] == "inner"
        assert LogContext.get_all()["idempotency_key"] == "outer"

    def test_bind_restores_none(self):
        assert "branch_id" not in LogContext.get_all()
        with LogContext.bind(branch_id="temp", actor_id=None):
            assert LogContext.get_all() == {"branch_id": "temp"}
        assert "branch_id" not in LogContext.get_all()


# ---------------------------------------------------------------------------
# configure_logging tests
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    def test_idempotent(self):
        h1, _ = _make_handler()
        configure_logging(handler=h1)
        h2, _ = _make_handler()
        configure_logging(handler=h2)  # second call is no-op
        assert len(logging.getLogger("retail_kernel").handlers) == 1

    def test_get_logger_returns_child(self):
        assert get_logger("services.pos").name == "retail_kernel.services.pos"

    def test_logger_hierarchy(self):
        handler, stream = _make_handler()
        configure_logging(handler=handler, level=logging.DEBUG)
        get_logger("deep.nested.module").debug("hierarchy_test")

        record = _parse_log(stream)
        assert record["message"] == "hierarchy_test"
        assert record["logger"] == "retail_kernel.deep.nested.module"
