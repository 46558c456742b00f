"""Tests for the JSON log formatter."""

from __future__ import annotations

import json
import logging
import sys
from decimal import Decimal

import pytest
from api.middleware.json_formatter import JSONFormatter


@pytest.fixture
def formatter() -> JSONFormatter:
    return JSONFormatter()


def _record(msg: str = "test message", *, name: str = "test.logger", level: int = logging.INFO, exc_info=None):
    return logging.LogRecord(
        name=name,
        level=level,
        pathname="test.py",
        lineno=1,
        msg=msg,
        args=(),
        exc_info=exc_info,
    )


class TestJSONFormatter:
    """Verify structured JSON output from the formatter."""

    def test_basic_format(self, formatter: JSONFormatter) -> None:
        data = json.loads(formatter.format(_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "test.logger"
        assert data["message"] == "test message"
        assert "timestamp" in data

    def test_single_line_output(self, formatter: JSONFormatter) -> None:
        output = formatter.format(_record("line one\nline two", level=logging.WARNING))
        assert "\n" not in output

    def test_message_arguments_are_interpolated(self, formatter: JSONFormatter) -> None:
        record = _record("owner=%s units=%d")
        record.args = ("user-1", 3)

        data = json.loads(formatter.format(record))

        assert data["message"] == "owner=user-1 units=3"

    def test_request_context_included(self, formatter: JSONFormatter) -> None:
        record = _record("request completed", name="api.access")
        record.request = {  # type: ignore[attr-defined]
            "method": "POST",
            "path": "/api/v1/analyze",
            "status_code": 200,
            "duration_ms": 812.4,
            "owner_id": "user-1",
        }

        data = json.loads(formatter.format(record))

        assert data["request"]["method"] == "POST"
        assert data["request"]["owner_id"] == "user-1"
        assert "reconciliation" not in data

    def test_reconciliation_context_included(self, formatter: JSONFormatter) -> None:
        record = _record("reconciliation_required", name="api.routers.analyze", level=logging.ERROR)
        record.reconciliation = {  # type: ignore[attr-defined]
            "owner_id": "user-1",
            "units": 2,
            "compute_request_ids": ["chatcmpl-1", "chatcmpl-2"],
            "error": "conflict",
        }

        data = json.loads(formatter.format(record))

        assert data["reconciliation"]["units"] == 2
        assert data["reconciliation"]["compute_request_ids"] == ["chatcmpl-1", "chatcmpl-2"]

    def test_no_context_omitted(self, formatter: JSONFormatter) -> None:
        data = json.loads(formatter.format(_record("plain msg")))
        assert "request" not in data
        assert "reconciliation" not in data
        assert "exc_info" not in data

    def test_exception_info_included(self, formatter: JSONFormatter) -> None:
        try:
            raise ValueError("test error")
        except ValueError:
            exc_info = sys.exc_info()

        data = json.loads(formatter.format(_record("error occurred", level=logging.ERROR, exc_info=exc_info)))

        assert "ValueError: test error" in data["exc_info"]
        assert "Traceback" in data["exc_info"]

    def test_timestamp_is_utc_iso_format(self, formatter: JSONFormatter) -> None:
        data = json.loads(formatter.format(_record("ts test")))
        assert data["timestamp"].endswith("+00:00")

    def test_non_serialisable_values_are_stringified(self, formatter: JSONFormatter) -> None:
        record = _record("amount")
        record.reconciliation = {"amount": Decimal("9.99")}  # type: ignore[attr-defined]

        data = json.loads(formatter.format(record))

        assert data["reconciliation"]["amount"] == "9.99"
