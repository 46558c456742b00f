"""Tests for api/api/middleware/logging.py"""

from __future__ import annotations

import logging
from unittest.mock import AsyncMock, patch

import pytest
from ledger_engine.errors import ConflictError
from ledger_engine.ledger.engine import LedgerEngine

OWNER = "user-123"


def _access_records(caplog) -> list[logging.LogRecord]:
    return [r for r in caplog.records if r.name == "api.access"]


@pytest.mark.asyncio
async def test_request_is_logged_with_owner(client, caplog) -> None:
    with caplog.at_level(logging.INFO, logger="api.access"):
        resp = await client.get("/api/v1/credits/balance?verbose=1")

    assert resp.status_code == 200
    [record] = _access_records(caplog)
    payload = record.request
    assert payload["method"] == "GET"
    assert payload["path"] == "/api/v1/credits/balance"
    assert payload["query"] == "verbose=1"
    assert payload["status_code"] == 200
    assert payload["owner_id"] == OWNER
    assert payload["duration_ms"] >= 0


@pytest.mark.asyncio
async def test_authorization_header_is_masked(client, caplog) -> None:
    with caplog.at_level(logging.INFO, logger="api.access"):
        await client.get("/api/v1/credits/balance")

    [record] = _access_records(caplog)
    assert record.request["headers"]["authorization"] == "***"
    assert "bmdev." not in caplog.text


@pytest.mark.asyncio
async def test_anonymous_and_client_errors_log_warning(anon_client, caplog) -> None:
    with caplog.at_level(logging.INFO, logger="api.access"):
        resp = await anon_client.get("/api/v1/credits")

    assert resp.status_code == 401
    [record] = _access_records(caplog)
    assert record.levelno == logging.WARNING
    assert record.request["owner_id"] == "anonymous"


@pytest.mark.asyncio
async def test_correlation_id_generated(client) -> None:
    resp = await client.get("/api/v1/credits/balance")

    assert len(resp.headers["x-correlation-id"]) == 36


@pytest.mark.asyncio
async def test_correlation_id_reaches_reconciliation_log(client, grant, png_data_url, caplog) -> None:
    await grant(5)
    with (
        patch.object(LedgerEngine, "reserve_and_consume", AsyncMock(side_effect=ConflictError(OWNER, 4))),
        caplog.at_level(logging.ERROR, logger="api.routers.analyze"),
    ):
        await client.post(
            "/api/v1/analyze",
            json={"imageDataUrl": png_data_url},
            headers={"X-Correlation-ID": "corr-1"},
        )

    [record] = [r for r in caplog.records if r.name == "api.routers.analyze"]
    assert record.reconciliation["correlation_id"] == "corr-1"
