"""Unit tests for ledger_engine.usage.recorder."""

from __future__ import annotations

import logging
from unittest.mock import MagicMock

import pytest
from ledger_engine.state.repository import UsageRecordRepository
from ledger_engine.usage.recorder import RESPONSE_EXCERPT_CHARS, UsageRecorder

OWNER = "user-123"


async def _rows(session_factory):
    async with session_factory() as session:
        return await UsageRecordRepository(session).list_for_owner(OWNER)


class TestAppend:
    @pytest.mark.asyncio
    async def test_writes_row(self, session_factory) -> None:
        recorder = UsageRecorder(session_factory)
        ok = await recorder.append(OWNER, 1, purchase_id="p1", subscription_id="s1", request_excerpt="describe")

        assert ok is True
        rows = await _rows(session_factory)
        assert len(rows) == 1
        assert rows[0].purchase_id == "p1"
        assert rows[0].credits_used == 1
        assert rows[0].used_own_key is False

    @pytest.mark.asyncio
    async def test_truncates_excerpts(self, session_factory) -> None:
        recorder = UsageRecorder(session_factory)
        await recorder.append(OWNER, 1, request_excerpt="q" * 500, response_excerpt="r" * 500)

        row = (await _rows(session_factory))[0]
        assert len(row.request_excerpt) == 100
        assert len(row.response_excerpt) == RESPONSE_EXCERPT_CHARS

    @pytest.mark.asyncio
    async def test_own_key_usage_costs_nothing(self, session_factory) -> None:
        await UsageRecorder(session_factory).append(OWNER, 0, used_own_key=True)
        row = (await _rows(session_factory))[0]
        assert row.credits_used == 0
        assert row.used_own_key is True
        assert row.purchase_id is None

    @pytest.mark.asyncio
    async def test_failure_is_logged_not_raised(self, caplog: pytest.LogCaptureFixture) -> None:
        factory = MagicMock(side_effect=RuntimeError("db down"))
        recorder = UsageRecorder(factory)

        with caplog.at_level(logging.WARNING, logger="ledger_engine.usage.recorder"):
            ok = await recorder.append(OWNER, 1, purchase_id="p1")

        assert ok is False
        assert "Failed to record usage" in caplog.text


class TestSchedule:
    @pytest.mark.asyncio
    async def test_scheduled_write_lands_after_drain(self, session_factory) -> None:
        recorder = UsageRecorder(session_factory)
        task = recorder.schedule(OWNER, 2, purchase_id="p1")
        await recorder.drain()

        assert task.done()
        assert task.result() is True
        assert len(await _rows(session_factory)) == 1

    @pytest.mark.asyncio
    async def test_drain_with_nothing_pending(self, session_factory) -> None:
        await UsageRecorder(session_factory).drain()
