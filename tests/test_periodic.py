"""Tests for periodic background jobs."""

from __future__ import annotations

import asyncio
import logging
from unittest.mock import AsyncMock

import pytest

from report_relay.ledger import LedgerWriteError
from report_relay.periodic import PeriodicTask


@pytest.fixture
def logger() -> logging.Logger:
    return logging.getLogger("test-periodic")


class TestPeriodicTask:
    """Tests for PeriodicTask."""

    @pytest.mark.asyncio
    async def test_run_once_success(self, logger: logging.Logger) -> None:
        action = AsyncMock()
        job = PeriodicTask("scan", 60, action, logger)

        assert await job.run_once() is True
        assert job.runs == 1
        assert job.last_error is None

    @pytest.mark.asyncio
    async def test_run_once_logs_and_continues(self, logger: logging.Logger) -> None:
        job = PeriodicTask("scan", 60, AsyncMock(side_effect=RuntimeError("boom")), logger)

        assert await job.run_once() is False
        assert job.last_error == "boom"

    @pytest.mark.asyncio
    async def test_ledger_errors_propagate(self, logger: logging.Logger) -> None:
        job = PeriodicTask("scan", 60, AsyncMock(side_effect=LedgerWriteError("read-only")), logger)

        with pytest.raises(LedgerWriteError):
            await job.run_once()

    @pytest.mark.asyncio
    async def test_runs_immediately_then_on_interval(self, logger: logging.Logger) -> None:
        stop = asyncio.Event()
        calls = 0

        async def action() -> None:
            nonlocal calls
            calls += 1
            if calls == 3:
                stop.set()

        job = PeriodicTask("scan", 0.01, action, logger, run_immediately=True)

        await asyncio.wait_for(job.run(stop), timeout=2)

        assert calls == 3

    @pytest.mark.asyncio
    async def test_stops_promptly(self, logger: logging.Logger) -> None:
        stop = asyncio.Event()
        action = AsyncMock()
        job = PeriodicTask("health", 3600, action, logger)

        runner = asyncio.create_task(job.run(stop))
        await asyncio.sleep(0)
        stop.set()
        await asyncio.wait_for(runner, timeout=1)

        action.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failing_run_does_not_stop_schedule(self, logger: logging.Logger) -> None:
        stop = asyncio.Event()
        calls = 0

        async def action() -> None:
            nonlocal calls
            calls += 1
            if calls == 2:
                stop.set()
            raise RuntimeError("flaky")

        job = PeriodicTask("cleanup", 0.01, action, logger, run_immediately=True)

        await asyncio.wait_for(job.run(stop), timeout=2)

        assert calls == 2
