"""Tests for named recurring timers."""

import asyncio

import pytest

from lodestar.tick import Ticker


@pytest.mark.asyncio
async def test_interval_runs_sync_and_async_callables():
    ticker = Ticker()
    calls = []

    async def async_job():
        calls.append("async")

    ticker.set_interval("sync", lambda: calls.append("sync"), 0.01, delay=0)
    ticker.set_interval("async", async_job, 0.01, delay=0)
    await asyncio.sleep(0.05)
    await ticker.clear_all()

    assert "sync" in calls
    assert "async" in calls
    assert ticker.names() == []


@pytest.mark.asyncio
async def test_same_name_replaces_timer():
    ticker = Ticker()
    first, second = [], []
    ticker.set_interval("job", lambda: first.append(1), 0.01, delay=0)
    ticker.set_interval("job", lambda: second.append(1), 0.01, delay=0)
    await asyncio.sleep(0.05)
    await ticker.clear_all()

    assert first == []
    assert second
    assert ticker.names() == []


@pytest.mark.asyncio
async def test_failing_job_keeps_running():
    ticker = Ticker()
    attempts = []

    def flaky():
        attempts.append(1)
        raise RuntimeError("nope")

    ticker.set_interval("flaky", flaky, 0.01, delay=0)
    await asyncio.sleep(0.05)
    await ticker.clear_all()
    assert len(attempts) >= 2


@pytest.mark.asyncio
async def test_clear_interval():
    ticker = Ticker()
    ticker.set_interval("job", lambda: None, 10)
    assert ticker.clear_interval("job") is True
    assert ticker.clear_interval("job") is False
