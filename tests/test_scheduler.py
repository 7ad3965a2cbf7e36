"""
Tests for the local trigger loop (src/pipeline/scheduler.py).
"""

from __future__ import annotations

import asyncio

import pytest

from src.config import settings
from src.pipeline.scheduler import Scheduler


@pytest.fixture
def scheduler(fake_store, fake_scraper) -> Scheduler:
    return Scheduler(fake_store, scraper_factory=lambda: fake_scraper, interval_minutes=0.001)


def test_default_interval_from_settings(fake_store) -> None:
    scheduler = Scheduler(fake_store)
    assert scheduler.interval_seconds == settings.SYNC_TRIGGER_INTERVAL_MINUTES * 60


@pytest.mark.asyncio
async def test_tick_runs_cycle(scheduler, fake_store, make_source) -> None:
    make_source()

    report = await scheduler.tick()

    assert report is not None
    assert report.processed == 1
    assert scheduler.last_report is report
    assert fake_store.cron_marks[0][2] == "success"


@pytest.mark.asyncio
async def test_tick_swallows_aborted_cycle(scheduler, fake_store) -> None:
    fake_store.policy_error = RuntimeError("db down")

    assert await scheduler.tick() is None
    assert scheduler.last_report is None
    assert fake_store.cron_marks[0][2] == "error"


@pytest.mark.asyncio
async def test_run_until_shutdown(scheduler, fake_store) -> None:
    task = asyncio.create_task(scheduler.run())
    await asyncio.sleep(0.2)

    await scheduler.shutdown()
    await asyncio.wait_for(task, timeout=2)

    assert len(fake_store.cron_marks) >= 2
    assert task.done()


@pytest.mark.asyncio
async def test_run_survives_unexpected_tick_error(fake_store) -> None:
    calls = []

    def broken_factory():
        calls.append(1)
        raise RuntimeError("scraper misconfigured")

    scheduler = Scheduler(fake_store, scraper_factory=broken_factory, interval_minutes=0.001)
    task = asyncio.create_task(scheduler.run())
    await asyncio.sleep(0.2)

    await scheduler.shutdown()
    await asyncio.wait_for(task, timeout=2)

    assert len(calls) >= 2
