"""
Tests for the sync orchestrator (src/pipeline/orchestrator.py).

Covers:
- Due-source selection: never-polled first, batch limit, mode 'off'
- Blackouts: global skip, venue-scoped exclusion
- Per-source failure isolation and the error backoff sequence
- Bad references disable the source
- Ingestion counts, dedup across cycles, listing snapshots
- The cron-gated entry point
"""

from __future__ import annotations

from datetime import datetime, time, timedelta

import pytest

from src.config import ProductType, SyncMode, SyncStatus
from src.models.cron_schedule import CronSchedule
from src.pipeline.errors import ConfigurationError, CycleAbortedError, StoreWriteError
from src.pipeline.orchestrator import SyncOrchestrator, run_triggered_cycle
from src.schedule.blackout import BlackoutWindowSpec
from src.schedule.policy import PolicyConfig

NO_JITTER = {"jitter_min_percent": 0.0, "jitter_max_percent": 0.0}

SALES = [
    {"occurredAt": "5分前", "price": "¥10,000", "condition": "PSA10"},
    {"occurredAt": "1時間前", "price": 800, "condition": "A"},
    {"occurredAt": "??", "price": 800, "condition": "A"},
]


@pytest.fixture(autouse=True)
def fixed_policy(fake_store) -> None:
    fake_store.policy = PolicyConfig(**NO_JITTER)


@pytest.fixture
def orchestrator(fake_store, fake_scraper) -> SyncOrchestrator:
    return SyncOrchestrator(fake_store, fake_scraper)


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
@pytest.mark.parametrize("last_status", [s.value for s in SyncStatus])
@pytest.mark.parametrize("overdue", [None, timedelta(0), timedelta(days=3)])
async def test_due_source_polled_and_rescheduled(
    orchestrator, make_source, now, last_status: str, overdue: timedelta | None
) -> None:
    next_poll_at = None if overdue is None else now - overdue
    source = make_source(last_status=last_status, next_poll_at=next_poll_at)

    report = await orchestrator.run_cycle(now)

    assert report.status == "completed"
    assert (report.processed, report.succeeded, report.failed) == (1, 1, 0)
    assert source.last_status == SyncStatus.SUCCESS.value
    assert source.last_polled_at == now
    # no activity -> floor interval
    assert source.next_poll_at == now + timedelta(minutes=360)
    assert report.sources[0].delay_minutes == 360


@pytest.mark.asyncio
async def test_not_due_and_off_sources_ignored(orchestrator, make_source, now) -> None:
    make_source(next_poll_at=now + timedelta(minutes=1))
    make_source(mode=SyncMode.OFF.value)

    report = await orchestrator.run_cycle(now)

    assert report.processed == 0
    assert report.status == "completed"


@pytest.mark.asyncio
async def test_batch_limit_prefers_never_polled(orchestrator, fake_store, make_source, now) -> None:
    fake_store.policy = PolicyConfig(batch_size_per_cycle=2, **NO_JITTER)
    make_source(next_poll_at=now - timedelta(hours=1))
    make_source()
    make_source()

    report = await orchestrator.run_cycle(now)

    assert [o.source_id for o in report.sources] == [2, 3]


@pytest.mark.asyncio
async def test_oldest_due_first_among_polled(orchestrator, fake_store, make_source, now) -> None:
    fake_store.policy = PolicyConfig(batch_size_per_cycle=1, **NO_JITTER)
    make_source(next_poll_at=now - timedelta(minutes=5))
    make_source(next_poll_at=now - timedelta(hours=2))

    report = await orchestrator.run_cycle(now)

    assert [o.source_id for o in report.sources] == [2]


# ---------------------------------------------------------------------------
# Global state and blackouts
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_globally_disabled_skips_cycle(orchestrator, fake_store, fake_scraper, make_source, now) -> None:
    fake_store.policy = PolicyConfig(globally_enabled=False)
    make_source()

    report = await orchestrator.run_cycle(now)

    assert report.skipped is True
    assert report.skip_reason == "globally_disabled"
    assert fake_scraper.calls == []


@pytest.mark.asyncio
async def test_global_blackout_skips_cycle(orchestrator, fake_store, fake_scraper, make_source, now) -> None:
    # now is Sunday 12:00 business-local
    fake_store.windows = [
        BlackoutWindowSpec(day_of_week=0, start_time=time(11, 0), end_time=time(13, 0))
    ]
    make_source()

    report = await orchestrator.run_cycle(now)

    assert report.skipped is True
    assert report.skip_reason == "global_blackout"
    assert fake_scraper.calls == []
    assert fake_store.saved == []


@pytest.mark.asyncio
@pytest.mark.parametrize("overdue", [None, timedelta(minutes=30)])
async def test_scoped_blackout_excludes_venue(
    orchestrator, fake_store, make_source, now, overdue: timedelta | None
) -> None:
    fake_store.windows = [
        BlackoutWindowSpec(
            day_of_week=0,
            start_time=time(11, 0),
            end_time=time(13, 0),
            scoped_source="snkrdunk",
        )
    ]
    blocked_next_poll = None if overdue is None else now - overdue
    blocked = make_source(next_poll_at=blocked_next_poll)
    make_source(venue="mercari", next_poll_at=blocked_next_poll)

    report = await orchestrator.run_cycle(now)

    assert report.status == "completed"
    assert [o.venue for o in report.sources] == ["mercari"]
    assert [s.venue for s in report.skipped_sources] == ["snkrdunk"]
    assert blocked.last_status == SyncStatus.NEVER.value
    assert blocked.next_poll_at == blocked_next_poll


@pytest.mark.asyncio
async def test_blackout_on_other_day_does_not_apply(orchestrator, fake_store, make_source, now) -> None:
    fake_store.windows = [
        BlackoutWindowSpec(day_of_week=1, start_time=time(0, 0), end_time=time(23, 59))
    ]
    make_source()

    report = await orchestrator.run_cycle(now)
    assert report.processed == 1


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_one_failing_source_does_not_abort_batch(
    orchestrator, fake_store, fake_scraper, make_source, transient_error, now
) -> None:
    make_source()
    bad = make_source()
    make_source()
    fake_scraper.errors[bad.external_ref] = transient_error

    report = await orchestrator.run_cycle(now)

    assert (report.processed, report.succeeded, report.failed) == (3, 2, 1)
    failed = report.sources[1]
    assert failed.status == "failed"
    assert failed.error_kind == "transient_fetch"
    assert bad.error_count == 1
    assert bad.last_status == SyncStatus.ERROR.value
    assert bad.last_error == "upstream 503"
    assert fake_store.saved == [1, 2, 3]


@pytest.mark.asyncio
async def test_unexpected_exception_is_isolated(orchestrator, fake_scraper, make_source, now) -> None:
    source = make_source()
    fake_scraper.errors[source.external_ref] = RuntimeError("boom")

    report = await orchestrator.run_cycle(now)

    assert report.sources[0].error_kind == "unexpected"
    assert source.error_count == 1
    assert source.next_poll_at == now + timedelta(minutes=60)


@pytest.mark.asyncio
async def test_backoff_sequence_then_recovery(
    orchestrator, fake_scraper, make_source, transient_error, now
) -> None:
    source = make_source()
    fake_scraper.errors[source.external_ref] = transient_error

    clock = now
    delays = []
    for _ in range(4):
        report = await orchestrator.run_cycle(clock)
        delays.append(report.sources[0].delay_minutes)
        clock = source.next_poll_at

    assert delays == [60, 120, 240, 360]
    assert source.error_count == 4

    del fake_scraper.errors[source.external_ref]
    report = await orchestrator.run_cycle(clock)

    assert report.sources[0].status == "succeeded"
    assert source.error_count == 0
    assert source.last_error is None
    assert report.sources[0].delay_minutes == 360


@pytest.mark.asyncio
async def test_bad_reference_disables_source(orchestrator, fake_store, fake_scraper, make_source, now) -> None:
    source = make_source(external_ref="https://snkrdunk.com/brands/pokemon")

    report = await orchestrator.run_cycle(now)

    outcome = report.sources[0]
    assert outcome.disabled is True
    assert outcome.error_kind == "configuration"
    assert source.mode == SyncMode.OFF.value
    assert source.error_count == 1
    assert fake_scraper.calls == []

    later = await orchestrator.run_cycle(now + timedelta(days=1))
    assert later.processed == 0


@pytest.mark.asyncio
async def test_unknown_product_upstream_disables_source(orchestrator, fake_scraper, make_source, now) -> None:
    source = make_source()
    fake_scraper.errors[source.external_ref] = ConfigurationError("unknown product")

    report = await orchestrator.run_cycle(now)

    assert report.sources[0].disabled is True
    assert source.mode == SyncMode.OFF.value


@pytest.mark.asyncio
async def test_row_write_error_fails_source(orchestrator, fake_store, fake_scraper, make_source, now) -> None:
    source = make_source()
    fake_scraper.sales[source.external_ref] = SALES
    fake_store.failing_prices = {800}

    report = await orchestrator.run_cycle(now)

    outcome = report.sources[0]
    assert outcome.status == "failed"
    assert outcome.error_kind == "store_write"
    assert (outcome.inserted, outcome.errors) == (1, 1)
    assert source.error_count == 1


@pytest.mark.asyncio
async def test_policy_load_failure_aborts_cycle(orchestrator, fake_store, make_source, now) -> None:
    fake_store.policy_error = RuntimeError("connection refused")
    make_source()

    with pytest.raises(CycleAbortedError) as exc_info:
        await orchestrator.run_cycle(now)

    assert exc_info.value.details == {"stage": "load_config"}
    assert fake_store.saved == []


@pytest.mark.asyncio
@pytest.mark.parametrize("failing_step", ["record_listings", "count_transactions_since"])
async def test_post_write_failure_keeps_ledger_counts(
    orchestrator, fake_store, fake_scraper, make_source, now, failing_step: str
) -> None:
    source = make_source()
    fake_scraper.sales[source.external_ref] = SALES[:1]

    async def fail(*args, **kwargs):
        raise StoreWriteError("snapshot write failed")

    setattr(fake_store, failing_step, fail)

    report = await orchestrator.run_cycle(now)

    outcome = report.sources[0]
    assert outcome.status == "failed"
    assert outcome.error_kind == "store_write"
    assert (outcome.fetched, outcome.inserted) == (1, 1)
    assert len(fake_store.rows_for(source.item_id)) == 1
    assert source.error_count == 1
    assert report.failed == 1


# ---------------------------------------------------------------------------
# Ingestion and observations
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_sales_ingested_with_counts(orchestrator, fake_store, fake_scraper, make_source, now) -> None:
    source = make_source()
    fake_scraper.sales[source.external_ref] = SALES

    report = await orchestrator.run_cycle(now)

    outcome = report.sources[0]
    assert (outcome.fetched, outcome.inserted, outcome.skipped, outcome.dropped) == (3, 2, 0, 1)
    grades = sorted(r.grade for r in fake_store.rows_for(source.item_id))
    assert grades == ["A", "PSA10"]


@pytest.mark.asyncio
async def test_repeat_scrape_is_skipped_not_reinserted(
    orchestrator, fake_store, fake_scraper, make_source, now
) -> None:
    source = make_source()
    fake_scraper.sales[source.external_ref] = SALES

    await orchestrator.run_cycle(now)
    source.next_poll_at = None
    report = await orchestrator.run_cycle(now)

    outcome = report.sources[0]
    assert (outcome.inserted, outcome.skipped) == (0, 2)
    assert len(fake_store.rows_for(source.item_id)) == 2


@pytest.mark.asyncio
async def test_identical_sales_from_different_sellers_both_kept(
    orchestrator, fake_store, fake_scraper, make_source, now
) -> None:
    source = make_source()
    fake_scraper.sales[source.external_ref] = [
        {"occurredAt": "2026/10/17", "price": 3000, "condition": "A", "identityHint": "11"},
        {"occurredAt": "2026/10/17", "price": 3000, "condition": "A", "identityHint": "12"},
    ]

    first = await orchestrator.run_cycle(now)
    source.next_poll_at = None
    second = await orchestrator.run_cycle(now)

    assert first.sources[0].inserted == 2
    assert [r.sequence for r in fake_store.rows_for(source.item_id)] == [0, 1]
    assert (second.sources[0].inserted, second.sources[0].skipped) == (0, 2)


@pytest.mark.asyncio
async def test_activity_shortens_interval(orchestrator, fake_scraper, make_source, now) -> None:
    source = make_source()
    # 48 sales in 24h -> 2/hour -> 60 minute tier
    fake_scraper.sales[source.external_ref] = [
        {"occurredAt": f"{i * 20 + 1}分前", "price": 1000, "condition": "A"} for i in range(48)
    ]

    report = await orchestrator.run_cycle(now)

    assert report.sources[0].inserted == 48
    assert report.sources[0].delay_minutes == 60
    assert source.interval_minutes == 60


@pytest.mark.asyncio
async def test_manual_mode_uses_fixed_interval(orchestrator, fake_scraper, make_source, now) -> None:
    source = make_source(mode=SyncMode.MANUAL.value, manual_interval_minutes=45)
    fake_scraper.sales[source.external_ref] = SALES

    report = await orchestrator.run_cycle(now)

    assert report.sources[0].delay_minutes == 45


@pytest.mark.asyncio
async def test_product_type_classified_once(orchestrator, fake_scraper, make_source, now) -> None:
    source = make_source(cached_product_type=None)
    fake_scraper.product_types[source.external_ref] = ProductType.BOX

    await orchestrator.run_cycle(now)
    await orchestrator.run_cycle(source.next_poll_at)

    assert source.cached_product_type == "box"
    classify_calls = [c for c in fake_scraper.calls if c[0] == "classify"]
    assert len(classify_calls) == 1


@pytest.mark.asyncio
async def test_listing_snapshot_recorded(orchestrator, fake_store, fake_scraper, make_source, now) -> None:
    source = make_source()
    fake_scraper.listings[source.external_ref] = [
        {"price": 9000, "condition": "PSA10"},
        {"price": 700, "condition": "A"},
    ]

    await orchestrator.run_cycle(now)

    assert source.last_price == 700
    assert source.last_stock == 2
    assert fake_store.snapshots[0]["item_id"] == source.item_id
    assert fake_store.snapshots[0]["summary"].overall_min == 700


@pytest.mark.asyncio
async def test_report_serializes(orchestrator, make_source, now) -> None:
    make_source()

    report = await orchestrator.run_cycle(now)
    payload = report.model_dump(mode="json")

    assert payload["skipped"] is False
    assert payload["sources"][0]["item_id"] == "item-1"


# ---------------------------------------------------------------------------
# Cron-gated entry point
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_triggered_cycle_without_schedule_runs(fake_store, fake_scraper, make_source, now) -> None:
    make_source()

    report = await run_triggered_cycle(fake_store, fake_scraper, now=now)

    assert report.processed == 1
    assert fake_store.cron_marks == [("market-sync", now, "success", None)]


@pytest.mark.asyncio
async def test_triggered_cycle_gate_skip(fake_store, fake_scraper, make_source, now) -> None:
    make_source()
    fake_store.cron["market-sync"] = CronSchedule(
        job_name="market-sync",
        enabled=True,
        schedule_type="interval",
        interval_minutes=10,
        last_run_at=now - timedelta(minutes=5),
    )

    report = await run_triggered_cycle(fake_store, fake_scraper, now=now)

    assert report.skipped is True
    assert report.skip_reason == "cron_gate:interval_not_reached (5min remaining)"
    assert fake_store.cron_marks == []
    assert fake_scraper.calls == []


@pytest.mark.asyncio
async def test_triggered_cycle_disabled_job(fake_store, fake_scraper, now) -> None:
    fake_store.cron["market-sync"] = CronSchedule(job_name="market-sync", enabled=False)

    report = await run_triggered_cycle(fake_store, fake_scraper, now=now)

    assert report.skip_reason == "cron_gate:disabled"


@pytest.mark.asyncio
async def test_triggered_cycle_abort_marks_error(fake_store, fake_scraper, now) -> None:
    fake_store.policy_error = RuntimeError("db down")

    with pytest.raises(CycleAbortedError):
        await run_triggered_cycle(fake_store, fake_scraper, now=now)

    job_name, _, status, error = fake_store.cron_marks[0]
    assert (job_name, status) == ("market-sync", "error")
    assert "Could not load sync configuration" in error


@pytest.mark.asyncio
async def test_triggered_cycle_custom_job_name(fake_store, fake_scraper, now) -> None:
    await run_triggered_cycle(fake_store, fake_scraper, job_name="market-sync-eu", now=now)

    assert fake_store.cron_marks[0][0] == "market-sync-eu"


@pytest.mark.asyncio
async def test_triggered_cycle_survives_cron_mark_failure(fake_store, fake_scraper, make_source, now) -> None:
    make_source()

    async def fail(*args, **kwargs):
        raise RuntimeError("db gone")

    fake_store.mark_cron_run = fail

    report = await run_triggered_cycle(fake_store, fake_scraper, now=now)

    assert report.processed == 1
    assert fake_store.saved == [1]


@pytest.mark.asyncio
async def test_triggered_cycle_abort_kept_when_cron_mark_fails(fake_store, fake_scraper, now) -> None:
    fake_store.policy_error = RuntimeError("db down")

    async def fail(*args, **kwargs):
        raise RuntimeError("db gone")

    fake_store.mark_cron_run = fail

    with pytest.raises(CycleAbortedError) as exc_info:
        await run_triggered_cycle(fake_store, fake_scraper, now=now)

    assert exc_info.value.details == {"stage": "load_config"}
