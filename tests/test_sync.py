import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from sqlalchemy import func, select

from linksync.exceptions import (
    AuthError, ConcurrencyConflict, ProviderNotFound, RateLimited, TransientNetwork,
)
from linksync.models import AnalyticsSnapshot, Link, RunStatus, SyncRun
from linksync.repositories.sync_runs import SyncRunRepository
from linksync.services.aggregator import get_link_analytics
from linksync.services.registry import LinkRegistry
from linksync.services.sync import (
    SyncOrchestrator, execute_in_background, load_report, run_scheduled,
)


def _orchestrator(session_factory, **overrides):
    opts = dict(
        concurrency=2,
        max_attempts=3,
        backoff_multiplier=0,
        backoff_max=0,
        link_timeout=5,
        persist_timeout=5,
        window=2,
    )
    opts.update(overrides)
    return SyncOrchestrator(session_factory, **opts)


async def _link(session_factory, link_id) -> Link:
    async with session_factory() as s:
        return await s.get(Link, link_id)


async def _snapshot_count(session_factory) -> int:
    async with session_factory() as s:
        return (await s.execute(select(func.count(AnalyticsSnapshot.id)))).scalar_one()


@pytest.mark.asyncio
async def test_successful_run(session_factory, provider, make_link):
    a = await make_link("bit.ly/a1")
    b = await make_link("bit.ly/b1")
    provider.add("bit.ly/a1", total=30)
    provider.add("bit.ly/b1", total=12)

    report = await _orchestrator(session_factory).run("manual", provider)

    assert report.status == RunStatus.SUCCESS.value
    assert report.trigger == "manual"
    assert report.finished_at is not None
    assert (report.links_total, report.links_succeeded, report.links_failed) == (2, 2, 0)
    assert [r.link_id for r in report.results] == [a, b]

    link = await _link(session_factory, a)
    assert link.clicks_total == 30
    assert link.last_sync_status == "success"
    assert link.last_synced_at is not None
    assert await _snapshot_count(session_factory) == 4


@pytest.mark.asyncio
async def test_resync_is_idempotent(session_factory, provider, make_link):
    link_id = await make_link("bit.ly/idem")
    provider.add("bit.ly/idem", total=50)
    orchestrator = _orchestrator(session_factory)

    await orchestrator.run("manual", provider)
    first = await _link(session_factory, link_id)
    await orchestrator.run("manual", provider)
    second = await _link(session_factory, link_id)

    assert first.clicks_total == second.clicks_total == 50
    assert await _snapshot_count(session_factory) == 2
    async with session_factory() as s:
        analytics = await get_link_analytics(s, link_id, datetime(2000, 1, 1).date(), datetime.now(timezone.utc).date())
    assert analytics.rollup.clicks == 10
    assert analytics.rollup.referrers == {"direct": 8, "t.co": 2}


@pytest.mark.asyncio
async def test_no_active_links_is_success(session_factory, provider):
    report = await _orchestrator(session_factory).run("scheduled", provider)
    assert report.status == RunStatus.SUCCESS.value
    assert report.links_total == 0


@pytest.mark.asyncio
async def test_partial_failure_isolated_per_link(session_factory, provider, make_link):
    a = await make_link("bit.ly/pa")
    b = await make_link("bit.ly/pb", clicks_total=7)
    c = await make_link("bit.ly/pc")
    for code in ("bit.ly/pa", "bit.ly/pb", "bit.ly/pc"):
        provider.add(code, total=20)
    provider.errors["bit.ly/pb"] = [ProviderNotFound("deleted upstream")]

    report = await _orchestrator(session_factory).run("manual", provider)

    assert report.status == RunStatus.PARTIAL.value
    by_link = {r.link_id: r for r in report.results}
    assert by_link[a].status == "success"
    assert by_link[c].status == "success"
    assert by_link[b].status == "failed"
    assert by_link[b].error_kind == "provider_not_found"
    assert provider.calls["bit.ly/pb"] == 1

    failed = await _link(session_factory, b)
    assert failed.clicks_total == 7
    assert failed.last_sync_status == "failed"


@pytest.mark.asyncio
async def test_all_links_failing_is_failed(session_factory, provider, make_link):
    await make_link("bit.ly/f1")
    provider.errors["bit.ly/f1"] = [ProviderNotFound("gone")]
    report = await _orchestrator(session_factory).run("manual", provider)
    assert report.status == RunStatus.FAILED.value


@pytest.mark.asyncio
async def test_auth_error_aborts_run(session_factory, provider, make_link):
    a = await make_link("bit.ly/x1")
    b = await make_link("bit.ly/x2")
    c = await make_link("bit.ly/x3")
    for code in ("bit.ly/x1", "bit.ly/x2", "bit.ly/x3"):
        provider.add(code, total=5)
    provider.errors["bit.ly/x1"] = [AuthError("token revoked")]

    orchestrator = _orchestrator(session_factory, concurrency=1)
    run = await orchestrator.start("manual")
    with pytest.raises(AuthError):
        await orchestrator.execute(run.id, provider)

    async with session_factory() as s:
        report = await load_report(s, run.id)
        assert await SyncRunRepository(s).current() is None
    assert report.status == RunStatus.FAILED.value
    assert report.error_detail == "provider authentication failed"
    assert (report.links_failed, report.links_skipped) == (1, 2)
    statuses = {r.link_id: (r.status, r.error_kind) for r in report.results}
    assert statuses[a] == ("failed", "auth_error")
    assert statuses[b] == ("skipped", "aborted")
    assert statuses[c] == ("skipped", "aborted")
    assert provider.calls["bit.ly/x2"] == 0
    assert (await _link(session_factory, b)).last_sync_status == "never"


@pytest.mark.asyncio
async def test_transient_errors_are_retried(session_factory, provider, make_link):
    link_id = await make_link("bit.ly/flaky")
    provider.add("bit.ly/flaky", total=11)
    provider.errors["bit.ly/flaky"] = [
        TransientNetwork("connection reset"),
        RateLimited("slow down", retry_after=30),
    ]

    report = await _orchestrator(session_factory).run("manual", provider)

    assert report.status == RunStatus.SUCCESS.value
    assert provider.calls["bit.ly/flaky"] == 3
    assert (await _link(session_factory, link_id)).clicks_total == 11


@pytest.mark.asyncio
async def test_retry_exhaustion_fails_link(session_factory, provider, make_link):
    await make_link("bit.ly/down")
    provider.errors["bit.ly/down"] = [TransientNetwork("down") for _ in range(5)]

    report = await _orchestrator(session_factory, max_attempts=3).run("manual", provider)

    assert report.results[0].status == "failed"
    assert report.results[0].error_kind == "transient_network"
    assert provider.calls["bit.ly/down"] == 3


@pytest.mark.asyncio
async def test_slow_provider_times_out(session_factory, provider, make_link):
    await make_link("bit.ly/slow")
    provider.add("bit.ly/slow")
    provider.delays["bit.ly/slow"] = 1

    report = await _orchestrator(session_factory, link_timeout=0.05, max_attempts=1).run("manual", provider)

    assert report.results[0].status == "failed"
    assert report.results[0].error_kind == "transient_network"


@pytest.mark.asyncio
async def test_concurrent_trigger_conflicts(session_factory):
    first = await _orchestrator(session_factory).start("scheduled")

    with pytest.raises(ConcurrencyConflict) as info:
        await _orchestrator(session_factory).start("manual")
    assert info.value.context["run_id"] == first.id

    async with session_factory() as s:
        running = (await s.execute(
            select(func.count(SyncRun.id)).where(SyncRun.status == RunStatus.RUNNING.value)
        )).scalar_one()
    assert running == 1


@pytest.mark.asyncio
async def test_scheduled_run_skips_when_locked(session_factory, provider):
    await _orchestrator(session_factory).start("manual")
    assert await run_scheduled(lambda: provider, session_factory) is None


@pytest.mark.asyncio
async def test_lock_released_after_run(session_factory, provider):
    orchestrator = _orchestrator(session_factory)
    await orchestrator.run("manual", provider)
    second = await orchestrator.run("scheduled", provider)
    assert second.status == RunStatus.SUCCESS.value


@pytest.mark.asyncio
async def test_stale_lock_is_reclaimed(session_factory):
    t0 = datetime(2024, 3, 10, 3, 0, tzinfo=timezone.utc)
    abandoned = await _orchestrator(session_factory, clock=lambda: t0).start("scheduled")

    later = t0 + timedelta(seconds=1000)
    fresh = await _orchestrator(session_factory, clock=lambda: later, stale_after=900).start("manual")
    assert fresh.id != abandoned.id

    async with session_factory() as s:
        old = await SyncRunRepository(s).get(abandoned.id)
        assert old.status == RunStatus.FAILED.value
        assert old.error_detail == "abandoned"
        assert old.lock_key is None
        assert (await SyncRunRepository(s).current()).id == fresh.id


@pytest.mark.asyncio
async def test_fresh_lock_is_not_reclaimed(session_factory):
    t0 = datetime(2024, 3, 10, 3, 0, tzinfo=timezone.utc)
    await _orchestrator(session_factory, clock=lambda: t0).start("scheduled")
    soon = t0 + timedelta(seconds=60)
    with pytest.raises(ConcurrencyConflict):
        await _orchestrator(session_factory, clock=lambda: soon, stale_after=900).start("manual")


@pytest.mark.asyncio
async def test_provider_total_is_authoritative(session_factory, provider, make_link):
    link_id = await make_link("bit.ly/tot", clicks_total=150)
    provider.add("bit.ly/tot", total=120)

    await _orchestrator(session_factory).run("manual", provider)

    # snapshots sum to 10 over the window; the stored total follows the provider
    assert (await _link(session_factory, link_id)).clicks_total == 120


@pytest.mark.asyncio
async def test_dropped_entries_mark_link_partial(session_factory, provider, make_link):
    link_id = await make_link("bit.ly/messy")
    provider.add("bit.ly/messy", total=4)
    provider.breakdowns["bit.ly/messy"] = {
        "clicks": {"link_clicks": []},
        "countries": {"metrics": [{"value": "US", "clicks": 4}, {"value": "??", "clicks": 1}]},
        "referrers": {"metrics": [{"value": "t.co", "clicks": "lots"}]},
    }

    report = await _orchestrator(session_factory).run("manual", provider)

    assert report.results[0].status == "success"
    link = await _link(session_factory, link_id)
    assert link.last_sync_status == "partial"
    assert link.clicks_total == 4


@pytest.mark.asyncio
async def test_unreadable_total_fails_link(session_factory, provider, make_link):
    link_id = await make_link("bit.ly/nototal", clicks_total=3)
    provider.add("bit.ly/nototal")
    provider.totals["bit.ly/nototal"] = "n/a"

    report = await _orchestrator(session_factory).run("manual", provider)

    assert report.results[0].error_kind == "provider_data"
    assert (await _link(session_factory, link_id)).clicks_total == 3


@pytest.mark.asyncio
async def test_archived_links_excluded_history_kept(session_factory, provider, make_link):
    keep = await make_link("bit.ly/k1")
    gone = await make_link("bit.ly/g1")
    provider.add("bit.ly/k1", total=1)
    provider.add("bit.ly/g1", total=2)
    orchestrator = _orchestrator(session_factory)
    await orchestrator.run("manual", provider)

    async with session_factory() as s:
        await LinkRegistry(s).archive(gone)

    report = await orchestrator.run("manual", provider)
    assert [r.link_id for r in report.results] == [keep]
    assert provider.calls["bit.ly/g1"] == 1

    async with session_factory() as s:
        analytics = await get_link_analytics(s, gone, datetime(2000, 1, 1).date(), datetime.now(timezone.utc).date())
    assert analytics.clicks_total == 2
    assert analytics.rollup.days == 2


@pytest.mark.asyncio
async def test_archive_during_run_survives(session_factory, provider, make_link):
    link_id = await make_link("bit.ly/mid")
    provider.add("bit.ly/mid", total=9)

    async def archive_mid_fetch():
        async with session_factory() as s:
            await LinkRegistry(s).archive(link_id)

    provider.hooks["bit.ly/mid"] = archive_mid_fetch

    report = await _orchestrator(session_factory, concurrency=1).run("manual", provider)

    assert report.results[0].status == "success"
    link = await _link(session_factory, link_id)
    assert link.status == "archived"
    assert link.clicks_total == 9


@pytest.mark.asyncio
async def test_workers_run_concurrently(session_factory, provider, make_link):
    for i in range(4):
        await make_link(f"bit.ly/c{i}")
        provider.add(f"bit.ly/c{i}", total=i)
        provider.delays[f"bit.ly/c{i}"] = 0.2

    loop = asyncio.get_running_loop()
    t0 = loop.time()
    report = await _orchestrator(session_factory, concurrency=4).run("manual", provider)
    elapsed = loop.time() - t0

    assert report.links_succeeded == 4
    assert elapsed < 0.75


@pytest.mark.asyncio
async def test_live_run_is_not_reclaimed_when_clock_jumps(session_factory, provider, make_link):
    await make_link("bit.ly/live")
    provider.add("bit.ly/live", total=5)
    now = [datetime(2024, 3, 10, 3, 0, tzinfo=timezone.utc)]
    conflicts = []

    async def second_trigger_mid_fetch():
        now[0] += timedelta(seconds=1000)
        try:
            await _orchestrator(session_factory, clock=lambda: now[0], stale_after=900).start("manual")
        except ConcurrencyConflict as exc:
            conflicts.append(exc.context["run_id"])

    provider.hooks["bit.ly/live"] = second_trigger_mid_fetch

    orchestrator = _orchestrator(session_factory, clock=lambda: now[0], stale_after=900)
    run = await orchestrator.start("scheduled")
    report = await orchestrator.execute(run.id, provider)

    assert conflicts == [run.id]
    assert report.status == RunStatus.SUCCESS.value
    assert report.error_detail is None
    async with session_factory() as s:
        assert await SyncRunRepository(s).current() is None


@pytest.mark.asyncio
async def test_heartbeat_keeps_lock_fresh(session_factory):
    t0 = datetime(2024, 3, 10, 3, 0, tzinfo=timezone.utc)
    held = await _orchestrator(session_factory, clock=lambda: t0).start("scheduled")
    async with session_factory() as s:
        await SyncRunRepository(s).touch(held.id, t0 + timedelta(seconds=800))
        await s.commit()

    later = t0 + timedelta(seconds=1000)
    with pytest.raises(ConcurrencyConflict):
        await _orchestrator(session_factory, clock=lambda: later, stale_after=900).start("manual")

    # silent past the threshold since the last beat
    much_later = t0 + timedelta(seconds=1800)
    fresh = await _orchestrator(session_factory, clock=lambda: much_later, stale_after=900).start("manual")
    assert fresh.id != held.id


@pytest.mark.asyncio
async def test_heartbeat_task_advances_while_fetching(session_factory, provider, make_link):
    await make_link("bit.ly/slow")
    provider.add("bit.ly/slow", total=1)
    t0 = datetime(2024, 3, 10, 3, 0, tzinfo=timezone.utc)
    now = [t0]
    beats = []

    async def slow_fetch():
        now[0] = t0 + timedelta(seconds=30)
        await asyncio.sleep(0.3)
        async with session_factory() as s:
            beats.append((await SyncRunRepository(s).current()).heartbeat_at)

    provider.hooks["bit.ly/slow"] = slow_fetch

    report = await _orchestrator(
        session_factory, clock=lambda: now[0], heartbeat_every=0.05
    ).run("manual", provider)

    assert report.status == RunStatus.SUCCESS.value
    assert beats[0].replace(tzinfo=timezone.utc) == t0 + timedelta(seconds=30)


@pytest.mark.asyncio
async def test_lost_finalize_reports_stored_outcome(session_factory, provider, make_link):
    await make_link("bit.ly/lost")
    provider.add("bit.ly/lost", total=2)
    orchestrator = _orchestrator(session_factory)
    run = await orchestrator.start("manual")

    async def reclaimed_elsewhere():
        async with session_factory() as s:
            await SyncRunRepository(s).finalize(
                run.id, RunStatus.FAILED.value, datetime.now(timezone.utc), error_detail="abandoned"
            )
            await s.commit()

    provider.hooks["bit.ly/lost"] = reclaimed_elsewhere

    report = await orchestrator.execute(run.id, provider)

    assert report.status == RunStatus.FAILED.value
    assert report.error_detail == "abandoned"


@pytest.mark.asyncio
async def test_background_run_fails_when_provider_cannot_be_built(session_factory):
    run = await _orchestrator(session_factory).start("manual")

    def no_provider():
        raise RuntimeError("BITLY_ACCESS_TOKEN is not configured")

    await execute_in_background(run.id, no_provider, session_factory)

    async with session_factory() as s:
        report = await load_report(s, run.id)
        assert await SyncRunRepository(s).current() is None
    assert report.status == RunStatus.FAILED.value
    assert report.error_detail.startswith("provider setup failed")
    assert report.finished_at is not None


@pytest.mark.asyncio
async def test_scheduled_run_fails_when_provider_cannot_be_built(session_factory):
    def no_provider():
        raise RuntimeError("BITLY_ACCESS_TOKEN is not configured")

    report = await run_scheduled(no_provider, session_factory)

    assert report.status == RunStatus.FAILED.value
    assert report.error_detail.startswith("provider setup failed")
    async with session_factory() as s:
        assert await SyncRunRepository(s).current() is None


@pytest.mark.asyncio
async def test_crashed_worker_cancels_siblings(session_factory, provider, make_link):
    slow = await make_link("bit.ly/sib1")
    crash = await make_link("bit.ly/sib2")
    provider.add("bit.ly/sib1", total=1)
    provider.add("bit.ly/sib2", total=2)
    provider.delays["bit.ly/sib1"] = 0.3
    persist = SyncOrchestrator._persist

    async def persist_or_crash(self, run_id, target, outcome, data, write_lock):
        if target.link_id == crash:
            raise RuntimeError("disk full")
        return await persist(self, run_id, target, outcome, data, write_lock)

    orchestrator = _orchestrator(session_factory)
    run = await orchestrator.start("manual")
    with patch.object(SyncOrchestrator, "_persist", persist_or_crash):
        with pytest.raises(RuntimeError):
            await orchestrator.execute(run.id, provider)

    # the sibling would have finished by now had it not been cancelled
    await asyncio.sleep(0.4)

    async with session_factory() as s:
        report = await load_report(s, run.id)
    assert report.status == RunStatus.FAILED.value
    assert report.error_detail.startswith("run crashed")
    assert report.results == []
    assert (await _link(session_factory, slow)).last_synced_at is None
    assert await _snapshot_count(session_factory) == 0
