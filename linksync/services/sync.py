from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Callable, List, Optional, Sequence

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from linksync.cache import invalidate_pattern
from linksync.config import settings
from linksync.database import SessionLocal
from linksync.exceptions import (
    AuthError, ConcurrencyConflict, NotFoundError, ProviderError, TransientNetwork,
)
from linksync.models import (
    LinkSyncStatus, ResultStatus, RunStatus, RunTrigger, SyncRun,
)
from linksync.repositories.links import LinkRepository
from linksync.repositories.snapshots import SnapshotRepository
from linksync.repositories.sync_runs import SyncRunRepository
from linksync.schemas import SyncLinkResultOut, SyncRunOut
from linksync.services.aggregator import LinkSyncData, normalize_link, window_days
from linksync.services.provider import ProviderClient, call_with_backoff
from linksync.services.registry import CACHE_PATTERN, LinkRegistry

log = structlog.get_logger(__name__)

# Runs this process is driving. Never reclaimed from here, whatever their age.
_live_runs: set = set()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands timestamps back naive
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


@dataclass(frozen=True)
class _Target:
    position: int
    link_id: int
    short_code: str
    clicks_total: int


@dataclass
class LinkOutcome:
    position: int
    link_id: int
    status: str
    error_kind: Optional[str] = None
    error_detail: Optional[str] = None


def run_status(outcomes: Sequence[LinkOutcome], aborted: bool) -> str:
    succeeded = sum(1 for o in outcomes if o.status == ResultStatus.SUCCESS.value)
    if aborted:
        return RunStatus.FAILED.value
    if not outcomes or succeeded == len(outcomes):
        return RunStatus.SUCCESS.value
    if succeeded == 0:
        return RunStatus.FAILED.value
    return RunStatus.PARTIAL.value


async def load_report(db: AsyncSession, run_id: str) -> SyncRunOut:
    repo = SyncRunRepository(db)
    run = await repo.get(run_id)
    if run is None:
        raise NotFoundError(f"Sync run {run_id} not found")
    results = await repo.results(run_id)
    report = SyncRunOut.model_validate(run)
    report.results = [SyncLinkResultOut.model_validate(r) for r in results]
    return report


class SyncOrchestrator:
    """
    One sync run: lock, select active links, fetch with a bounded worker
    pool, persist per link, finalize.

    The lock is the running SyncRun row itself (sync_runs.lock_key is
    UNIQUE), so it holds across processes and is visible in the sync log.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        *,
        concurrency: Optional[int] = None,
        max_attempts: Optional[int] = None,
        backoff_multiplier: Optional[float] = None,
        backoff_max: Optional[float] = None,
        link_timeout: Optional[float] = None,
        persist_timeout: Optional[float] = None,
        window: Optional[int] = None,
        stale_after: Optional[int] = None,
        heartbeat_every: Optional[float] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.session_factory = session_factory or SessionLocal
        self.concurrency = concurrency or settings.SYNC_CONCURRENCY
        self.max_attempts = max_attempts or settings.PROVIDER_MAX_ATTEMPTS
        self.backoff_multiplier = (
            settings.PROVIDER_BACKOFF_MULTIPLIER if backoff_multiplier is None else backoff_multiplier
        )
        self.backoff_max = settings.PROVIDER_BACKOFF_MAX if backoff_max is None else backoff_max
        self.link_timeout = link_timeout or settings.SYNC_LINK_TIMEOUT
        self.persist_timeout = persist_timeout or settings.SYNC_PERSIST_TIMEOUT
        self.window = window or settings.SYNC_WINDOW_DAYS
        self.stale_after = settings.SYNC_LOCK_STALE_SECONDS if stale_after is None else stale_after
        self.heartbeat_every = heartbeat_every or settings.SYNC_HEARTBEAT_SECONDS
        self.clock = clock

    # ── Lock ──────────────────────────────────────────────────────────────────

    def _is_stale(self, run: SyncRun, now: datetime) -> bool:
        """Measured from the last heartbeat; a run driven by this process is never stale."""
        if run.id in _live_runs:
            return False
        last = run.heartbeat_at or run.started_at
        return (now - _as_utc(last)).total_seconds() > self.stale_after

    async def start(self, trigger: str) -> SyncRun:
        """Acquire the run lock. Raises ConcurrencyConflict if a run is in flight."""
        trigger = RunTrigger(trigger).value
        for attempt in (1, 2):
            now = self.clock()
            async with self.session_factory() as db:
                repo = SyncRunRepository(db)
                try:
                    run = await repo.create_running(str(uuid.uuid4()), trigger, now)
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
                else:
                    log.info("sync.run.started", run_id=run.id, trigger=trigger)
                    return run

                holder = await repo.current()
                if attempt == 1 and holder is None:
                    continue    # released between our insert and the lookup
                if attempt == 1 and self._is_stale(holder, now):
                    await self._reclaim(db, holder, now)
                    continue

                log.info(
                    "sync.lock.conflict",
                    trigger=trigger,
                    holder=holder.id if holder else None,
                )
                raise ConcurrencyConflict(
                    "A sync run is already in progress",
                    context={
                        "run_id": holder.id if holder else None,
                        "started_at": _as_utc(holder.started_at).isoformat() if holder else None,
                    },
                )
        raise ConcurrencyConflict("Could not acquire the sync lock")

    async def _reclaim(self, db: AsyncSession, holder: SyncRun, now: datetime) -> None:
        repo = SyncRunRepository(db)
        results = await repo.results(holder.id)
        await repo.finalize(
            holder.id,
            RunStatus.FAILED.value,
            now,
            links_total=len(results),
            links_succeeded=sum(1 for r in results if r.status == ResultStatus.SUCCESS.value),
            links_failed=sum(1 for r in results if r.status == ResultStatus.FAILED.value),
            links_skipped=sum(1 for r in results if r.status == ResultStatus.SKIPPED.value),
            error_detail="abandoned",
        )
        await db.commit()
        log.warning(
            "sync.lock.reclaimed",
            run_id=holder.id,
            started_at=_as_utc(holder.started_at).isoformat(),
        )

    # ── Run ───────────────────────────────────────────────────────────────────

    async def run(self, trigger: str, provider: ProviderClient) -> SyncRunOut:
        run = await self.start(trigger)
        return await self.execute(run.id, provider)

    async def execute(self, run_id: str, provider: ProviderClient) -> SyncRunOut:
        """
        Drive a run already holding the lock to its terminal state. Always
        finalizes. Re-raises AuthError after finalizing an aborted run.
        """
        _live_runs.add(run_id)
        try:
            return await self._drive(run_id, provider)
        finally:
            _live_runs.discard(run_id)

    async def fail(self, run_id: str, error_detail: str) -> SyncRunOut:
        """Finalize a run that never got to fetch anything."""
        return await self._finalize(run_id, [], aborted=False, error_detail=error_detail)

    async def _drive(self, run_id: str, provider: ProviderClient) -> SyncRunOut:
        t0 = time.monotonic()
        bound = log.bind(run_id=run_id)

        try:
            async with self.session_factory() as db:
                links = await LinkRepository(db).list_active()
                targets = [
                    _Target(pos, link.id, link.short_code, link.clicks_total)
                    for pos, link in enumerate(links)
                ]
        except Exception as exc:
            bound.error("sync.run.selection_failed", error=str(exc))
            await self.fail(run_id, f"link selection failed: {exc}")
            raise

        days = window_days(self.clock().date(), self.window)
        abort = asyncio.Event()
        sem = asyncio.Semaphore(self.concurrency)
        write_lock = asyncio.Lock()
        bound.info("sync.run.links_selected", links=len(targets), days=[d.isoformat() for d in days])

        async def _worker(target: _Target) -> LinkOutcome:
            async with sem:
                if abort.is_set():
                    skipped = LinkOutcome(
                        target.position, target.link_id, ResultStatus.SKIPPED.value,
                        "aborted", "run aborted after provider auth failure",
                    )
                    return await self._persist(run_id, target, skipped, None, write_lock)
                return await self._sync_link(run_id, target, days, provider, abort, write_lock)

        heartbeat = asyncio.create_task(self._heartbeat(run_id, write_lock))
        workers = [asyncio.create_task(_worker(t)) for t in targets]
        try:
            outcomes: List[LinkOutcome] = list(await asyncio.gather(*workers))
        except Exception as exc:
            bound.exception("sync.run.crashed")
            # no worker may write a result after the run is finalized
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            await self.fail(run_id, f"run crashed: {exc}")
            raise
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)

        aborted = abort.is_set()
        report = await self._finalize(
            run_id,
            outcomes,
            aborted=aborted,
            error_detail="provider authentication failed" if aborted else None,
        )
        bound.info(
            "sync.run.finished",
            status=report.status,
            succeeded=report.links_succeeded,
            failed=report.links_failed,
            skipped=report.links_skipped,
            duration_ms=int((time.monotonic() - t0) * 1000),
        )
        if aborted:
            raise AuthError("Provider rejected credentials; sync run aborted", context={"run_id": run_id})
        return report

    async def _heartbeat(self, run_id: str, write_lock: asyncio.Lock) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_every)
            async with write_lock:
                try:
                    async with self.session_factory() as db:
                        await SyncRunRepository(db).touch(run_id, self.clock())
                        await db.commit()
                except SQLAlchemyError as exc:
                    log.warning("sync.run.heartbeat_failed", run_id=run_id, error=str(exc))

    # ── Per link ──────────────────────────────────────────────────────────────

    async def _fetch(
        self, provider: ProviderClient, target: _Target, days: Sequence[date]
    ) -> LinkSyncData:
        async def _calls():
            summary = await provider.get_clicks_summary(target.short_code)
            breakdowns = {}
            for day in days:
                breakdowns[day] = await provider.get_breakdown(target.short_code, day)
            return summary, breakdowns

        async def _attempt():
            try:
                return await asyncio.wait_for(_calls(), timeout=self.link_timeout)
            except asyncio.TimeoutError as exc:
                raise TransientNetwork(
                    f"No provider response within {self.link_timeout}s"
                ) from exc

        summary, breakdowns = await call_with_backoff(
            _attempt,
            attempts=self.max_attempts,
            multiplier=self.backoff_multiplier,
            max_wait=self.backoff_max,
        )
        return normalize_link(target.link_id, summary, breakdowns)

    async def _sync_link(
        self,
        run_id: str,
        target: _Target,
        days: Sequence[date],
        provider: ProviderClient,
        abort: asyncio.Event,
        write_lock: asyncio.Lock,
    ) -> LinkOutcome:
        bound = log.bind(run_id=run_id, link_id=target.link_id, short_code=target.short_code)
        data: Optional[LinkSyncData] = None
        try:
            data = await self._fetch(provider, target, days)
        except AuthError as exc:
            abort.set()
            bound.error("sync.link.auth_failed", error=exc.detail)
            outcome = LinkOutcome(
                target.position, target.link_id, ResultStatus.FAILED.value, exc.kind, exc.detail
            )
        except ProviderError as exc:
            bound.warning("sync.link.failed", kind=exc.kind, error=exc.detail)
            outcome = LinkOutcome(
                target.position, target.link_id, ResultStatus.FAILED.value, exc.kind, exc.detail
            )
        except Exception as exc:
            bound.exception("sync.link.crashed")
            outcome = LinkOutcome(
                target.position, target.link_id, ResultStatus.FAILED.value, "internal", str(exc)
            )
        else:
            outcome = LinkOutcome(target.position, target.link_id, ResultStatus.SUCCESS.value)
            if data.clicks_total < target.clicks_total:
                bound.warning(
                    "sync.link.total_decreased",
                    stored=target.clicks_total,
                    provider=data.clicks_total,
                )
            bound.info("sync.link.fetched", clicks_total=data.clicks_total, dropped=data.dropped)

        return await self._persist(run_id, target, outcome, data, write_lock)

    async def _write(self, run_id: str, outcome: LinkOutcome, data: Optional[LinkSyncData]) -> None:
        now = self.clock()
        async with self.session_factory() as db:
            registry = LinkRegistry(db)
            if data is not None:
                snapshots = SnapshotRepository(db)
                for snap in data.snapshots:
                    await snapshots.upsert(
                        snap.link_id, snap.date, snap.clicks, snap.countries, snap.referrers
                    )
                status = LinkSyncStatus.PARTIAL if data.dropped else LinkSyncStatus.SUCCESS
                await registry.apply_sync_result(outcome.link_id, data.clicks_total, status.value, now)
            elif outcome.status == ResultStatus.FAILED.value:
                await registry.apply_sync_result(outcome.link_id, None, LinkSyncStatus.FAILED.value, now)
            await SyncRunRepository(db).append_result(
                run_id,
                outcome.position,
                outcome.link_id,
                outcome.status,
                outcome.error_kind,
                outcome.error_detail,
            )
            await SyncRunRepository(db).touch(run_id, now)
            await db.commit()

    async def _persist(
        self,
        run_id: str,
        target: _Target,
        outcome: LinkOutcome,
        data: Optional[LinkSyncData],
        write_lock: asyncio.Lock,
    ) -> LinkOutcome:
        """Serialized, time-boxed write of one link's result. Never raises."""
        async with write_lock:
            try:
                await asyncio.wait_for(self._write(run_id, outcome, data), timeout=self.persist_timeout)
                return outcome
            except (SQLAlchemyError, asyncio.TimeoutError) as exc:
                log.error(
                    "sync.link.persist_failed",
                    run_id=run_id, link_id=target.link_id, error=str(exc) or type(exc).__name__,
                )
                if data is None:
                    return outcome
                failed = LinkOutcome(
                    outcome.position, outcome.link_id, ResultStatus.FAILED.value,
                    "persistence", str(exc) or type(exc).__name__,
                )
            try:
                await asyncio.wait_for(self._write(run_id, failed, None), timeout=self.persist_timeout)
            except (SQLAlchemyError, asyncio.TimeoutError) as exc:
                log.error("sync.link.result_unrecorded", run_id=run_id, link_id=target.link_id, error=str(exc))
            return failed

    # ── Finalize ──────────────────────────────────────────────────────────────

    async def _finalize(
        self,
        run_id: str,
        outcomes: Sequence[LinkOutcome],
        aborted: bool,
        error_detail: Optional[str] = None,
    ) -> SyncRunOut:
        status = RunStatus.FAILED.value if error_detail and not aborted else run_status(outcomes, aborted)
        async with self.session_factory() as db:
            repo = SyncRunRepository(db)
            owned = await repo.finalize(
                run_id,
                status,
                self.clock(),
                links_total=len(outcomes),
                links_succeeded=sum(1 for o in outcomes if o.status == ResultStatus.SUCCESS.value),
                links_failed=sum(1 for o in outcomes if o.status == ResultStatus.FAILED.value),
                links_skipped=sum(1 for o in outcomes if o.status == ResultStatus.SKIPPED.value),
                error_detail=error_detail,
            )
            await db.commit()
            report = await load_report(db, run_id)
        if not owned:
            # another process finalized this run (reclaimed as abandoned) first
            log.error(
                "sync.run.finalize_lost",
                run_id=run_id,
                stored_status=report.status,
                computed_status=status,
                stored_detail=report.error_detail,
            )
        await invalidate_pattern(CACHE_PATTERN)
        return report


# ── Trigger entry points ──────────────────────────────────────────────────────

async def _open_provider(
    orchestrator: SyncOrchestrator,
    run_id: str,
    provider_factory: Callable[[], ProviderClient],
) -> ProviderClient:
    """The lock is already held here: a provider that cannot be built fails the run."""
    try:
        return provider_factory()
    except Exception as exc:
        log.error("sync.provider.unavailable", run_id=run_id, error=str(exc))
        await orchestrator.fail(run_id, f"provider setup failed: {exc}")
        raise


async def run_scheduled(
    provider_factory: Callable[[], ProviderClient],
    session_factory: Optional[async_sessionmaker] = None,
) -> Optional[SyncRunOut]:
    """
    Scheduled trigger. A held lock means "skip this cycle"; any non-success
    outcome is logged for monitoring and never raised to the scheduler.
    """
    session_factory = session_factory or SessionLocal
    orchestrator = SyncOrchestrator(session_factory)
    try:
        run = await orchestrator.start(RunTrigger.SCHEDULED.value)
    except ConcurrencyConflict as exc:
        log.info("sync.scheduled.skipped", holder=exc.context.get("run_id"))
        return None

    try:
        provider = await _open_provider(orchestrator, run.id, provider_factory)
    except Exception:
        async with session_factory() as db:
            report = await load_report(db, run.id)
    else:
        async with provider:
            try:
                report = await orchestrator.execute(run.id, provider)
            except AuthError:
                log.error("sync.scheduled.auth_failed", run_id=run.id)
                async with session_factory() as db:
                    report = await load_report(db, run.id)

    if report.status != RunStatus.SUCCESS.value:
        log.warning(
            "sync.scheduled.degraded",
            run_id=report.id,
            status=report.status,
            failed=report.links_failed,
            skipped=report.links_skipped,
        )
    return report


async def execute_in_background(
    run_id: str,
    provider_factory: Callable[[], ProviderClient],
    session_factory: Optional[async_sessionmaker] = None,
) -> None:
    """Finish a manually started run after the request has been acknowledged."""
    orchestrator = SyncOrchestrator(session_factory)
    try:
        provider = await _open_provider(orchestrator, run_id, provider_factory)
        async with provider:
            await orchestrator.execute(run_id, provider)
    except AuthError:
        log.error("sync.manual.auth_failed", run_id=run_id)
    except Exception as exc:
        log.error("sync.manual.failed", run_id=run_id, error=str(exc))
