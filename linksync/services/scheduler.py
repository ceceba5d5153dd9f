from __future__ import annotations

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from linksync.config import settings

log = structlog.get_logger(__name__)
_scheduler: AsyncIOScheduler | None = None


async def _scheduled_sync() -> None:
    from linksync.services.provider import BitlyClient
    from linksync.services.sync import run_scheduled
    try:
        report = await run_scheduled(BitlyClient.from_settings)
        if report is not None:
            log.info("scheduler.sync.done", run_id=report.id, status=report.status)
    except Exception as exc:
        # the scheduler loop must survive a bad cycle
        log.error("scheduler.sync.failed", error=str(exc))


def scheduler_running() -> bool:
    return bool(_scheduler and _scheduler.running)


def start_scheduler() -> None:
    global _scheduler
    if not settings.SCHEDULER_ENABLED:
        log.info("scheduler.disabled")
        return

    _scheduler = AsyncIOScheduler(timezone="UTC")
    _scheduler.add_job(
        _scheduled_sync,
        trigger=CronTrigger(
            hour=settings.SYNC_CRON_HOUR,
            minute=settings.SYNC_CRON_MINUTE,
            timezone="UTC",
        ),
        id="daily_link_sync",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    _scheduler.start()
    log.info(
        "scheduler.started",
        at_utc=f"{settings.SYNC_CRON_HOUR:02d}:{settings.SYNC_CRON_MINUTE:02d}",
    )


def stop_scheduler() -> None:
    global _scheduler
    if _scheduler and _scheduler.running:
        _scheduler.shutdown(wait=False)
        log.info("scheduler.stopped")
