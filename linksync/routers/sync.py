from __future__ import annotations
import asyncio
from typing import Callable, List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from linksync.auth import require_api_key, require_cron_secret
from linksync.database import get_db, get_session_factory
from linksync.models import RunTrigger
from linksync.repositories.sync_runs import SyncRunRepository
from linksync.schemas import SyncAccepted, SyncRunOut
from linksync.services.provider import ProviderClient, get_provider_factory
from linksync.services.sync import (
    SyncOrchestrator, execute_in_background, load_report, run_scheduled,
)

router = APIRouter(prefix="/api/v1/sync", tags=["sync"])

# strong refs so in-flight runs are not garbage collected
_background: set[asyncio.Task] = set()


@router.post(
    "", response_model=SyncAccepted, status_code=202,
    dependencies=[Depends(require_api_key)],
)
async def trigger_sync(
    session_factory: async_sessionmaker = Depends(get_session_factory),
    provider_factory: Callable[[], ProviderClient] = Depends(get_provider_factory),
):
    """Lock is taken before answering: a held lock is an immediate 409."""
    run = await SyncOrchestrator(session_factory).start(RunTrigger.MANUAL.value)
    task = asyncio.create_task(execute_in_background(run.id, provider_factory, session_factory))
    _background.add(task)
    task.add_done_callback(_background.discard)
    return SyncAccepted(
        message="Sync run started",
        run_id=run.id,
        trigger=run.trigger,
        started_at=run.started_at,
    )


@router.post("/wait", response_model=SyncRunOut, dependencies=[Depends(require_api_key)])
async def trigger_sync_blocking(
    session_factory: async_sessionmaker = Depends(get_session_factory),
    provider_factory: Callable[[], ProviderClient] = Depends(get_provider_factory),
):
    """Blocking run; returns the finalized run. Handy for CI and ops scripts."""
    async with provider_factory() as provider:
        return await SyncOrchestrator(session_factory).run(RunTrigger.MANUAL.value, provider)


@router.post("/scheduled", response_model=Optional[SyncRunOut], dependencies=[Depends(require_cron_secret)])
async def trigger_scheduled(
    session_factory: async_sessionmaker = Depends(get_session_factory),
    provider_factory: Callable[[], ProviderClient] = Depends(get_provider_factory),
):
    """External daily scheduler. null body means the cycle was skipped (lock held)."""
    return await run_scheduled(provider_factory, session_factory)


@router.get("/runs", response_model=List[SyncRunOut], dependencies=[Depends(require_api_key)])
async def list_runs(
    limit: int = Query(20, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    rows = await SyncRunRepository(db).recent(limit)
    return [SyncRunOut.model_validate(r) for r in rows]


@router.get("/runs/{run_id}", response_model=SyncRunOut, dependencies=[Depends(require_api_key)])
async def get_run(run_id: str, db: AsyncSession = Depends(get_db)):
    return await load_report(db, run_id)


@router.get("/current", response_model=Optional[SyncRunOut], dependencies=[Depends(require_api_key)])
async def current_run(db: AsyncSession = Depends(get_db)):
    run = await SyncRunRepository(db).current()
    return await load_report(db, run.id) if run else None
