from __future__ import annotations
from datetime import datetime
from typing import List, Optional
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from linksync.models import RUN_LOCK_KEY, RunStatus, SyncLinkResult, SyncRun


class SyncRunRepository:
    """Append-only sync log. A row with lock_key set is the run lock."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_running(self, run_id: str, trigger: str, started_at: datetime) -> SyncRun:
        """Raises IntegrityError if another run still holds the lock."""
        run = SyncRun(
            id=run_id,
            trigger=trigger,
            status=RunStatus.RUNNING.value,
            lock_key=RUN_LOCK_KEY,
            started_at=started_at,
            heartbeat_at=started_at,
            links_total=0,
            links_succeeded=0,
            links_failed=0,
            links_skipped=0,
        )
        self.db.add(run)
        await self.db.flush()
        return run

    async def current(self) -> Optional[SyncRun]:
        rows = await self.db.execute(select(SyncRun).where(SyncRun.lock_key == RUN_LOCK_KEY))
        return rows.scalar_one_or_none()

    async def touch(self, run_id: str, at: datetime) -> None:
        await self.db.execute(
            update(SyncRun)
            .where(SyncRun.id == run_id, SyncRun.status == RunStatus.RUNNING.value)
            .values(heartbeat_at=at)
        )

    async def append_result(
        self,
        run_id: str,
        position: int,
        link_id: int,
        status: str,
        error_kind: str | None = None,
        error_detail: str | None = None,
    ) -> None:
        self.db.add(
            SyncLinkResult(
                run_id=run_id,
                position=position,
                link_id=link_id,
                status=status,
                error_kind=error_kind,
                error_detail=error_detail,
            )
        )
        await self.db.flush()

    async def finalize(
        self,
        run_id: str,
        status: str,
        finished_at: datetime,
        links_total: int = 0,
        links_succeeded: int = 0,
        links_failed: int = 0,
        links_skipped: int = 0,
        error_detail: str | None = None,
    ) -> bool:
        """Terminal write; releases the lock. No-op for a run already finalized."""
        result = await self.db.execute(
            update(SyncRun)
            .where(SyncRun.id == run_id, SyncRun.status == RunStatus.RUNNING.value)
            .values(
                status=status,
                finished_at=finished_at,
                lock_key=None,
                links_total=links_total,
                links_succeeded=links_succeeded,
                links_failed=links_failed,
                links_skipped=links_skipped,
                error_detail=error_detail,
            )
        )
        return result.rowcount > 0

    async def get(self, run_id: str) -> Optional[SyncRun]:
        return await self.db.get(SyncRun, run_id)

    async def results(self, run_id: str) -> List[SyncLinkResult]:
        rows = await self.db.execute(
            select(SyncLinkResult)
            .where(SyncLinkResult.run_id == run_id)
            .order_by(SyncLinkResult.position)
        )
        return list(rows.scalars().all())

    async def recent(self, limit: int = 50) -> List[SyncRun]:
        rows = await self.db.execute(
            select(SyncRun)
            .order_by(SyncRun.started_at.desc())
            .limit(limit)
        )
        return list(rows.scalars().all())

    async def latest_finished(self) -> Optional[SyncRun]:
        rows = await self.db.execute(
            select(SyncRun)
            .where(SyncRun.finished_at.is_not(None))
            .order_by(SyncRun.finished_at.desc())
            .limit(1)
        )
        return rows.scalar_one_or_none()
