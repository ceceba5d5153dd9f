from __future__ import annotations

from datetime import date
from typing import Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from linksync.models import AnalyticsSnapshot


class SnapshotRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def upsert(
        self,
        link_id: int,
        day: date,
        clicks: int,
        countries: Dict[str, int],
        referrers: Dict[str, int],
    ) -> bool:
        """
        Keyed by (link_id, date). Returns True when a new row was inserted,
        False when an existing row was overwritten.
        """
        row = (
            await self.db.execute(
                select(AnalyticsSnapshot).where(
                    AnalyticsSnapshot.link_id == link_id,
                    AnalyticsSnapshot.date == day,
                )
            )
        ).scalar_one_or_none()

        if row is None:
            self.db.add(
                AnalyticsSnapshot(
                    link_id=link_id,
                    date=day,
                    clicks=clicks,
                    countries=countries,
                    referrers=referrers,
                )
            )
            await self.db.flush()
            return True

        # JSON columns are replaced wholesale, not mutated in place
        row.clicks = clicks
        row.countries = dict(countries)
        row.referrers = dict(referrers)
        await self.db.flush()
        return False

    async def for_link(self, link_id: int, start: date, end: date) -> List[AnalyticsSnapshot]:
        rows = await self.db.execute(
            select(AnalyticsSnapshot)
            .where(
                AnalyticsSnapshot.link_id == link_id,
                AnalyticsSnapshot.date >= start,
                AnalyticsSnapshot.date <= end,
            )
            .order_by(AnalyticsSnapshot.date)
        )
        return list(rows.scalars().all())

    async def clicks_between(
        self, link_id: int, start: Optional[date], end: Optional[date]
    ) -> int:
        """Sum of daily clicks for one link; a None bound is open."""
        stmt = select(func.coalesce(func.sum(AnalyticsSnapshot.clicks), 0)).where(
            AnalyticsSnapshot.link_id == link_id
        )
        if start is not None:
            stmt = stmt.where(AnalyticsSnapshot.date >= start)
        if end is not None:
            stmt = stmt.where(AnalyticsSnapshot.date <= end)
        return int((await self.db.execute(stmt)).scalar_one())
