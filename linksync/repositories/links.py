from __future__ import annotations

from datetime import datetime
from typing import Iterable, List, Optional, Set, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from linksync.models import Link, LinkStatus


class LinkRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, link_id: int) -> Optional[Link]:
        return await self.db.get(Link, link_id)

    async def get_by_short_code(self, short_code: str) -> Optional[Link]:
        rows = await self.db.execute(select(Link).where(Link.short_code == short_code))
        return rows.scalar_one_or_none()

    async def existing_codes(self, short_codes: Iterable[str]) -> Set[str]:
        codes = list(short_codes)
        if not codes:
            return set()
        rows = await self.db.execute(select(Link.short_code).where(Link.short_code.in_(codes)))
        return set(rows.scalars().all())

    async def create(self, short_code: str, long_url: str, title: Optional[str]) -> Link:
        link = Link(
            short_code=short_code,
            long_url=long_url,
            title=title,
            status=LinkStatus.ACTIVE.value,
            clicks_total=0,
        )
        self.db.add(link)
        await self.db.flush()
        return link

    async def list_active(self) -> List[Link]:
        rows = await self.db.execute(
            select(Link)
            .where(Link.status == LinkStatus.ACTIVE.value)
            .order_by(Link.id)
        )
        return list(rows.scalars().all())

    async def get_paginated(
        self,
        status: Optional[str],
        page: int,
        page_size: int,
    ) -> Tuple[int, List[Link]]:
        base = select(Link)
        count_q = select(func.count(Link.id))
        if status:
            base = base.where(Link.status == status)
            count_q = count_q.where(Link.status == status)

        total = (await self.db.execute(count_q)).scalar_one()
        rows = (
            await self.db.execute(
                base.order_by(Link.id.desc())
                    .offset((page - 1) * page_size)
                    .limit(page_size)
            )
        ).scalars().all()
        return total, list(rows)

    async def get_many(self, link_ids: Iterable[int]) -> List[Link]:
        ids = list(link_ids)
        if not ids:
            return []
        rows = await self.db.execute(select(Link).where(Link.id.in_(ids)).order_by(Link.id))
        return list(rows.scalars().all())

    async def archive(self, link_id: int) -> bool:
        """Returns True when the link transitioned, False if it already was archived."""
        result = await self.db.execute(
            update(Link)
            .where(Link.id == link_id, Link.status != LinkStatus.ARCHIVED.value)
            .values(status=LinkStatus.ARCHIVED.value)
        )
        return result.rowcount > 0

    async def update_title(self, link_id: int, title: Optional[str]) -> None:
        await self.db.execute(update(Link).where(Link.id == link_id).values(title=title))

    async def apply_sync_result(
        self,
        link_id: int,
        clicks_total: Optional[int],
        last_sync_status: str,
        synced_at: datetime,
    ) -> None:
        """
        Single UPDATE of the sync-owned columns. `status` is never in the SET
        clause, so an archive that lands mid-run survives this write.
        clicks_total=None keeps the stored total (failed sync).
        """
        values = {"last_sync_status": last_sync_status, "last_synced_at": synced_at}
        if clicks_total is not None:
            values["clicks_total"] = clicks_total
        await self.db.execute(update(Link).where(Link.id == link_id).values(**values))
