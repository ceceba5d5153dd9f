from __future__ import annotations
from datetime import date
from typing import List, Optional
from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from linksync.models import Assignment


class AssignmentRepository:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def exists(self, link_id: int, project_id: str) -> bool:
        rows = await self.db.execute(
            select(Assignment.id).where(
                Assignment.link_id == link_id,
                Assignment.project_id == project_id,
            )
        )
        return rows.first() is not None

    async def insert(
        self,
        link_id: int,
        project_id: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> None:
        self.db.add(
            Assignment(
                link_id=link_id,
                project_id=project_id,
                start_date=start_date,
                end_date=end_date,
            )
        )
        await self.db.flush()

    async def set_window(
        self,
        link_id: int,
        project_id: str,
        start_date: Optional[date],
        end_date: Optional[date],
    ) -> None:
        await self.db.execute(
            update(Assignment)
            .where(Assignment.link_id == link_id, Assignment.project_id == project_id)
            .values(start_date=start_date, end_date=end_date)
        )

    async def delete(self, link_id: int, project_id: str) -> int:
        result = await self.db.execute(
            delete(Assignment).where(
                Assignment.link_id == link_id,
                Assignment.project_id == project_id,
            )
        )
        return result.rowcount

    async def delete_others(self, link_id: int, keep_project_id: str) -> int:
        result = await self.db.execute(
            delete(Assignment).where(
                Assignment.link_id == link_id,
                Assignment.project_id != keep_project_id,
            )
        )
        return result.rowcount

    async def by_link(self, link_id: int) -> List[Assignment]:
        rows = await self.db.execute(
            select(Assignment)
            .where(Assignment.link_id == link_id)
            .order_by(Assignment.project_id)
        )
        return list(rows.scalars().all())

    async def by_project(self, project_id: str) -> List[Assignment]:
        rows = await self.db.execute(
            select(Assignment)
            .where(Assignment.project_id == project_id)
            .order_by(Assignment.link_id)
        )
        return list(rows.scalars().all())
