from __future__ import annotations

from datetime import date
from typing import List, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from linksync.cache import invalidate_pattern
from linksync.config import settings
from linksync.exceptions import NotFoundError, ValidationError
from linksync.models import Assignment
from linksync.repositories.assignments import AssignmentRepository
from linksync.repositories.links import LinkRepository

log = structlog.get_logger(__name__)

CACHE_PATTERN = "links:v1:*"


class AssignmentManager:
    """
    Link <-> project junction. Every public mutation is one transaction:
    it either commits whole or is rolled back whole.

    policy="single" keeps at most one project per link by replacing the
    others on assign; "many" is plain many-to-many.

    An assignment may carry an attribution window (start_date, end_date,
    inclusive, either side open). Project analytics only credit a link's
    clicks inside that window, so a link handed from one project to the
    next is not counted twice.
    """

    def __init__(self, db: AsyncSession, policy: Optional[str] = None):
        self.db = db
        self.repo = AssignmentRepository(db)
        self.links = LinkRepository(db)
        self.policy = policy or settings.ASSIGNMENT_POLICY

    async def _require_link(self, link_id: int) -> None:
        if await self.links.get(link_id) is None:
            raise NotFoundError(f"Link {link_id} not found")

    @staticmethod
    def _check_window(start_date: Optional[date], end_date: Optional[date]) -> None:
        if start_date and end_date and start_date > end_date:
            raise ValidationError(
                "Attribution window starts after it ends",
                context={"start_date": str(start_date), "end_date": str(end_date)},
            )

    async def _put(
        self, link_id: int, project_id: str, start_date: Optional[date], end_date: Optional[date]
    ) -> None:
        if not await self.repo.exists(link_id, project_id):
            await self.repo.insert(link_id, project_id, start_date, end_date)
        elif start_date is not None or end_date is not None:
            await self.repo.set_window(link_id, project_id, start_date, end_date)

    async def assign(
        self,
        link_id: int,
        project_id: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> None:
        self._check_window(start_date, end_date)
        await self._require_link(link_id)
        for attempt in (1, 2):
            try:
                if self.policy == "single":
                    await self.repo.delete_others(link_id, project_id)
                await self._put(link_id, project_id, start_date, end_date)
                await self.db.commit()
                break
            except IntegrityError:
                # a concurrent assign inserted the same pair first
                await self.db.rollback()
                if attempt == 2:
                    raise
                log.info("assignments.assign.race_retry", link_id=link_id, project_id=project_id)
            except Exception:
                await self.db.rollback()
                raise
        await invalidate_pattern(CACHE_PATTERN)
        log.info("assignments.assigned", link_id=link_id, project_id=project_id, policy=self.policy)

    async def unassign(self, link_id: int, project_id: str) -> None:
        try:
            removed = await self.repo.delete(link_id, project_id)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        if removed:
            await invalidate_pattern(CACHE_PATTERN)
            log.info("assignments.unassigned", link_id=link_id, project_id=project_id)

    async def reassign(
        self,
        link_id: int,
        from_project_id: str,
        to_project_id: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> None:
        """
        Unassign + assign in a single transaction. A failure between the
        two steps rolls back, leaving the original assignment in place.
        """
        if from_project_id == to_project_id:
            raise ValidationError("Source and target project are the same")
        self._check_window(start_date, end_date)
        await self._require_link(link_id)
        try:
            await self.repo.delete(link_id, from_project_id)
            if self.policy == "single":
                await self.repo.delete_others(link_id, to_project_id)
            await self._put(link_id, to_project_id, start_date, end_date)
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            log.warning(
                "assignments.reassign.rolled_back",
                link_id=link_id, from_project=from_project_id, to_project=to_project_id,
            )
            raise
        await invalidate_pattern(CACHE_PATTERN)
        log.info(
            "assignments.reassigned",
            link_id=link_id, from_project=from_project_id, to_project=to_project_id,
        )

    async def list_by_link(self, link_id: int) -> List[Assignment]:
        return await self.repo.by_link(link_id)

    async def list_by_project(self, project_id: str) -> List[Assignment]:
        return await self.repo.by_project(project_id)
