from __future__ import annotations
from datetime import date, datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from linksync.auth import require_api_key
from linksync.database import get_db
from linksync.repositories.links import LinkRepository
from linksync.schemas import LinkOut, ProjectAnalyticsResponse
from linksync.services.aggregator import get_project_analytics, resolve_range
from linksync.services.assignments import AssignmentManager

router = APIRouter(prefix="/api/v1/projects", tags=["projects"], dependencies=[Depends(require_api_key)])


@router.get("/{project_id}/links", response_model=List[LinkOut])
async def project_links(project_id: str, db: AsyncSession = Depends(get_db)):
    assignments = await AssignmentManager(db).list_by_project(project_id)
    links = await LinkRepository(db).get_many(a.link_id for a in assignments)
    return [LinkOut.model_validate(link) for link in links]


@router.get("/{project_id}/analytics", response_model=ProjectAnalyticsResponse)
async def project_analytics(
    project_id: str,
    start: Optional[date] = Query(None),
    end: Optional[date] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    start, end = resolve_range(start, end, datetime.now(timezone.utc).date())
    return await get_project_analytics(db, project_id, start, end)
