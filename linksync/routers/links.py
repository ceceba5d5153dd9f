from __future__ import annotations
from datetime import date, datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from linksync.auth import require_api_key
from linksync.cache import build_key, cache_get, cache_set, record_hit, record_miss
from linksync.config import settings
from linksync.database import get_db
from linksync.schemas import (
    AssignmentOut, AssignmentWindow, ImportRequest, ImportResponse, LinkAnalyticsResponse,
    LinkIngestRequest, LinkIngestResponse, LinkOut, LinkUpdate,
    PaginatedLinks, ReassignRequest,
)
from linksync.services.aggregator import get_link_analytics, resolve_range
from linksync.services.assignments import AssignmentManager
from linksync.services.provider import ProviderClient, get_provider
from linksync.services.registry import LinkRegistry

router = APIRouter(prefix="/api/v1/links", tags=["links"], dependencies=[Depends(require_api_key)])


@router.post("", response_model=LinkIngestResponse)
async def ingest_link(
    body: LinkIngestRequest,
    response: Response,
    db: AsyncSession = Depends(get_db),
    provider: ProviderClient = Depends(get_provider),
):
    """201 for a new link, 200 when the input resolved to an existing one."""
    link, created = await LinkRegistry(db, provider).ingest(body.input, body.title)
    if body.project_id:
        await AssignmentManager(db).assign(link.id, body.project_id)
    response.status_code = 201 if created else 200
    return LinkIngestResponse(
        link=LinkOut.model_validate(link),
        created=created,
        assigned_project=body.project_id,
    )


@router.get("", response_model=PaginatedLinks)
async def list_links(
    status: Optional[str] = Query(None, pattern="^(active|archived)$"),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    cache_key = build_key("links", status, page, page_size)
    cached = await cache_get(cache_key)
    if cached:
        await record_hit()
        return PaginatedLinks(**cached)

    await record_miss()
    total, rows = await LinkRegistry(db).list_links(status, page, page_size)
    result = PaginatedLinks(
        total=total, page=page, page_size=page_size,
        items=[LinkOut.model_validate(r) for r in rows],
    )
    await cache_set(cache_key, result.model_dump(mode="json"), settings.CACHE_TTL_LISTING)
    return result


@router.post("/import", response_model=ImportResponse)
async def import_links(
    body: Optional[ImportRequest] = None,
    db: AsyncSession = Depends(get_db),
    provider: ProviderClient = Depends(get_provider),
):
    limit = body.limit if body else settings.IMPORT_LIMIT
    return ImportResponse(**await LinkRegistry(db, provider).import_from_provider(limit))


@router.get("/{link_id}", response_model=LinkOut)
async def get_link(link_id: int, db: AsyncSession = Depends(get_db)):
    return LinkOut.model_validate(await LinkRegistry(db).get(link_id))


@router.patch("/{link_id}", response_model=LinkOut)
async def update_link(link_id: int, body: LinkUpdate, db: AsyncSession = Depends(get_db)):
    return LinkOut.model_validate(await LinkRegistry(db).update_title(link_id, body.title))


@router.post("/{link_id}/archive", response_model=LinkOut)
async def archive_link(link_id: int, db: AsyncSession = Depends(get_db)):
    return LinkOut.model_validate(await LinkRegistry(db).archive(link_id))


@router.get("/{link_id}/analytics", response_model=LinkAnalyticsResponse)
async def link_analytics(
    link_id: int,
    start: Optional[date] = Query(None),
    end: Optional[date] = Query(None),
    db: AsyncSession = Depends(get_db),
):
    start, end = resolve_range(start, end, datetime.now(timezone.utc).date())
    return await get_link_analytics(db, link_id, start, end)


# ── Assignments ───────────────────────────────────────────────────────────────

@router.get("/{link_id}/projects", response_model=List[AssignmentOut])
async def list_link_projects(link_id: int, db: AsyncSession = Depends(get_db)):
    await LinkRegistry(db).get(link_id)
    rows = await AssignmentManager(db).list_by_link(link_id)
    return [AssignmentOut.model_validate(r) for r in rows]


@router.put("/{link_id}/projects/{project_id}", status_code=204)
async def assign_project(
    link_id: int,
    project_id: str,
    body: Optional[AssignmentWindow] = None,
    db: AsyncSession = Depends(get_db),
):
    window = body or AssignmentWindow()
    await AssignmentManager(db).assign(link_id, project_id, window.start_date, window.end_date)


@router.delete("/{link_id}/projects/{project_id}", status_code=204)
async def unassign_project(link_id: int, project_id: str, db: AsyncSession = Depends(get_db)):
    await AssignmentManager(db).unassign(link_id, project_id)


@router.post("/{link_id}/reassign", response_model=List[AssignmentOut])
async def reassign_project(
    link_id: int, body: ReassignRequest, db: AsyncSession = Depends(get_db)
):
    manager = AssignmentManager(db)
    await manager.reassign(
        link_id, body.from_project_id, body.to_project_id, body.start_date, body.end_date
    )
    return [AssignmentOut.model_validate(r) for r in await manager.list_by_link(link_id)]
