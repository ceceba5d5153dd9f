from __future__ import annotations
from datetime import date, datetime
from typing import Dict, List, Optional
from pydantic import BaseModel, Field


class LinkIngestRequest(BaseModel):
    input: str = Field(..., min_length=1, max_length=2048)
    title: Optional[str] = Field(None, max_length=500)
    project_id: Optional[str] = Field(None, max_length=64)


class LinkOut(BaseModel):
    id: int
    short_code: str
    long_url: str
    title: Optional[str]
    status: str
    clicks_total: int
    last_synced_at: Optional[datetime] = None
    last_sync_status: str
    created_at: Optional[datetime] = None
    model_config = {"from_attributes": True}


class LinkIngestResponse(BaseModel):
    link: LinkOut
    created: bool
    assigned_project: Optional[str] = None


class PaginatedLinks(BaseModel):
    total: int
    page: int
    page_size: int
    items: List[LinkOut]


class LinkUpdate(BaseModel):
    title: Optional[str] = Field(None, max_length=500)


class ImportRequest(BaseModel):
    limit: int = Field(100, ge=1, le=1000)


class ImportResponse(BaseModel):
    total: int
    imported: int
    skipped: int


class AssignmentOut(BaseModel):
    link_id: int
    project_id: str
    assigned_at: Optional[datetime] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    model_config = {"from_attributes": True}


class AssignmentWindow(BaseModel):
    start_date: Optional[date] = None
    end_date: Optional[date] = None


class ReassignRequest(BaseModel):
    from_project_id: str = Field(..., min_length=1, max_length=64)
    to_project_id: str = Field(..., min_length=1, max_length=64)
    start_date: Optional[date] = None
    end_date: Optional[date] = None


class SnapshotOut(BaseModel):
    link_id: int
    date: date
    clicks: int
    countries: Dict[str, int]
    referrers: Dict[str, int]
    fetched_at: Optional[datetime] = None
    model_config = {"from_attributes": True}


class AnalyticsRollup(BaseModel):
    days: int
    clicks: int
    countries: Dict[str, int]
    referrers: Dict[str, int]


class LinkAnalyticsResponse(BaseModel):
    link_id: int
    start: date
    end: date
    clicks_total: int          # provider running total as of last successful sync
    snapshots: List[SnapshotOut]
    rollup: AnalyticsRollup
    cache_status: Optional[str] = None     # HIT | MISS


class ProjectAnalyticsResponse(BaseModel):
    project_id: str
    start: date
    end: date
    link_ids: List[int]
    clicks_total: int
    rollup: AnalyticsRollup


class SyncLinkResultOut(BaseModel):
    position: int
    link_id: int
    status: str
    error_kind: Optional[str] = None
    error_detail: Optional[str] = None
    model_config = {"from_attributes": True}


class SyncRunOut(BaseModel):
    id: str
    trigger: str
    status: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    links_total: int
    links_succeeded: int
    links_failed: int
    links_skipped: int
    error_detail: Optional[str] = None
    results: List[SyncLinkResultOut] = []
    model_config = {"from_attributes": True}


class SyncAccepted(BaseModel):
    message: str
    run_id: str
    trigger: str
    started_at: datetime


class HealthResponse(BaseModel):
    status: str
    database: str
    redis: str
    scheduler: str
    version: str


class MetricsResponse(BaseModel):
    cache_hits: int
    cache_misses: int
    hit_rate: float
    total_requests: int
    running_sync: Optional[str] = None
    last_run_status: Optional[str] = None
