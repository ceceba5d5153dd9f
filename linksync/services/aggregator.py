from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from linksync.cache import build_key, cache_get, cache_set, record_hit, record_miss
from linksync.config import settings
from linksync.exceptions import NotFoundError, ProviderDataError, ValidationError
from linksync.repositories.assignments import AssignmentRepository
from linksync.repositories.links import LinkRepository
from linksync.repositories.snapshots import SnapshotRepository
from linksync.schemas import (
    AnalyticsRollup, LinkAnalyticsResponse, ProjectAnalyticsResponse, SnapshotOut,
)

log = structlog.get_logger(__name__)

_COUNTRY_RE = re.compile(r"^[A-Z]{2}$")
MAX_RANGE_DAYS = 366


@dataclass
class SnapshotData:
    link_id: int
    date: date
    clicks: int
    countries: Dict[str, int]
    referrers: Dict[str, int]
    dropped: int = 0      # breakdown entries discarded as malformed


@dataclass
class LinkSyncData:
    link_id: int
    clicks_total: int
    snapshots: List[SnapshotData] = field(default_factory=list)

    @property
    def dropped(self) -> int:
        return sum(s.dropped for s in self.snapshots)


def _count(value: Any) -> Optional[int]:
    """Non-negative integer click count, or None when unusable."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, float) and value.is_integer() and value >= 0:
        return int(value)
    if isinstance(value, str) and value.strip().isdecimal():
        return int(value.strip())
    return None


def _metrics(payload: Any) -> Optional[list]:
    if isinstance(payload, dict) and isinstance(payload.get("metrics"), list):
        return payload["metrics"]
    return None


def read_total(summary: Any) -> int:
    """Provider running total. Unreadable total fails the link."""
    total = _count(summary.get("total_clicks")) if isinstance(summary, dict) else None
    if total is None:
        raise ProviderDataError("Clicks summary has no readable total_clicks")
    return total


def _countries(payload: Any) -> tuple[Dict[str, int], int]:
    entries = _metrics(payload)
    if entries is None:
        return {}, 1 if payload is not None else 0
    out: Dict[str, int] = {}
    dropped = 0
    for entry in entries:
        if not isinstance(entry, dict):
            dropped += 1
            continue
        key = entry.get("value", entry.get("country"))
        clicks = _count(entry.get("clicks"))
        code = key.strip().upper() if isinstance(key, str) else ""
        if clicks is None or not _COUNTRY_RE.match(code):
            dropped += 1
            continue
        out[code] = out.get(code, 0) + clicks
    return out, dropped


def _referrers(payload: Any) -> tuple[Dict[str, int], int]:
    entries = _metrics(payload)
    if entries is None:
        return {}, 1 if payload is not None else 0
    out: Dict[str, int] = {}
    dropped = 0
    for entry in entries:
        if not isinstance(entry, dict):
            dropped += 1
            continue
        key = entry.get("value", entry.get("referrer"))
        clicks = _count(entry.get("clicks"))
        if clicks is None or (key is not None and not isinstance(key, str)):
            dropped += 1
            continue
        name = (key or "").strip() or "direct"
        out[name] = out.get(name, 0) + clicks
    return out, dropped


def _day_clicks(payload: Any, day: date) -> tuple[int, int]:
    series = payload.get("link_clicks") if isinstance(payload, dict) else None
    if not isinstance(series, list):
        return 0, 1 if payload is not None else 0
    wanted = day.isoformat()
    total, dropped = 0, 0
    for point in series:
        clicks = _count(point.get("clicks")) if isinstance(point, dict) else None
        stamp = point.get("date") if isinstance(point, dict) else None
        if clicks is None or not isinstance(stamp, str):
            dropped += 1
            continue
        if stamp[:10] == wanted:
            total += clicks
    return total, dropped


def normalize(link_id: int, day: date, breakdown: Any) -> SnapshotData:
    """
    Map one day of provider breakdown into canonical mappings. Malformed
    entries are dropped and counted; they never raise.
    """
    breakdown = breakdown if isinstance(breakdown, dict) else {}
    clicks, d1 = _day_clicks(breakdown.get("clicks"), day)
    countries, d2 = _countries(breakdown.get("countries"))
    referrers, d3 = _referrers(breakdown.get("referrers"))
    dropped = d1 + d2 + d3
    if dropped:
        log.warning("aggregator.entries_dropped", link_id=link_id, date=day.isoformat(), dropped=dropped)
    return SnapshotData(
        link_id=link_id,
        date=day,
        clicks=clicks,
        countries=countries,
        referrers=referrers,
        dropped=dropped,
    )


def normalize_link(
    link_id: int,
    summary: Any,
    breakdowns: Dict[date, Any],
) -> LinkSyncData:
    """
    Everything one successful link sync produces. The total is taken from
    the provider's summary, never summed from snapshots.
    """
    total = read_total(summary)
    snapshots = [normalize(link_id, day, breakdowns[day]) for day in sorted(breakdowns)]
    return LinkSyncData(link_id=link_id, clicks_total=total, snapshots=snapshots)


def _ranked(counter: Dict[str, int]) -> Dict[str, int]:
    return dict(sorted(counter.items(), key=lambda kv: (-kv[1], kv[0])))


def rollup(snapshots: Iterable[Any]) -> dict:
    """Sum a set of stored snapshots (any objects with clicks/countries/referrers/date)."""
    clicks = 0
    days = set()
    countries: Dict[str, int] = {}
    referrers: Dict[str, int] = {}
    for snap in snapshots:
        days.add(snap.date)
        clicks += snap.clicks or 0
        for key, value in (snap.countries or {}).items():
            countries[key] = countries.get(key, 0) + value
        for key, value in (snap.referrers or {}).items():
            referrers[key] = referrers.get(key, 0) + value
    return {
        "days": len(days),
        "clicks": clicks,
        "countries": _ranked(countries),
        "referrers": _ranked(referrers),
    }


def window_days(today: date, size: int) -> Sequence[date]:
    """The `size` UTC days ending today, oldest first."""
    return [today - timedelta(days=offset) for offset in range(size - 1, -1, -1)]


# ── Read side ─────────────────────────────────────────────────────────────────

def resolve_range(start: Optional[date], end: Optional[date], today: date) -> tuple[date, date]:
    end = end or today
    start = start or end - timedelta(days=29)
    if start > end:
        raise ValidationError("start must not be after end", context={"start": str(start), "end": str(end)})
    if (end - start).days > MAX_RANGE_DAYS:
        raise ValidationError(f"Date range is limited to {MAX_RANGE_DAYS} days")
    return start, end


async def get_link_analytics(
    db: AsyncSession, link_id: int, start: date, end: date
) -> LinkAnalyticsResponse:
    key = build_key("analytics", link_id, start, end)
    cached = await cache_get(key)
    if cached:
        await record_hit()
        cached["cache_status"] = "HIT"
        return LinkAnalyticsResponse(**cached)

    await record_miss()
    link = await LinkRepository(db).get(link_id)
    if link is None:
        raise NotFoundError(f"Link {link_id} not found")
    snapshots = await SnapshotRepository(db).for_link(link_id, start, end)
    response = LinkAnalyticsResponse(
        link_id=link_id,
        start=start,
        end=end,
        clicks_total=link.clicks_total,
        snapshots=[SnapshotOut.model_validate(s) for s in snapshots],
        rollup=AnalyticsRollup(**rollup(snapshots)),
        cache_status="MISS",
    )
    await cache_set(key, response.model_dump(mode="json"), settings.CACHE_TTL_ANALYTICS)
    return response


async def get_project_analytics(
    db: AsyncSession, project_id: str, start: date, end: date
) -> ProjectAnalyticsResponse:
    """
    Across every link assigned to the project, archived ones included.

    Each assignment only contributes clicks inside its attribution window,
    so a link shared by several projects over disjoint windows is counted
    once. An unbounded assignment credits the link's whole lifetime total.
    """
    assignments = await AssignmentRepository(db).by_project(project_id)
    link_ids = sorted({a.link_id for a in assignments})
    links = {link.id: link for link in await LinkRepository(db).get_many(link_ids)}
    snapshots_repo = SnapshotRepository(db)

    snapshots = []
    clicks_total = 0
    for a in assignments:
        lo = max(start, a.start_date) if a.start_date else start
        hi = min(end, a.end_date) if a.end_date else end
        if lo <= hi:
            snapshots.extend(await snapshots_repo.for_link(a.link_id, lo, hi))
        if a.start_date is None and a.end_date is None:
            link = links.get(a.link_id)
            clicks_total += link.clicks_total if link else 0
        else:
            clicks_total += await snapshots_repo.clicks_between(a.link_id, a.start_date, a.end_date)

    return ProjectAnalyticsResponse(
        project_id=project_id,
        start=start,
        end=end,
        link_ids=link_ids,
        clicks_total=clicks_total,
        rollup=AnalyticsRollup(**rollup(snapshots)),
    )
