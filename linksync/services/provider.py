from __future__ import annotations

import abc
from dataclasses import dataclass
from datetime import date
from typing import Any, Awaitable, Callable, List, Optional, TypeVar

import httpx
import structlog
from tenacity import (
    AsyncRetrying, RetryCallState, retry_if_exception_type,
    stop_after_attempt, wait_exponential,
)

from linksync.config import settings
from linksync.exceptions import (
    AuthError, ProviderDataError, ProviderError, ProviderNotFound,
    RateLimited, TransientNetwork,
)

log = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class ProviderLink:
    short_code: str          # provider id, e.g. "bit.ly/abc123"
    long_url: str
    title: Optional[str] = None
    archived: bool = False


class ProviderClient(abc.ABC):
    """
    What the sync engine needs from a link-analytics provider.

    Implementations raise the ProviderError subclasses from
    linksync.exceptions and never retry on their own; retry policy lives
    with the caller (see call_with_backoff).
    """

    @abc.abstractmethod
    async def get_link(self, short_code: str) -> ProviderLink: ...

    @abc.abstractmethod
    async def find_by_long_url(self, long_url: str) -> Optional[ProviderLink]: ...

    @abc.abstractmethod
    async def list_links(self, limit: int) -> List[ProviderLink]: ...

    @abc.abstractmethod
    async def get_clicks_summary(self, short_code: str) -> Any: ...

    @abc.abstractmethod
    async def get_breakdown(self, short_code: str, day: date) -> Any: ...

    async def aclose(self) -> None:
        return None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()


# ── Backoff ───────────────────────────────────────────────────────────────────

def _backoff_wait(multiplier: float, max_wait: float) -> Callable[[RetryCallState], float]:
    exponential = wait_exponential(multiplier=multiplier, min=0, max=max_wait)

    def _wait(retry_state: RetryCallState) -> float:
        delay = exponential(retry_state)
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if isinstance(exc, RateLimited) and exc.retry_after:
            delay = min(max(delay, exc.retry_after), max_wait)
        return delay

    return _wait


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    log.warning(
        "provider.retrying",
        attempt=retry_state.attempt_number,
        kind=getattr(exc, "kind", None),
        error=str(exc),
    )


async def call_with_backoff(
    fn: Callable[[], Awaitable[T]],
    attempts: Optional[int] = None,
    multiplier: Optional[float] = None,
    max_wait: Optional[float] = None,
) -> T:
    """Retries RateLimited/TransientNetwork; anything else propagates at once."""
    retrying = AsyncRetrying(
        retry=retry_if_exception_type((RateLimited, TransientNetwork)),
        stop=stop_after_attempt(attempts or settings.PROVIDER_MAX_ATTEMPTS),
        wait=_backoff_wait(
            settings.PROVIDER_BACKOFF_MULTIPLIER if multiplier is None else multiplier,
            settings.PROVIDER_BACKOFF_MAX if max_wait is None else max_wait,
        ),
        before_sleep=_log_retry,
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            return await fn()
    raise AssertionError("unreachable")  # pragma: no cover


# ── Bitly v4 ──────────────────────────────────────────────────────────────────

def _retry_after(resp: httpx.Response) -> Optional[float]:
    raw = resp.headers.get("Retry-After")
    try:
        return float(raw) if raw is not None else None
    except ValueError:
        return None


def _to_link(payload: Any) -> ProviderLink:
    if not isinstance(payload, dict) or not payload.get("id") or not payload.get("long_url"):
        raise ProviderDataError("Link metadata missing id or long_url")
    return ProviderLink(
        short_code=str(payload["id"]),
        long_url=str(payload["long_url"]),
        title=payload.get("title") or None,
        archived=bool(payload.get("archived", False)),
    )


class BitlyClient(ProviderClient):
    def __init__(
        self,
        access_token: str,
        group_guid: str = "",
        base_url: str = "https://api-ssl.bitly.com/v4",
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._token = access_token
        self._group_guid = group_guid
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout),
            limits=httpx.Limits(
                max_connections=settings.SYNC_CONCURRENCY * 2,
                max_keepalive_connections=settings.SYNC_CONCURRENCY,
            ),
            transport=transport,
        )

    @classmethod
    def from_settings(cls) -> "BitlyClient":
        return cls(
            access_token=settings.BITLY_ACCESS_TOKEN,
            group_guid=settings.BITLY_GROUP_GUID or settings.BITLY_ORGANIZATION_GUID,
            base_url=settings.BITLY_API_BASE,
            timeout=settings.PROVIDER_TIMEOUT,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get(self, path: str, params: Optional[dict] = None) -> Any:
        if not self._token:
            raise AuthError("BITLY_ACCESS_TOKEN is not configured")

        try:
            resp = await self._client.get(
                path,
                params=params,
                headers={"Authorization": f"Bearer {self._token}"},
            )
        except httpx.TimeoutException as exc:
            raise TransientNetwork(f"Timeout calling {path}") from exc
        except httpx.TransportError as exc:
            raise TransientNetwork(f"Network error calling {path}: {exc}") from exc

        status = resp.status_code
        if status in (401, 403):
            raise AuthError("Provider rejected credentials", context={"status": status})
        if status == 404:
            raise ProviderNotFound(f"Not found upstream: {path}", context={"path": path})
        if status == 429:
            retry_after = _retry_after(resp)
            log.warning("provider.rate_limited", path=path, retry_after=retry_after)
            raise RateLimited("Provider rate limit hit", retry_after=retry_after)
        if status >= 500:
            raise TransientNetwork(f"Provider returned {status}", context={"status": status})
        if status >= 400:
            raise ProviderError(f"Provider returned {status}", context={"status": status})

        try:
            return resp.json()
        except ValueError as exc:
            raise ProviderDataError(f"Undecodable response from {path}") from exc

    async def get_link(self, short_code: str) -> ProviderLink:
        return _to_link(await self._get(f"/bitlinks/{short_code}"))

    def _group_path(self) -> str:
        if not self._group_guid:
            raise ProviderError("BITLY_GROUP_GUID is not configured")
        return f"/groups/{self._group_guid}/bitlinks"

    async def find_by_long_url(self, long_url: str) -> Optional[ProviderLink]:
        if not self._group_guid:
            log.warning("provider.lookup.no_group", long_url=long_url)
            return None
        data = await self._get(self._group_path(), params={"query": long_url, "size": 50})
        wanted = long_url.rstrip("/")
        items = data.get("links", []) if isinstance(data, dict) else []
        for item in items:
            try:
                candidate = _to_link(item)
            except ProviderDataError:
                continue
            if candidate.long_url.rstrip("/") == wanted:
                return candidate
        return None

    async def list_links(self, limit: int) -> List[ProviderLink]:
        out: List[ProviderLink] = []
        page = 1
        while len(out) < limit:
            data = await self._get(
                self._group_path(),
                params={"size": min(100, limit - len(out)), "page": page},
            )
            items = data.get("links", []) if isinstance(data, dict) else []
            for item in items:
                try:
                    out.append(_to_link(item))
                except ProviderDataError:
                    log.warning("provider.list.malformed_entry")
            pagination = (data.get("pagination") or {}) if isinstance(data, dict) else {}
            if not items or not pagination.get("next"):
                break
            page += 1
        return out[:limit]

    async def get_clicks_summary(self, short_code: str) -> Any:
        return await self._get(
            f"/bitlinks/{short_code}/clicks/summary",
            params={"unit": "day", "units": -1},
        )

    async def get_breakdown(self, short_code: str, day: date) -> Any:
        params = {
            "unit": "day",
            "units": 1,
            "unit_reference": f"{day.isoformat()}T23:59:59+0000",
        }
        base = f"/bitlinks/{short_code}"
        return {
            "clicks": await self._get(f"{base}/clicks", params=params),
            "countries": await self._get(f"{base}/countries", params=params),
            "referrers": await self._get(f"{base}/referrers", params=params),
        }


async def get_provider():
    async with BitlyClient.from_settings() as client:
        yield client


def get_provider_factory() -> Callable[[], ProviderClient]:
    """For work that outlives the request and must own its client."""
    return BitlyClient.from_settings
