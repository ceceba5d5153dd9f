import os

# Set required env vars BEFORE any linksync imports trigger Settings()
os.environ.setdefault("API_KEY", "test-api-key-for-testing")
os.environ.setdefault("DB_USER", "test")
os.environ.setdefault("DB_PASSWORD", "test")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("BITLY_ACCESS_TOKEN", "")

import asyncio
from collections import Counter
from datetime import date

import pytest
import pytest_asyncio
from unittest.mock import AsyncMock, MagicMock, patch
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from linksync.main import app
from linksync.database import Base, get_db, get_session_factory
from linksync.auth import require_api_key
from linksync.exceptions import ProviderNotFound
from linksync.repositories.links import LinkRepository
from linksync.services.provider import (
    ProviderClient, ProviderLink, get_provider, get_provider_factory,
)

TEST_API_KEY = "test-api-key-for-testing"


class FakeProvider(ProviderClient):
    """
    In-memory provider. `errors[code]` is consumed one exception per
    summary call; `delays[code]` makes summary calls slow.
    """

    def __init__(self):
        self.links = {}
        self.totals = {}
        self.breakdowns = {}
        self.errors = {}
        self.delays = {}
        self.hooks = {}
        self.calls = Counter()

    def add(self, short_code: str, long_url: str = None, total: int = 0, title: str = None):
        long_url = long_url or f"https://example.com/{short_code.rsplit('/', 1)[-1]}"
        self.links[short_code] = ProviderLink(short_code=short_code, long_url=long_url, title=title)
        self.totals[short_code] = total
        return self.links[short_code]

    async def get_link(self, short_code):
        self.calls["get_link"] += 1
        if short_code not in self.links:
            raise ProviderNotFound(f"{short_code} not found")
        return self.links[short_code]

    async def find_by_long_url(self, long_url):
        self.calls["find_by_long_url"] += 1
        for link in self.links.values():
            if link.long_url.rstrip("/") == long_url.rstrip("/"):
                return link
        return None

    async def list_links(self, limit):
        self.calls["list_links"] += 1
        return list(self.links.values())[:limit]

    async def get_clicks_summary(self, short_code):
        self.calls[short_code] += 1
        if short_code in self.hooks:
            await self.hooks[short_code]()
        if short_code in self.delays:
            await asyncio.sleep(self.delays[short_code])
        pending = self.errors.get(short_code)
        if pending:
            raise pending.pop(0)
        return {"total_clicks": self.totals.get(short_code, 0), "unit": "day", "units": -1}

    async def get_breakdown(self, short_code, day: date):
        if short_code in self.breakdowns:
            return self.breakdowns[short_code]
        return {
            "clicks": {"link_clicks": [{"date": f"{day.isoformat()}T00:00:00+0000", "clicks": 5}]},
            "countries": {"metrics": [{"value": "US", "clicks": 3}, {"value": "DE", "clicks": 2}]},
            "referrers": {"metrics": [{"value": "", "clicks": 4}, {"value": "t.co", "clicks": 1}]},
        }


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    # file-backed so the sync engine's independent sessions see each other's commits
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/test.db")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def make_link(session_factory):
    async def _make(short_code: str, clicks_total: int = 0, long_url: str = None):
        async with session_factory() as s:
            link = await LinkRepository(s).create(
                short_code, long_url or f"https://example.com/{short_code}", None
            )
            link.clicks_total = clicks_total
            await s.commit()
            return link.id
    return _make


class AsyncIterEmpty:
    """Async iterator that yields nothing (for scan_iter mock)."""
    def __aiter__(self):
        return self

    async def __anext__(self):
        raise StopAsyncIteration


@pytest.fixture
def mock_redis():
    mock_r = AsyncMock()
    mock_r.ping = AsyncMock(return_value=True)
    mock_r.get = AsyncMock(return_value=None)
    mock_r.setex = AsyncMock(return_value=True)
    mock_r.delete = AsyncMock(return_value=1)
    # scan_iter() is a sync call that returns an async iterator
    mock_r.scan_iter = MagicMock(side_effect=lambda *a, **kw: AsyncIterEmpty())
    return mock_r


@pytest_asyncio.fixture
async def client(session_factory, provider, mock_redis):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    async def override_get_provider():
        yield provider

    async def override_api_key():
        return TEST_API_KEY

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_provider] = override_get_provider
    app.dependency_overrides[get_provider_factory] = lambda: (lambda: provider)
    app.dependency_overrides[require_api_key] = override_api_key

    # Mock Redis so route tests don't need a live Redis
    with patch("linksync.cache._pool", new=True), \
         patch("linksync.cache.get_redis", return_value=mock_redis):
        async with AsyncClient(
            transport=ASGITransport(app=app), base_url="http://test"
        ) as c:
            yield c

    app.dependency_overrides.clear()
