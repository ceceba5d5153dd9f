from __future__ import annotations

from datetime import datetime
from typing import List, Optional, Tuple

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from linksync.cache import invalidate_pattern
from linksync.config import settings
from linksync.exceptions import NotFoundError, ProviderNotFound, ValidationError
from linksync.models import Link
from linksync.repositories.links import LinkRepository
from linksync.services.normalizer import LinkInputNormalizer
from linksync.services.provider import ProviderClient, ProviderLink, call_with_backoff

log = structlog.get_logger(__name__)

CACHE_PATTERN = "links:v1:*"


def default_normalizer() -> LinkInputNormalizer:
    return LinkInputNormalizer(settings.SHORT_DOMAINS, settings.DEFAULT_SHORT_DOMAIN)


class LinkRegistry:
    """Canonical link records: ingest with dedup, soft-delete, sync bookkeeping."""

    def __init__(
        self,
        db: AsyncSession,
        provider: Optional[ProviderClient] = None,
        normalizer: Optional[LinkInputNormalizer] = None,
    ):
        self.db = db
        self.repo = LinkRepository(db)
        self.provider = provider
        self.normalizer = normalizer or default_normalizer()

    def _require_provider(self) -> ProviderClient:
        if self.provider is None:
            raise RuntimeError("LinkRegistry needs a provider for this operation")
        return self.provider

    # ── Reads ─────────────────────────────────────────────────────────────────

    async def get(self, link_id: int) -> Link:
        link = await self.repo.get(link_id)
        if link is None:
            raise NotFoundError(f"Link {link_id} not found")
        return link

    async def list_active(self) -> List[Link]:
        return await self.repo.list_active()

    async def list_links(self, status: Optional[str], page: int, page_size: int):
        return await self.repo.get_paginated(status, page, page_size)

    # ── Ingest ────────────────────────────────────────────────────────────────

    async def ingest(self, raw_input: str, title: Optional[str] = None) -> Tuple[Link, bool]:
        """
        Returns (link, created). An existing link with the same canonical
        short code is returned as-is, archived or not.
        """
        parsed = self.normalizer.parse(raw_input)
        provider = self._require_provider()

        if parsed.short_code:
            short_code = parsed.short_code
            existing = await self.repo.get_by_short_code(short_code)
            if existing is not None:
                log.info("registry.link.deduplicated", link_id=existing.id, short_code=short_code)
                return existing, False
            try:
                meta = await call_with_backoff(lambda: provider.get_link(short_code))
            except ProviderNotFound as exc:
                raise ValidationError(
                    "Short link does not exist at the provider",
                    context={"short_code": short_code},
                ) from exc
        else:
            long_url = parsed.long_url
            meta = await call_with_backoff(lambda: provider.find_by_long_url(long_url))
            if meta is None:
                raise ValidationError(
                    "No short link exists for this URL",
                    context={"long_url": long_url},
                )
            short_code = self.normalizer.canonical(meta.short_code)
            existing = await self.repo.get_by_short_code(short_code)
            if existing is not None:
                log.info("registry.link.deduplicated", link_id=existing.id, short_code=short_code)
                return existing, False

        link, created = await self._create(short_code, meta, title)
        if created:
            await invalidate_pattern(CACHE_PATTERN)
        return link, created

    async def _create(
        self, short_code: str, meta: ProviderLink, title: Optional[str]
    ) -> Tuple[Link, bool]:
        try:
            link = await self.repo.create(short_code, meta.long_url, title or meta.title)
            await self.db.commit()
        except IntegrityError:
            # lost a race with a concurrent ingest of the same code
            await self.db.rollback()
            winner = await self.repo.get_by_short_code(short_code)
            if winner is None:
                raise
            return winner, False

        await self.db.refresh(link)
        log.info("registry.link.ingested", link_id=link.id, short_code=short_code)
        return link, True

    async def import_from_provider(self, limit: int) -> dict:
        provider = self._require_provider()
        remote = await call_with_backoff(lambda: provider.list_links(limit))

        by_code = {}
        for item in remote:
            try:
                by_code.setdefault(self.normalizer.canonical(item.short_code), item)
            except ValidationError:
                log.warning("registry.import.bad_id", provider_id=item.short_code)

        known = await self.repo.existing_codes(by_code)
        imported = 0
        for code, item in by_code.items():
            if code in known:
                continue
            _, created = await self._create(code, item, None)
            imported += int(created)

        if imported:
            await invalidate_pattern(CACHE_PATTERN)
        log.info("registry.import.complete", total=len(remote), imported=imported)
        return {"total": len(remote), "imported": imported, "skipped": len(remote) - imported}

    # ── Mutations ─────────────────────────────────────────────────────────────

    async def archive(self, link_id: int) -> Link:
        """Idempotent. Snapshots and sync history are left untouched."""
        link = await self.get(link_id)
        changed = await self.repo.archive(link_id)
        await self.db.commit()
        await self.db.refresh(link)
        if changed:
            log.info("registry.link.archived", link_id=link_id)
            await invalidate_pattern(CACHE_PATTERN)
        return link

    async def update_title(self, link_id: int, title: Optional[str]) -> Link:
        link = await self.get(link_id)
        await self.repo.update_title(link_id, title)
        await self.db.commit()
        await self.db.refresh(link)
        await invalidate_pattern(CACHE_PATTERN)
        return link

    async def apply_sync_result(
        self,
        link_id: int,
        clicks_total: Optional[int],
        last_sync_status: str,
        timestamp: datetime,
    ) -> None:
        """Part of the caller's transaction; does not commit."""
        await self.repo.apply_sync_result(link_id, clicks_total, last_sync_status, timestamp)
