"""Tier quota limits with a bounded-staleness cache.

Default limits per tier are hardcoded; admins can override them in the
``tier_quotas`` table. Overrides are cached for ``ttl_seconds`` (the staleness
bound). The provider is passed to the QuotaAccountant explicitly rather than
imported as a global.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dedup_store.config import settings
from dedup_store.models.enums import TenantTier
from dedup_store.models.quota import TierQuota

logger = logging.getLogger(__name__)

MB = 1024 * 1024
GB = 1024 * MB

DEFAULT_TIER_QUOTAS: dict[TenantTier, int] = {
    TenantTier.FREE: 10 * MB,
    TenantTier.BASIC_PLUS: 100 * MB,
    TenantTier.STANDARD: 1 * GB,
    TenantTier.PREMIUM: 10 * GB,
}


class TierQuotaProvider:
    """Resolves the storage limit for a tier.

    Args:
        session_factory: Source of tier overrides. None means defaults only.
        ttl_seconds: How long loaded overrides are trusted.
        clock: Monotonic clock, injectable for tests.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        *,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session_factory = session_factory
        self._ttl = settings.quota_cache_ttl_seconds if ttl_seconds is None else ttl_seconds
        self._clock = clock
        self._cache: dict[TenantTier, int] | None = None
        self._loaded_at = 0.0
        self._refresh_lock = asyncio.Lock()

    async def limit_for(self, tier: TenantTier) -> int:
        limits = await self._limits()
        return limits[tier]

    async def all_limits(self) -> dict[TenantTier, int]:
        return dict(await self._limits())

    def invalidate(self) -> None:
        """Drop cached overrides, e.g. right after an admin update."""
        self._cache = None

    async def _limits(self) -> dict[TenantTier, int]:
        if self._fresh():
            return self._cache  # type: ignore[return-value]
        async with self._refresh_lock:
            if not self._fresh():
                self._cache = await self._load()
                self._loaded_at = self._clock()
        return self._cache  # type: ignore[return-value]

    def _fresh(self) -> bool:
        return self._cache is not None and self._clock() - self._loaded_at < self._ttl

    async def _load(self) -> dict[TenantTier, int]:
        limits = dict(DEFAULT_TIER_QUOTAS)
        if self._session_factory is None:
            return limits
        try:
            async with self._session_factory() as session:
                rows = (await session.execute(select(TierQuota))).scalars().all()
        except SQLAlchemyError:
            logger.warning("Could not load tier quota overrides, using defaults", exc_info=True)
            return limits
        for row in rows:
            limits[row.tier] = row.quota_bytes
        logger.debug("Loaded %d tier quota override(s)", len(rows))
        return limits
