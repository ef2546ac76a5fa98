"""Quota accounting for tenant storage.

All mutations are single conditional UPDATE statements evaluated by the
database (``SET bytes_reserved = bytes_reserved + :n WHERE ...``), never a
read in Python followed by a write, so concurrent ingestions cannot lose
updates or overshoot the limit.

Whether deduplicated references are charged is decided in exactly one place,
chargeable_bytes(). Every Reference stores the amount it was charged, and
detaching releases exactly that amount.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from dedup_store.config import settings
from dedup_store.errors import IntegrityViolation, NotFound, QuotaExceeded
from dedup_store.models.enums import TenantTier
from dedup_store.models.quota import QuotaLedgerEntry
from dedup_store.services.limits import TierQuotaProvider

logger = logging.getLogger(__name__)

BYTE_UNITS = ("Bytes", "KB", "MB", "GB", "TB")


def chargeable_bytes(
    size_bytes: int,
    *,
    deduplicated: bool,
    charge_deduplicated: bool | None = None,
) -> int:
    """Amount charged to a tenant for one reference to a blob of size_bytes.

    The creating reference is always charged. A deduplicated reference is
    charged only when the policy flag says references consume quota.
    """
    if charge_deduplicated is None:
        charge_deduplicated = settings.charge_deduplicated_references
    if deduplicated and not charge_deduplicated:
        return 0
    return size_bytes


def format_bytes(num_bytes: int) -> str:
    """Human-readable size: 0 Bytes, 1.5 KB, 7 MB."""
    if num_bytes <= 0:
        return "0 Bytes"
    i = 0
    while i < len(BYTE_UNITS) - 1 and num_bytes >= 1024 ** (i + 1):
        i += 1
    value = round(num_bytes / 1024**i, 2)
    return f"{value:g} {BYTE_UNITS[i]}"


def usage_percentage(used: int, total: int) -> float:
    """Percentage of quota used, capped at 100."""
    if total <= 0:
        return 0.0
    return min(100.0, used / total * 100)


@dataclass
class QuotaUsage:
    """Snapshot of a tenant's storage usage."""

    tenant_id: str
    tier: TenantTier
    bytes_consumed: int
    bytes_reserved: int
    quota_bytes: int

    @property
    def available_bytes(self) -> int:
        return max(0, self.quota_bytes - self.bytes_consumed - self.bytes_reserved)

    @property
    def percent_used(self) -> float:
        return usage_percentage(self.bytes_consumed + self.bytes_reserved, self.quota_bytes)

    def to_dict(self) -> dict[str, object]:
        return {
            "tenant_id": self.tenant_id,
            "tier": self.tier.value,
            "bytes_consumed": self.bytes_consumed,
            "bytes_reserved": self.bytes_reserved,
            "quota_bytes": self.quota_bytes,
            "available_bytes": self.available_bytes,
            "percent_used": round(self.percent_used, 2),
            "consumed_formatted": format_bytes(self.bytes_consumed),
            "quota_formatted": format_bytes(self.quota_bytes),
            "available_formatted": format_bytes(self.available_bytes),
        }


class QuotaAccountant:
    """Session-scoped quota operations.

    Every method joins the caller's transaction, so a reservation can be made
    atomically with other writes (e.g. the ingest journal entry).
    """

    def __init__(self, session: AsyncSession, limits: TierQuotaProvider) -> None:
        self._session = session
        self._limits = limits

    async def ensure_tenant(
        self, tenant_id: str, tier: TenantTier = TenantTier.FREE
    ) -> QuotaLedgerEntry:
        """Create the tenant's ledger row if it does not exist yet.

        Uses INSERT ... ON CONFLICT DO NOTHING so concurrent first uploads of
        the same tenant do not fail the surrounding transaction.
        """
        values = {"tenant_id": tenant_id, "tier": tier, "bytes_consumed": 0, "bytes_reserved": 0}
        dialect = self._session.bind.dialect.name
        if dialect == "postgresql":
            stmt = postgresql.insert(QuotaLedgerEntry).values(**values).on_conflict_do_nothing()
            await self._session.execute(stmt)
        elif dialect == "sqlite":
            stmt = sqlite.insert(QuotaLedgerEntry).values(**values).on_conflict_do_nothing()
            await self._session.execute(stmt)
        elif await self._session.get(QuotaLedgerEntry, tenant_id) is None:
            self._session.add(QuotaLedgerEntry(**values))
            await self._session.flush()
        return await self._load(tenant_id)

    async def reserve(self, tenant_id: str, num_bytes: int) -> None:
        """Reserve bytes for an in-flight ingestion.

        Raises:
            QuotaExceeded: consumed + reserved + num_bytes would exceed the limit.
        """
        if num_bytes < 0:
            raise ValueError("Cannot reserve a negative amount")
        entry = await self.ensure_tenant(tenant_id)
        if num_bytes == 0:
            return
        limit = await self.limit_for(entry)
        stmt = (
            update(QuotaLedgerEntry)
            .where(
                QuotaLedgerEntry.tenant_id == tenant_id,
                QuotaLedgerEntry.bytes_consumed + QuotaLedgerEntry.bytes_reserved + num_bytes
                <= limit,
            )
            .values(bytes_reserved=QuotaLedgerEntry.bytes_reserved + num_bytes)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            usage = await self.get_usage(tenant_id)
            raise QuotaExceeded(
                f"Storage quota exceeded for tenant {tenant_id}: requested "
                f"{format_bytes(num_bytes)}, available {format_bytes(usage.available_bytes)} "
                f"of {format_bytes(usage.quota_bytes)}",
                tenant_id=tenant_id,
                requested_bytes=num_bytes,
                available_bytes=usage.available_bytes,
                quota_bytes=usage.quota_bytes,
            )
        logger.debug("Reserved %d bytes for tenant %s", num_bytes, tenant_id)

    async def release(self, tenant_id: str, num_bytes: int) -> None:
        """Release part of a reservation without charging it."""
        await self._apply(
            tenant_id,
            num_bytes,
            guard=QuotaLedgerEntry.bytes_reserved >= num_bytes,
            values={"bytes_reserved": QuotaLedgerEntry.bytes_reserved - num_bytes},
            operation="release",
        )

    async def commit(self, tenant_id: str, num_bytes: int) -> None:
        """Turn part of a reservation into consumed storage."""
        await self._apply(
            tenant_id,
            num_bytes,
            guard=QuotaLedgerEntry.bytes_reserved >= num_bytes,
            values={
                "bytes_reserved": QuotaLedgerEntry.bytes_reserved - num_bytes,
                "bytes_consumed": QuotaLedgerEntry.bytes_consumed + num_bytes,
            },
            operation="commit",
        )

    async def uncharge(self, tenant_id: str, num_bytes: int) -> None:
        """Give back consumed storage when a charged reference goes away."""
        await self._apply(
            tenant_id,
            num_bytes,
            guard=QuotaLedgerEntry.bytes_consumed >= num_bytes,
            values={"bytes_consumed": QuotaLedgerEntry.bytes_consumed - num_bytes},
            operation="uncharge",
        )

    async def adjust_reservation(self, tenant_id: str, reserved: int, actual: int) -> None:
        """Move a reservation from the declared size to the actual size."""
        if actual > reserved:
            await self.reserve(tenant_id, actual - reserved)
        elif actual < reserved:
            await self.release(tenant_id, reserved - actual)

    async def set_tier(
        self,
        tenant_id: str,
        tier: TenantTier,
        *,
        quota_override_bytes: int | None = None,
    ) -> QuotaLedgerEntry:
        await self.ensure_tenant(tenant_id, tier)
        await self._session.execute(
            update(QuotaLedgerEntry)
            .where(QuotaLedgerEntry.tenant_id == tenant_id)
            .values(tier=tier, quota_override_bytes=quota_override_bytes)
            .execution_options(synchronize_session=False)
        )
        return await self._load(tenant_id)

    async def limit_for(self, entry: QuotaLedgerEntry) -> int:
        if entry.quota_override_bytes is not None:
            return entry.quota_override_bytes
        return await self._limits.limit_for(entry.tier)

    async def get_usage(self, tenant_id: str) -> QuotaUsage:
        entry = await self._load(tenant_id)
        return QuotaUsage(
            tenant_id=tenant_id,
            tier=entry.tier,
            bytes_consumed=entry.bytes_consumed,
            bytes_reserved=entry.bytes_reserved,
            quota_bytes=await self.limit_for(entry),
        )

    async def _load(self, tenant_id: str) -> QuotaLedgerEntry:
        stmt = (
            select(QuotaLedgerEntry)
            .where(QuotaLedgerEntry.tenant_id == tenant_id)
            .execution_options(populate_existing=True)
        )
        entry = (await self._session.execute(stmt)).scalar_one_or_none()
        if entry is None:
            raise NotFound(f"No quota ledger entry for tenant {tenant_id}", tenant_id=tenant_id)
        return entry

    async def _apply(self, tenant_id, num_bytes, *, guard, values, operation: str) -> None:
        if num_bytes < 0:
            raise ValueError(f"Cannot {operation} a negative amount")
        if num_bytes == 0:
            return
        stmt = (
            update(QuotaLedgerEntry)
            .where(QuotaLedgerEntry.tenant_id == tenant_id, guard)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            # Would drive a counter negative or the tenant is unknown
            raise IntegrityViolation(
                f"Quota {operation} of {num_bytes} bytes rejected for tenant {tenant_id}",
                tenant_id=tenant_id,
                num_bytes=num_bytes,
                operation=operation,
            )
        logger.debug("Quota %s of %d bytes for tenant %s", operation, num_bytes, tenant_id)
