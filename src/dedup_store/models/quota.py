"""Quota models: per-tenant ledger and tier quota overrides."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, CheckConstraint, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from dedup_store.models.base import Base
from dedup_store.models.blob import utcnow
from dedup_store.models.enums import TenantTier


class QuotaLedgerEntry(Base):
    """Storage consumed and reserved by one tenant.

    bytes_consumed is the sum of charged_bytes over the tenant's live
    References. bytes_reserved holds in-flight ingestions.
    """

    __tablename__ = "quota_ledger"
    __table_args__ = (
        CheckConstraint("bytes_consumed >= 0", name="ck_quota_ledger_consumed"),
        CheckConstraint("bytes_reserved >= 0", name="ck_quota_ledger_reserved"),
    )

    tenant_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    tier: Mapped[TenantTier] = mapped_column(default=TenantTier.FREE)
    quota_override_bytes: Mapped[int | None] = mapped_column(BigInteger)
    """Per-tenant limit that wins over the tier limit when set."""

    bytes_consumed: Mapped[int] = mapped_column(BigInteger, default=0)
    bytes_reserved: Mapped[int] = mapped_column(BigInteger, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )


class TierQuota(Base):
    """Admin override of a tier's default storage quota."""

    __tablename__ = "tier_quotas"

    tier: Mapped[TenantTier] = mapped_column(primary_key=True)
    quota_bytes: Mapped[int] = mapped_column(BigInteger)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )
