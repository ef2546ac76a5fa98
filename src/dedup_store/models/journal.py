"""IngestJournal model: durable compensating-action log."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import BigInteger, DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from dedup_store.models.base import Base
from dedup_store.models.blob import utcnow
from dedup_store.models.enums import JournalStatus


class IngestJournal(Base):
    """Write-ahead record of one ingestion's rollback intent.

    Inserted in the same transaction as the quota reservation, so a reservation
    never exists without the intent to release it. The reaper completes
    compensation for entries left pending by a dead process.

    The staging file for an entry lives at ``staging/<journal_id>.part``.
    """

    __tablename__ = "ingest_journal"

    journal_id: Mapped[UUID] = mapped_column(primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(255), index=True)
    owner_id: Mapped[str] = mapped_column(String(255), index=True)

    reserved_bytes: Mapped[int] = mapped_column(BigInteger)
    """Exact amount currently reserved. Rollback releases this and only this."""

    fingerprint: Mapped[str | None] = mapped_column(String(64))
    status: Mapped[JournalStatus] = mapped_column(default=JournalStatus.PENDING, index=True)
    error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )
