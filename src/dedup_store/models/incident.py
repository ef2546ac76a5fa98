"""IntegrityIncident model: audit trail for detected inconsistencies."""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from dedup_store.models.base import Base
from dedup_store.models.blob import utcnow


class IntegrityIncident(Base):
    """One detected IntegrityViolation. Never deleted by the store itself."""

    __tablename__ = "integrity_incidents"

    incident_id: Mapped[UUID] = mapped_column(primary_key=True)
    fingerprint: Mapped[str | None] = mapped_column(String(64), index=True)
    owner_id: Mapped[str | None] = mapped_column(String(255))
    message: Mapped[str] = mapped_column(Text)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
