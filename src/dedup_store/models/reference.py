"""Reference model: one logical owner's claim on a ContentBlob."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import BigInteger, DateTime, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dedup_store.models.base import Base
from dedup_store.models.blob import utcnow

if TYPE_CHECKING:
    from dedup_store.models.blob import ContentBlob


class Reference(Base):
    """An owner's claim on stored content.

    An owner (e.g. a catalog record) claims exactly one piece of content, so
    owner_id is the primary key. charged_bytes is what tenant_id was charged
    for this reference and is exactly what gets released when it is detached.
    """

    __tablename__ = "blob_references"

    owner_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    fingerprint: Mapped[str] = mapped_column(
        ForeignKey("content_blobs.fingerprint"), index=True
    )
    tenant_id: Mapped[str] = mapped_column(String(255), index=True)
    charged_bytes: Mapped[int] = mapped_column(BigInteger, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    # Relationships
    blob: Mapped[ContentBlob] = relationship(back_populates="references")
