"""ContentBlob model: one physical object per unique fingerprint."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import BigInteger, CheckConstraint, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from dedup_store.models.base import Base

if TYPE_CHECKING:
    from dedup_store.models.reference import Reference


def utcnow() -> datetime:
    return datetime.now(UTC)


class ContentBlob(Base):
    """Content-addressable blob.

    Blobs are identified by the SHA-256 of their bytes. Multiple References
    can point at the same blob; reference_count mirrors how many do and is
    only ever mutated by the ReferenceLedger.
    """

    __tablename__ = "content_blobs"
    __table_args__ = (
        CheckConstraint("reference_count >= 0", name="ck_content_blobs_reference_count"),
    )

    fingerprint: Mapped[str] = mapped_column(String(64), primary_key=True)
    size_bytes: Mapped[int] = mapped_column(BigInteger)
    storage_location: Mapped[str] = mapped_column(String(1024))
    """Key of the physical file relative to the blob root (e.g. ``ab/cdef...``)."""

    reference_count: Mapped[int] = mapped_column(Integer, default=1)
    creator_tenant_id: Mapped[str] = mapped_column(String(255), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    # Relationships
    references: Mapped[list[Reference]] = relationship(back_populates="blob")
