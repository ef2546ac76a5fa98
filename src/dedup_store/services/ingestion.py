"""Ingestion transaction state and its compensating actions.

An ingestion moves through::

    reserving → hashing → lookup → create_new | attach_existing → committed

and from any state after reserving to ``rolling_back → failed``. Forward
progress is recorded on the IngestTransaction so rollback knows exactly what
to undo, in reverse order:

1. remove a published blob file that no ContentBlob row owns
2. discard the staging file
3. release the reservation (the journal's reserved_bytes, exactly) and mark
   the journal rolled back

Each step is idempotent. The journal step is conditional on the journal still
being pending, so the in-process rollback and the reaper can never both
release the same reservation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from dedup_store.models.enums import IngestState, JournalStatus
from dedup_store.models.journal import IngestJournal
from dedup_store.services.quota import QuotaAccountant

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    """Successful outcome of ingest()."""

    fingerprint: str
    deduplicated: bool
    owner_id: str
    tenant_id: str
    size_bytes: int
    charged_bytes: int

    def to_dict(self) -> dict[str, object]:
        return {
            "fingerprint": self.fingerprint,
            "deduplicated": self.deduplicated,
            "owner_id": self.owner_id,
            "tenant_id": self.tenant_id,
            "size_bytes": self.size_bytes,
            "charged_bytes": self.charged_bytes,
        }


@dataclass
class IngestTransaction:
    """Mutable bookkeeping for one ingestion."""

    journal_id: UUID
    tenant_id: str
    owner_id: str
    declared_size: int
    state: IngestState = IngestState.RESERVING

    # What rollback has to undo; each is cleared once no longer owed
    reserved_bytes: int = 0
    journal_open: bool = False
    staged_path: Path | None = None
    published_location: str | None = None

    fingerprint: str | None = None
    size_bytes: int | None = None
    history: list[IngestState] = field(default_factory=list)

    def transition(self, state: IngestState) -> None:
        self.history.append(self.state)
        self.state = state
        logger.debug("Ingest %s: %s -> %s", self.journal_id, self.history[-1].value, state.value)

    @property
    def needs_rollback(self) -> bool:
        return bool(self.journal_open or self.staged_path or self.published_location)


async def mark_committed(session: AsyncSession, journal_id: UUID, fingerprint: str) -> bool:
    """Close a pending journal as committed. False if it is no longer pending."""
    result = await session.execute(
        update(IngestJournal)
        .where(
            IngestJournal.journal_id == journal_id,
            IngestJournal.status == JournalStatus.PENDING,
        )
        .values(status=JournalStatus.COMMITTED, fingerprint=fingerprint)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def compensate_journal(
    session: AsyncSession,
    quota: QuotaAccountant,
    journal_id: UUID,
    *,
    reason: str,
) -> int | None:
    """Release a pending journal's reservation and mark it rolled back.

    Must run inside a transaction. Returns the number of bytes released, or
    None when the journal is missing or no longer pending (nothing owed).
    """
    journal = (
        await session.execute(
            select(IngestJournal)
            .where(IngestJournal.journal_id == journal_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()
    if journal is None:
        return None

    claimed = await session.execute(
        update(IngestJournal)
        .where(
            IngestJournal.journal_id == journal_id,
            IngestJournal.status == JournalStatus.PENDING,
        )
        .values(status=JournalStatus.ROLLED_BACK, error=reason[:2000])
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount == 0:
        return None

    await quota.release(journal.tenant_id, journal.reserved_bytes)
    logger.info(
        "Rolled back ingest %s: released %d bytes for tenant %s",
        journal_id,
        journal.reserved_bytes,
        journal.tenant_id,
    )
    return journal.reserved_bytes
