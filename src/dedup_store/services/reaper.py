"""Compensation reaper.

Completes work that a dead process left behind. It is safe to run at any time
and from several processes at once; every action it takes is idempotent.

1. Pending journals older than the grace period: discard their staging file,
   release exactly the journal's reserved_bytes, mark them rolled back.
2. Staging files whose journal is finished (or missing): delete.
3. ContentBlob rows with reference_count == 0: delete, under the fingerprint
   lock, re-checking the count inside the transaction.
4. Blob files that no ContentBlob row owns and that are older than the grace
   period: delete.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dedup_store.config import settings
from dedup_store.errors import IntegrityViolation
from dedup_store.models.blob import ContentBlob
from dedup_store.models.enums import JournalStatus
from dedup_store.models.journal import IngestJournal
from dedup_store.services.audit import IntegrityAuditor
from dedup_store.services.ingestion import compensate_journal
from dedup_store.services.ledger import ReferenceLedger
from dedup_store.services.limits import TierQuotaProvider
from dedup_store.services.quota import QuotaAccountant
from dedup_store.storage.content_store import ContentStore
from dedup_store.storage.files import BlobFileStore
from dedup_store.utils.locks import KeyedLock

logger = logging.getLogger(__name__)


@dataclass
class ReapReport:
    """What one reaper pass did."""

    journals_rolled_back: int = 0
    bytes_released: int = 0
    staging_files_removed: int = 0
    zero_reference_blobs_removed: int = 0
    orphan_files_removed: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "journals_rolled_back": self.journals_rolled_back,
            "bytes_released": self.bytes_released,
            "staging_files_removed": self.staging_files_removed,
            "zero_reference_blobs_removed": self.zero_reference_blobs_removed,
            "orphan_files_removed": self.orphan_files_removed,
        }


class CompensationReaper:
    """Finishes abandoned compensations and removes unowned bytes."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        files: BlobFileStore,
        *,
        limits: TierQuotaProvider | None = None,
        locks: KeyedLock | None = None,
        grace_seconds: float | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._files = files
        self._limits = limits or TierQuotaProvider(session_factory)
        self._locks = locks or KeyedLock()
        self._auditor = IntegrityAuditor(session_factory)
        self._grace = settings.reaper_grace_seconds if grace_seconds is None else grace_seconds

    async def run_once(self) -> ReapReport:
        report = ReapReport()
        await self._roll_back_abandoned(report)
        await self._remove_finished_staging(report)
        await self._reap_zero_reference_blobs(report)
        await self._remove_orphan_files(report)
        logger.info("Reaper pass complete: %s", report.to_dict())
        return report

    async def run_forever(self, interval_seconds: float) -> None:
        """Run a pass every interval_seconds until cancelled. A failed pass is logged."""
        while True:
            try:
                await self.run_once()
            except Exception:
                logger.exception("Reaper pass failed")
            await asyncio.sleep(interval_seconds)

    async def _roll_back_abandoned(self, report: ReapReport) -> None:
        cutoff = datetime.now(UTC) - timedelta(seconds=self._grace)
        async with self._session_factory() as session:
            stmt = select(IngestJournal.journal_id).where(
                IngestJournal.status == JournalStatus.PENDING,
                IngestJournal.created_at < cutoff,
            )
            journal_ids = list((await session.execute(stmt)).scalars().all())

        for journal_id in journal_ids:
            await self._files.discard(self._files.staging_path(journal_id))
            async with self._session_factory() as session, session.begin():
                quota = QuotaAccountant(session, self._limits)
                released = await compensate_journal(
                    session, quota, journal_id, reason="abandoned; compensated by reaper"
                )
            if released is not None:
                report.journals_rolled_back += 1
                report.bytes_released += released
                logger.warning("Reaper rolled back abandoned ingest %s", journal_id)

    async def _remove_finished_staging(self, report: ReapReport) -> None:
        staged = self._files.iter_staged()
        if not staged:
            return
        by_id: dict[UUID, Path] = {}
        for path in staged:
            try:
                by_id[UUID(path.stem)] = path
            except ValueError:
                logger.warning("Unexpected file in staging area: %s", path)

        async with self._session_factory() as session:
            stmt = select(IngestJournal.journal_id, IngestJournal.status).where(
                IngestJournal.journal_id.in_(list(by_id))
            )
            statuses = dict((await session.execute(stmt)).all())

        for journal_id, path in by_id.items():
            status = statuses.get(journal_id)
            if status == JournalStatus.PENDING:
                continue  # In flight, or handled by _roll_back_abandoned
            if status is None and not self._older_than_grace(path):
                # Journal insert may not be visible yet
                continue
            if await self._files.discard(path):
                report.staging_files_removed += 1

    async def _reap_zero_reference_blobs(self, report: ReapReport) -> None:
        async with self._session_factory() as session:
            stmt = select(ContentBlob.fingerprint).where(ContentBlob.reference_count == 0)
            fingerprints = list((await session.execute(stmt)).scalars().all())

        for fp in fingerprints:
            async with self._locks.hold(fp):
                async with self._session_factory() as session:
                    store = ContentStore(session, self._files)
                    try:
                        async with session.begin():
                            ledger = ReferenceLedger(
                                session, store, QuotaAccountant(session, self._limits)
                            )
                            reaped = await ledger.reap_if_unreferenced(fp)
                    except IntegrityViolation as e:
                        await self._auditor.record(e)
                        continue
                    await store.purge_deleted()
            if reaped:
                report.zero_reference_blobs_removed += 1
                logger.warning("Reaper removed zero-reference blob %s...", fp[:16])

    async def _remove_orphan_files(self, report: ReapReport) -> None:
        locations = self._files.iter_locations()
        if not locations:
            return
        async with self._session_factory() as session:
            owned = set((await session.execute(select(ContentBlob.storage_location))).scalars())

        for location in locations:
            if location in owned:
                continue
            fp = location.replace("/", "")
            async with self._locks.hold(fp):
                path = self._files.path_for(location)
                if not self._older_than_grace(path):
                    continue
                async with self._session_factory() as session:
                    if await ContentStore(session, self._files).exists(fp):
                        continue
                if await self._files.remove(location):
                    report.orphan_files_removed += 1
                    logger.warning("Reaper removed unowned blob file %s", location)

    def _older_than_grace(self, path: Path) -> bool:
        try:
            age = time.time() - path.stat().st_mtime
        except FileNotFoundError:
            return False
        return age >= self._grace
