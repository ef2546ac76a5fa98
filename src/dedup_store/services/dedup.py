"""Deduplicating ingestion and release.

This is the entry point used by the HTTP app and the CLI:

- ``ingest`` stores a payload for an owner, deduplicating by fingerprint
- ``release`` drops an owner's reference and reaps the blob at zero
- ``get_reference_count`` is for audit tooling

Callers see all-or-nothing results: either an IngestResult or a typed
DedupError. Internally the work spans several transactions and file
operations, and every partial step is compensated on failure.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dedup_store.config import settings
from dedup_store.errors import (
    AlreadyExists,
    DedupError,
    IngestTimeout,
    IntegrityViolation,
    NotFound,
    OwnerConflict,
    SizeMismatch,
    WriteFailed,
)
from dedup_store.fingerprint import Fingerprinter, check_payload_size, hash_prefix
from dedup_store.models.enums import IngestState, TenantTier
from dedup_store.models.journal import IngestJournal
from dedup_store.models.reference import Reference
from dedup_store.services.audit import IntegrityAuditor
from dedup_store.services.ingestion import (
    IngestResult,
    IngestTransaction,
    compensate_journal,
    mark_committed,
)
from dedup_store.services.ledger import ReferenceLedger
from dedup_store.services.limits import TierQuotaProvider
from dedup_store.services.quota import QuotaAccountant, QuotaUsage, chargeable_bytes
from dedup_store.storage.content_store import ContentStore
from dedup_store.storage.files import BlobFileStore
from dedup_store.utils.locks import KeyedLock
from dedup_store.utils.streams import ByteSource, iter_chunks

logger = logging.getLogger(__name__)


@dataclass
class ReleaseResult:
    """Outcome of release(). released is False when there was nothing to release."""

    owner_id: str
    released: bool
    fingerprint: str | None = None
    reference_count: int | None = None
    released_bytes: int = 0
    blob_deleted: bool = False

    def to_dict(self) -> dict[str, object]:
        return {
            "owner_id": self.owner_id,
            "released": self.released,
            "fingerprint": self.fingerprint,
            "reference_count": self.reference_count,
            "released_bytes": self.released_bytes,
            "blob_deleted": self.blob_deleted,
        }


class DedupService:
    """Content-addressed ingestion with reference counting and quota.

    Args:
        session_factory: Async session factory bound to the store's database.
        files: Physical blob storage.
        limits: Tier quota provider. Defaults to hardcoded tier limits plus
            overrides read through session_factory.
        locks: Per-fingerprint locks. Share one instance between all services
            running in the same process.
        charge_deduplicated: Quota policy flag, see chargeable_bytes().
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        files: BlobFileStore,
        *,
        limits: TierQuotaProvider | None = None,
        locks: KeyedLock | None = None,
        charge_deduplicated: bool | None = None,
        timeout_seconds: float | None = None,
        max_payload_bytes: int | None = None,
        size_tolerance_bytes: int | None = None,
        chunk_size: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._files = files
        self._limits = limits or TierQuotaProvider(session_factory)
        self._locks = locks or KeyedLock()
        self._auditor = IntegrityAuditor(session_factory)
        self._charge_deduplicated = (
            settings.charge_deduplicated_references
            if charge_deduplicated is None
            else charge_deduplicated
        )
        self._timeout = settings.ingest_timeout_seconds if timeout_seconds is None else timeout_seconds
        self._max_payload = settings.max_payload_bytes if max_payload_bytes is None else max_payload_bytes
        self._tolerance = (
            settings.size_tolerance_bytes if size_tolerance_bytes is None else size_tolerance_bytes
        )
        self._chunk_size = chunk_size or settings.stream_chunk_bytes
        # Rollbacks that outlive a cancelled caller
        self._background: set[asyncio.Task] = set()

    @property
    def files(self) -> BlobFileStore:
        return self._files

    @property
    def limits(self) -> TierQuotaProvider:
        return self._limits

    # ── Public API ───────────────────────────────────────────────────────────

    async def ingest(
        self,
        tenant_id: str,
        owner_id: str,
        source: ByteSource,
        declared_size: int,
    ) -> IngestResult:
        """Store a payload for owner_id, charging tenant_id.

        Raises:
            PayloadTooLarge: declared or actual size above the maximum.
            SizeMismatch: actual size outside the declared size's tolerance.
            QuotaExceeded: the reservation does not fit; nothing was written.
            OwnerConflict: owner_id already references content.
            WriteFailed: staging or publishing the bytes failed.
            IngestTimeout: the deadline passed; everything was rolled back.
            IntegrityViolation: inconsistent state detected (recorded).
        """
        if declared_size < 0:
            raise ValueError("declared_size must be non-negative")
        check_payload_size(declared_size, self._max_payload)

        txn = IngestTransaction(
            journal_id=uuid4(),
            tenant_id=tenant_id,
            owner_id=owner_id,
            declared_size=declared_size,
        )
        try:
            async with asyncio.timeout(self._timeout):
                return await self._run(txn, source)
        except TimeoutError as e:
            error = IngestTimeout(
                f"Ingestion for owner {owner_id} exceeded {self._timeout}s "
                f"(state: {txn.state.value})",
                owner_id=owner_id,
                state=txn.state.value,
            )
            await self._abort(txn, error)
            raise error from e
        except (SQLAlchemyError, OSError) as e:
            error = WriteFailed(
                f"Storage failure while ingesting for owner {owner_id} "
                f"(state: {txn.state.value}): {e}",
                owner_id=owner_id,
                state=txn.state.value,
            )
            await self._abort(txn, error)
            raise error from e
        except BaseException as e:
            await self._abort(txn, e)
            raise

    async def release(self, owner_id: str) -> ReleaseResult:
        """Drop owner_id's reference. Releasing twice is a no-op."""
        try:
            async with asyncio.timeout(self._timeout):
                while True:
                    async with self._session_factory() as session:
                        reference = await session.get(Reference, owner_id)
                    if reference is None:
                        logger.debug("Release of owner %s: nothing to release", owner_id)
                        return ReleaseResult(owner_id=owner_id, released=False)

                    result = await self._release(owner_id, reference.fingerprint)
                    if result is not None:
                        return result
                    # The reference moved before we got the lock; look it up again
        except TimeoutError as e:
            raise IngestTimeout(
                f"Release of owner {owner_id} exceeded {self._timeout}s",
                owner_id=owner_id,
            ) from e

    async def get_reference_count(self, fingerprint: str) -> int:
        async with self._session_factory() as session:
            ledger = ReferenceLedger(session, *self._components(session))
            return await ledger.count(fingerprint)

    async def quota_usage(self, tenant_id: str) -> QuotaUsage:
        async with self._session_factory() as session:
            quota = QuotaAccountant(session, self._limits)
            return await quota.get_usage(tenant_id)

    async def set_tenant_tier(
        self,
        tenant_id: str,
        tier: TenantTier,
        *,
        quota_override_bytes: int | None = None,
    ) -> QuotaUsage:
        async with self._session_factory() as session:
            async with session.begin():
                quota = QuotaAccountant(session, self._limits)
                await quota.set_tier(tenant_id, tier, quota_override_bytes=quota_override_bytes)
            return await quota.get_usage(tenant_id)

    async def wait_for_background(self) -> None:
        """Wait for rollbacks left running by cancelled callers."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # ── Forward path ─────────────────────────────────────────────────────────

    async def _run(self, txn: IngestTransaction, source: ByteSource) -> IngestResult:
        await self._reserve(txn)

        txn.transition(IngestState.HASHING)
        await self._stage(txn, source)

        async with self._locks.hold(txn.fingerprint):
            txn.transition(IngestState.LOOKUP)
            async with self._session_factory() as session:
                exists = await ContentStore(session, self._files).exists(txn.fingerprint)

            result = None
            if not exists:
                txn.transition(IngestState.CREATE_NEW)
                try:
                    result = await self._create_new(txn)
                except AlreadyExists:
                    logger.info(
                        "Lost create race for %s, attaching instead",
                        hash_prefix(txn.fingerprint),
                    )
            if result is None:
                txn.transition(IngestState.ATTACH_EXISTING)
                result = await self._attach_existing(txn)

        txn.transition(IngestState.COMMITTED)
        await self._discard_staging(txn)
        logger.info(
            "Ingested %s for owner %s (%s, %d bytes, charged %d)",
            hash_prefix(result.fingerprint),
            result.owner_id,
            "deduplicated" if result.deduplicated else "new blob",
            result.size_bytes,
            result.charged_bytes,
        )
        return result

    async def _reserve(self, txn: IngestTransaction) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                if await session.get(Reference, txn.owner_id) is not None:
                    raise OwnerConflict(
                        f"Owner {txn.owner_id} already holds a reference",
                        owner_id=txn.owner_id,
                    )
                quota = QuotaAccountant(session, self._limits)
                await quota.reserve(txn.tenant_id, txn.declared_size)
                session.add(
                    IngestJournal(
                        journal_id=txn.journal_id,
                        tenant_id=txn.tenant_id,
                        owner_id=txn.owner_id,
                        reserved_bytes=txn.declared_size,
                    )
                )
        txn.reserved_bytes = txn.declared_size
        txn.journal_open = True

    async def _stage(self, txn: IngestTransaction, source: ByteSource) -> None:
        hasher = Fingerprinter()
        txn.staged_path = self._files.staging_path(txn.journal_id)
        await self._files.stage(
            txn.journal_id,
            iter_chunks(source, self._chunk_size),
            hasher,
            max_bytes=self._max_payload,
            declared_size=txn.declared_size,
            tolerance=self._tolerance,
        )
        actual = hasher.size_bytes
        if abs(actual - txn.declared_size) > self._tolerance:
            raise SizeMismatch(
                f"File size mismatch: declared {txn.declared_size} bytes, actual "
                f"{actual} bytes (tolerance: {self._tolerance} bytes)",
                declared=txn.declared_size,
                actual=actual,
            )
        txn.fingerprint = hasher.hexdigest()
        txn.size_bytes = actual

        # Reservation and journal move together so rollback releases what is held
        async with self._session_factory() as session, session.begin():
            quota = QuotaAccountant(session, self._limits)
            await quota.adjust_reservation(txn.tenant_id, txn.reserved_bytes, actual)
            journal = await session.get(IngestJournal, txn.journal_id, with_for_update=True)
            journal.reserved_bytes = actual
            journal.fingerprint = txn.fingerprint
        if actual != txn.reserved_bytes:
            logger.debug(
                "Adjusted reservation for %s: declared %d, actual %d",
                txn.journal_id,
                txn.reserved_bytes,
                actual,
            )
        txn.reserved_bytes = actual

    async def _create_new(self, txn: IngestTransaction) -> IngestResult:
        location, created = await self._files.publish(txn.staged_path, txn.fingerprint)
        if created:
            txn.published_location = location
            txn.staged_path = None  # moved, not copied

        charged = chargeable_bytes(
            txn.size_bytes, deduplicated=False, charge_deduplicated=self._charge_deduplicated
        )
        try:
            async with self._session_factory() as session, session.begin():
                store, quota = self._components(session)
                ledger = ReferenceLedger(session, store, quota)
                blob = await store.create(
                    txn.fingerprint,
                    size_bytes=txn.size_bytes,
                    storage_location=location,
                    creator_tenant_id=txn.tenant_id,
                )
                await ledger.attach_created(blob, txn.owner_id, txn.tenant_id, charged)
                await self._settle(session, quota, txn, charged)
        except AlreadyExists:
            # The winner's row owns the file at this location
            txn.published_location = None
            raise
        # Only a committed settle closes the journal; a failed COMMIT keeps it owed
        txn.journal_open = False
        txn.published_location = None
        return self._result(txn, deduplicated=False, charged=charged)

    async def _attach_existing(self, txn: IngestTransaction) -> IngestResult:
        charged = chargeable_bytes(
            txn.size_bytes, deduplicated=True, charge_deduplicated=self._charge_deduplicated
        )
        async with self._session_factory() as session, session.begin():
            store, quota = self._components(session)
            ledger = ReferenceLedger(session, store, quota)
            await ledger.attach(txn.fingerprint, txn.owner_id, txn.tenant_id, charged)
            await self._settle(session, quota, txn, charged)
        txn.journal_open = False
        return self._result(txn, deduplicated=True, charged=charged)

    async def _settle(
        self,
        session: AsyncSession,
        quota: QuotaAccountant,
        txn: IngestTransaction,
        charged: int,
    ) -> None:
        """Close the journal and turn the reservation into the final charge."""
        if not await mark_committed(session, txn.journal_id, txn.fingerprint):
            raise IntegrityViolation(
                f"Ingest journal {txn.journal_id} is no longer pending",
                journal_id=str(txn.journal_id),
                owner_id=txn.owner_id,
                fingerprint=txn.fingerprint,
            )
        await quota.commit(txn.tenant_id, charged)
        await quota.release(txn.tenant_id, txn.reserved_bytes - charged)

    async def _discard_staging(self, txn: IngestTransaction) -> None:
        """Drop the staging copy once the reference is durable. No quota effect."""
        if txn.staged_path is None:
            return
        try:
            await self._files.discard(txn.staged_path)
        except OSError:
            logger.warning(
                "Failed to delete staging file %s (reaper will retry)",
                txn.staged_path,
                exc_info=True,
            )
        txn.staged_path = None

    def _result(self, txn: IngestTransaction, *, deduplicated: bool, charged: int) -> IngestResult:
        return IngestResult(
            fingerprint=txn.fingerprint,
            deduplicated=deduplicated,
            owner_id=txn.owner_id,
            tenant_id=txn.tenant_id,
            size_bytes=txn.size_bytes,
            charged_bytes=charged,
        )

    def _components(self, session: AsyncSession) -> tuple[ContentStore, QuotaAccountant]:
        return ContentStore(session, self._files), QuotaAccountant(session, self._limits)

    # ── Rollback ─────────────────────────────────────────────────────────────

    async def _abort(self, txn: IngestTransaction, error: BaseException) -> None:
        if isinstance(error, IntegrityViolation):
            await self._auditor.record(error)
        if not txn.needs_rollback:
            txn.transition(IngestState.FAILED)
            return

        txn.transition(IngestState.ROLLING_BACK)
        logger.warning(
            "Rolling back ingest %s for owner %s: %s",
            txn.journal_id,
            txn.owner_id,
            error,
        )
        rollback = asyncio.ensure_future(self._rollback(txn, reason=repr(error)))
        try:
            failures = await asyncio.shield(rollback)
        except asyncio.CancelledError:
            # Caller went away; rollback still runs to completion
            self._background.add(rollback)
            rollback.add_done_callback(self._background.discard)
            raise
        txn.transition(IngestState.FAILED)

        if failures:
            if isinstance(error, DedupError):
                error.rollback_failures.extend(failures)
            else:
                for failure in failures:
                    error.add_note(f"rollback failure: {failure}")

    async def _rollback(self, txn: IngestTransaction, *, reason: str) -> list[str]:
        failures: list[str] = []

        if txn.published_location is not None:
            try:
                await self._unpublish(txn)
            except Exception as e:
                failures.append(f"remove published blob {txn.published_location}: {e!r}")

        if txn.staged_path is not None:
            try:
                await self._files.discard(txn.staged_path)
                txn.staged_path = None
            except OSError as e:
                failures.append(f"discard staging file {txn.staged_path}: {e!r}")

        if txn.journal_open:
            try:
                async with self._session_factory() as session, session.begin():
                    quota = QuotaAccountant(session, self._limits)
                    released = await compensate_journal(
                        session, quota, txn.journal_id, reason=reason
                    )
                if released is not None and released != txn.reserved_bytes:
                    logger.critical(
                        "Ingest %s released %d bytes but tracked %d",
                        txn.journal_id,
                        released,
                        txn.reserved_bytes,
                    )
                txn.journal_open = False
                txn.reserved_bytes = 0
            except Exception as e:
                failures.append(f"release reservation of journal {txn.journal_id}: {e!r}")

        for failure in failures:
            logger.critical("Rollback of ingest %s incomplete: %s", txn.journal_id, failure)
        return failures

    async def _unpublish(self, txn: IngestTransaction) -> None:
        """Remove a file this ingestion published, unless a row now owns it."""
        async with self._locks.hold(txn.fingerprint):
            async with self._session_factory() as session:
                owned = await ContentStore(session, self._files).exists(txn.fingerprint)
            if not owned:
                await self._files.remove(txn.published_location)
        txn.published_location = None

    async def _release(self, owner_id: str, fingerprint: str) -> ReleaseResult | None:
        """Detach owner_id from fingerprint under its lock.

        Returns None when the owner no longer references fingerprint by the
        time the lock is held (released, or released and re-ingested).
        """
        async with self._locks.hold(fingerprint):
            async with self._session_factory() as session:
                store, quota = self._components(session)
                try:
                    async with session.begin():
                        ledger = ReferenceLedger(session, store, quota)
                        outcome = await ledger.detach(fingerprint, owner_id)
                except NotFound:
                    return None
                except IntegrityViolation as e:
                    await self._auditor.record(e)
                    raise
                await store.purge_deleted()

        logger.info(
            "Released owner %s from %s (remaining %d%s)",
            owner_id,
            hash_prefix(fingerprint),
            outcome.reference_count,
            ", blob deleted" if outcome.blob_deleted else "",
        )
        return ReleaseResult(
            owner_id=owner_id,
            released=True,
            fingerprint=fingerprint,
            reference_count=outcome.reference_count,
            released_bytes=outcome.released_bytes,
            blob_deleted=outcome.blob_deleted,
        )
