"""Reference ledger: who holds a claim on which blob.

Inserting a Reference and incrementing the blob's reference_count happen in
one transaction, and so do deleting it and decrementing. There is no state in
which one is durable without the other. The blob row is locked
(``SELECT ... FOR UPDATE``) for the rest of the transaction, which serialises
all count changes for one fingerprint across processes; callers additionally
hold the in-process KeyedLock for the fingerprint.

The ledger is the only component that deletes blobs, and only after it has
observed reference_count reach zero under the lock.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from dedup_store.errors import IntegrityViolation, NotFound, OwnerConflict
from dedup_store.fingerprint import hash_prefix
from dedup_store.models.blob import ContentBlob
from dedup_store.models.reference import Reference
from dedup_store.services.quota import QuotaAccountant
from dedup_store.storage.content_store import ContentStore

logger = logging.getLogger(__name__)


@dataclass
class DetachResult:
    """Outcome of removing one reference."""

    fingerprint: str
    owner_id: str
    reference_count: int
    released_bytes: int
    blob_deleted: bool


class ReferenceLedger:
    """Session-scoped reference counting over ContentBlob rows.

    Usage:
        async with session.begin():
            ledger = ReferenceLedger(session, store, quota)
            await ledger.attach(fingerprint, owner_id, tenant_id, charged_bytes)
    """

    def __init__(
        self,
        session: AsyncSession,
        store: ContentStore,
        quota: QuotaAccountant,
    ) -> None:
        self._session = session
        self._store = store
        self._quota = quota

    async def attach_created(
        self,
        blob: ContentBlob,
        owner_id: str,
        tenant_id: str,
        charged_bytes: int,
    ) -> Reference:
        """Record the creator's reference to a blob just created with count 1."""
        reference = Reference(
            owner_id=owner_id,
            fingerprint=blob.fingerprint,
            tenant_id=tenant_id,
            charged_bytes=charged_bytes,
        )
        await self._insert(reference)
        return reference

    async def attach(
        self,
        fingerprint: str,
        owner_id: str,
        tenant_id: str,
        charged_bytes: int,
    ) -> Reference:
        """Add a reference to an existing blob and increment its count.

        Raises:
            NotFound: The blob does not exist (it may have just been reaped).
            OwnerConflict: owner_id already holds a reference.
        """
        blob = await self._store.get(fingerprint, for_update=True)
        if blob is None:
            raise NotFound(
                f"Cannot attach to missing blob {hash_prefix(fingerprint)}",
                fingerprint=fingerprint,
            )

        reference = Reference(
            owner_id=owner_id,
            fingerprint=fingerprint,
            tenant_id=tenant_id,
            charged_bytes=charged_bytes,
        )
        await self._insert(reference)
        try:
            await self._increment(fingerprint)
        except BaseException:
            # Never leave a reference without its increment
            await self._remove_pending(reference)
            raise

        logger.debug("Attached owner %s to blob %s", owner_id, hash_prefix(fingerprint))
        return reference

    async def detach(self, fingerprint: str, owner_id: str) -> DetachResult:
        """Remove a reference, decrement the count and reap the blob at zero.

        The quota charged for the reference is released from the tenant it was
        charged to.

        Raises:
            NotFound: No such reference.
            IntegrityViolation: The reference points at a missing blob, or the
                blob's count is already zero.
        """
        stmt = (
            select(Reference)
            .where(Reference.owner_id == owner_id, Reference.fingerprint == fingerprint)
            .with_for_update()
        )
        reference = (await self._session.execute(stmt)).scalar_one_or_none()
        if reference is None:
            raise NotFound(
                f"Owner {owner_id} holds no reference to {hash_prefix(fingerprint)}",
                owner_id=owner_id,
                fingerprint=fingerprint,
            )

        blob = await self._store.get(fingerprint, for_update=True)
        if blob is None:
            raise IntegrityViolation(
                f"Reference of owner {owner_id} points at missing blob {hash_prefix(fingerprint)}",
                owner_id=owner_id,
                fingerprint=fingerprint,
            )
        if blob.reference_count < 1:
            raise IntegrityViolation(
                f"Blob {hash_prefix(fingerprint)} has reference_count "
                f"{blob.reference_count} but owner {owner_id} still references it",
                owner_id=owner_id,
                fingerprint=fingerprint,
                reference_count=blob.reference_count,
            )

        tenant_id, charged = reference.tenant_id, reference.charged_bytes
        await self._session.execute(
            delete(Reference).where(Reference.owner_id == owner_id)
        )
        remaining = await self._decrement(fingerprint)
        await self._quota.uncharge(tenant_id, charged)

        blob_deleted = False
        if remaining == 0:
            blob_deleted = await self._store.delete(fingerprint, missing_ok=False)
            logger.info("Blob %s reached zero references, deleted", hash_prefix(fingerprint))

        return DetachResult(
            fingerprint=fingerprint,
            owner_id=owner_id,
            reference_count=remaining,
            released_bytes=charged,
            blob_deleted=blob_deleted,
        )

    async def reap_if_unreferenced(self, fingerprint: str) -> bool:
        """Delete a blob whose count is zero. Used to clean up after a crash.

        Raises:
            IntegrityViolation: The count is zero but references still exist.
        """
        blob = await self._store.get(fingerprint, for_update=True)
        if blob is None or blob.reference_count != 0:
            return False
        references = await self.count_references(fingerprint)
        if references:
            raise IntegrityViolation(
                f"Blob {hash_prefix(fingerprint)} has reference_count 0 "
                f"but {references} reference(s)",
                fingerprint=fingerprint,
                references=references,
            )
        return await self._store.delete(fingerprint)

    async def count(self, fingerprint: str) -> int:
        """Current reference_count of a blob; 0 when it does not exist."""
        stmt = select(ContentBlob.reference_count).where(ContentBlob.fingerprint == fingerprint)
        return (await self._session.execute(stmt)).scalar_one_or_none() or 0

    async def count_references(self, fingerprint: str) -> int:
        """Number of Reference rows pointing at a blob."""
        stmt = select(func.count()).select_from(Reference).where(
            Reference.fingerprint == fingerprint
        )
        return (await self._session.execute(stmt)).scalar_one()

    # ── Internals ────────────────────────────────────────────────────────────

    async def _insert(self, reference: Reference) -> None:
        self._session.add(reference)
        try:
            await self._session.flush()
        except IntegrityError as e:
            raise OwnerConflict(
                f"Owner {reference.owner_id} already holds a reference",
                owner_id=reference.owner_id,
            ) from e

    async def _increment(self, fingerprint: str) -> int:
        await self._session.execute(
            update(ContentBlob)
            .where(ContentBlob.fingerprint == fingerprint)
            .values(reference_count=ContentBlob.reference_count + 1)
            .execution_options(synchronize_session=False)
        )
        return await self.count(fingerprint)

    async def _decrement(self, fingerprint: str) -> int:
        result = await self._session.execute(
            update(ContentBlob)
            .where(ContentBlob.fingerprint == fingerprint, ContentBlob.reference_count > 0)
            .values(reference_count=ContentBlob.reference_count - 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            raise IntegrityViolation(
                f"Decrement of {hash_prefix(fingerprint)} would go below zero",
                fingerprint=fingerprint,
            )
        return await self.count(fingerprint)

    async def _remove_pending(self, reference: Reference) -> None:
        """Compensating delete of a reference whose increment failed."""
        if not self._session.is_active:
            # The transaction is already doomed; rollback discards the row
            return
        try:
            await self._session.execute(
                delete(Reference).where(Reference.owner_id == reference.owner_id)
            )
        except SQLAlchemyError:
            logger.critical(
                "Could not remove reference of owner %s after failed increment; "
                "relying on transaction rollback",
                reference.owner_id,
                exc_info=True,
            )
            return
        logger.warning(
            "Removed reference of owner %s after failed increment", reference.owner_id
        )
