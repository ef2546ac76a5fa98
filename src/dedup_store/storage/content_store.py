"""Content Store: ContentBlob rows bound to their physical files."""

from __future__ import annotations

import logging

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from dedup_store.errors import AlreadyExists, NotFound
from dedup_store.fingerprint import hash_prefix
from dedup_store.models.blob import ContentBlob
from dedup_store.storage.files import BlobFileStore

logger = logging.getLogger(__name__)


class ContentStore:
    """Session-scoped access to ContentBlob rows.

    Row changes join the caller's transaction. Physical files of deleted blobs
    are only removed by purge_deleted(), which the caller runs after commit, so
    a rolled-back delete never loses bytes.

    Usage:
        async with session_factory() as session:
            async with session.begin():
                store = ContentStore(session, files)
                ...
            await store.purge_deleted()
    """

    def __init__(self, session: AsyncSession, files: BlobFileStore) -> None:
        self._session = session
        self._files = files
        self._pending_purges: list[str] = []

    @property
    def files(self) -> BlobFileStore:
        return self._files

    async def exists(self, fingerprint: str) -> bool:
        stmt = select(ContentBlob.fingerprint).where(ContentBlob.fingerprint == fingerprint)
        return (await self._session.execute(stmt)).scalar_one_or_none() is not None

    async def get(self, fingerprint: str, *, for_update: bool = False) -> ContentBlob | None:
        """Load a blob row, optionally locking it for the rest of the transaction."""
        stmt = select(ContentBlob).where(ContentBlob.fingerprint == fingerprint)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def create(
        self,
        fingerprint: str,
        *,
        size_bytes: int,
        storage_location: str,
        creator_tenant_id: str,
    ) -> ContentBlob:
        """Insert a new blob row with reference_count initialised to 1.

        The creating owner's Reference must be written in the same transaction.

        Raises:
            AlreadyExists: A row for this fingerprint was committed concurrently.
        """
        blob = ContentBlob(
            fingerprint=fingerprint,
            size_bytes=size_bytes,
            storage_location=storage_location,
            reference_count=1,
            creator_tenant_id=creator_tenant_id,
        )
        self._session.add(blob)
        try:
            await self._session.flush()
        except IntegrityError as e:
            raise AlreadyExists(
                f"Blob {hash_prefix(fingerprint)} already exists",
                fingerprint=fingerprint,
            ) from e
        return blob

    async def delete(self, fingerprint: str, *, missing_ok: bool = True) -> bool:
        """Delete a blob row and queue its file for removal after commit.

        Only the ReferenceLedger calls this, holding the fingerprint lock and
        having observed reference_count == 0.
        """
        blob = await self.get(fingerprint)
        if blob is None:
            if missing_ok:
                return False
            raise NotFound(f"Blob {hash_prefix(fingerprint)} not found", fingerprint=fingerprint)

        location = blob.storage_location
        await self._session.execute(
            delete(ContentBlob).where(ContentBlob.fingerprint == fingerprint)
        )
        self._pending_purges.append(location)
        logger.debug("Blob %s deleted, file queued for purge", hash_prefix(fingerprint))
        return True

    async def purge_deleted(self) -> list[str]:
        """Remove files of blobs deleted in the committed transaction."""
        purged: list[str] = []
        while self._pending_purges:
            location = self._pending_purges.pop()
            try:
                await self._files.remove(location)
            except OSError:
                # Row is gone; the reaper removes ownerless files later
                logger.warning("Failed to remove blob file %s", location, exc_info=True)
                continue
            purged.append(location)
        return purged
