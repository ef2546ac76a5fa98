"""Tests for the reference ledger: attach/detach atomicity and reaping."""

from __future__ import annotations

from uuid import uuid4

import pytest
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dedup_store.errors import IntegrityViolation, NotFound, OwnerConflict
from dedup_store.fingerprint import Fingerprinter
from dedup_store.models import ContentBlob, Reference
from dedup_store.services.ledger import ReferenceLedger
from dedup_store.services.limits import TierQuotaProvider
from dedup_store.services.quota import QuotaAccountant
from dedup_store.storage.content_store import ContentStore
from dedup_store.storage.files import BlobFileStore
from dedup_store.utils.streams import iter_chunks


async def seed_blob(
    session_factory: async_sessionmaker[AsyncSession],
    files: BlobFileStore,
    data: bytes,
    owner_id: str = "owner-a",
    tenant_id: str = "acme",
) -> str:
    """Publish a file and commit its blob row with one creator reference."""
    hasher = Fingerprinter()
    staged = await files.stage(
        uuid4(), iter_chunks(data, 1024), hasher,
        max_bytes=1024, declared_size=len(data), tolerance=0,
    )
    fp = hasher.hexdigest()
    location, _ = await files.publish(staged, fp)
    async with session_factory() as session, session.begin():
        store = ContentStore(session, files)
        quota = QuotaAccountant(session, TierQuotaProvider())
        blob = await store.create(
            fp, size_bytes=len(data), storage_location=location, creator_tenant_id=tenant_id
        )
        await ReferenceLedger(session, store, quota).attach_created(blob, owner_id, tenant_id, 0)
    return fp


async def snapshot(session_factory, fp: str) -> tuple[int | None, list[str]]:
    """(reference_count, sorted owner ids) as committed."""
    async with session_factory() as session:
        count = (
            await session.execute(
                select(ContentBlob.reference_count).where(ContentBlob.fingerprint == fp)
            )
        ).scalar_one_or_none()
        owners = (
            await session.execute(select(Reference.owner_id).where(Reference.fingerprint == fp))
        ).scalars().all()
    return count, sorted(owners)


@pytest.fixture
def open_ledger(files: BlobFileStore):
    def _open(session: AsyncSession) -> ReferenceLedger:
        store = ContentStore(session, files)
        return ReferenceLedger(session, store, QuotaAccountant(session, TierQuotaProvider()))

    return _open


class TestAttach:
    async def test_attach_increments_with_reference(
        self, session_factory, files, open_ledger
    ) -> None:
        fp = await seed_blob(session_factory, files, b"hello")

        async with session_factory() as session, session.begin():
            await open_ledger(session).attach(fp, "owner-b", "acme", 0)

        assert await snapshot(session_factory, fp) == (2, ["owner-a", "owner-b"])

    async def test_attach_to_missing_blob(self, session_factory, open_ledger) -> None:
        with pytest.raises(NotFound):
            async with session_factory() as session, session.begin():
                await open_ledger(session).attach("0" * 64, "owner-b", "acme", 0)

    async def test_duplicate_owner_rejected(self, session_factory, files, open_ledger) -> None:
        fp = await seed_blob(session_factory, files, b"hello")

        with pytest.raises(OwnerConflict):
            async with session_factory() as session, session.begin():
                await open_ledger(session).attach(fp, "owner-a", "acme", 0)

        assert await snapshot(session_factory, fp) == (1, ["owner-a"])

    async def test_crash_between_insert_and_increment(
        self, session_factory, files, open_ledger, monkeypatch
    ) -> None:
        """Neither the reference nor the increment survives a failed increment."""
        fp = await seed_blob(session_factory, files, b"hello")

        async def crash(self, fingerprint: str) -> int:
            raise RuntimeError("process died")

        monkeypatch.setattr(ReferenceLedger, "_increment", crash)

        with pytest.raises(RuntimeError):
            async with session_factory() as session, session.begin():
                await open_ledger(session).attach(fp, "owner-b", "acme", 0)

        assert await snapshot(session_factory, fp) == (1, ["owner-a"])


class TestDetach:
    async def test_detach_last_reference_deletes_blob(
        self, session_factory, files: BlobFileStore
    ) -> None:
        fp = await seed_blob(session_factory, files, b"hello")

        async with session_factory() as session:
            store = ContentStore(session, files)
            ledger = ReferenceLedger(session, store, QuotaAccountant(session, TierQuotaProvider()))
            async with session.begin():
                outcome = await ledger.detach(fp, "owner-a")
            # File stays until the row deletion is committed
            assert files.iter_locations() == [BlobFileStore.location_for(fp)]
            assert await store.purge_deleted() == [BlobFileStore.location_for(fp)]

        assert outcome.reference_count == 0
        assert outcome.blob_deleted
        assert await snapshot(session_factory, fp) == (None, [])
        assert files.iter_locations() == []

    async def test_detach_unknown_reference(self, session_factory, files, open_ledger) -> None:
        fp = await seed_blob(session_factory, files, b"hello")

        with pytest.raises(NotFound):
            async with session_factory() as session, session.begin():
                await open_ledger(session).detach(fp, "owner-z")

    async def test_detach_with_zero_count_fails_closed(
        self, session_factory, files, open_ledger
    ) -> None:
        fp = await seed_blob(session_factory, files, b"hello")
        async with session_factory() as session, session.begin():
            await session.execute(
                update(ContentBlob).where(ContentBlob.fingerprint == fp).values(reference_count=0)
            )

        with pytest.raises(IntegrityViolation):
            async with session_factory() as session, session.begin():
                await open_ledger(session).detach(fp, "owner-a")

        # Nothing was changed or deleted
        assert await snapshot(session_factory, fp) == (0, ["owner-a"])
        assert files.iter_locations() == [BlobFileStore.location_for(fp)]


class TestReap:
    async def test_reap_refuses_referenced_blob(
        self, session_factory, files, open_ledger
    ) -> None:
        fp = await seed_blob(session_factory, files, b"hello")
        async with session_factory() as session, session.begin():
            await session.execute(
                update(ContentBlob).where(ContentBlob.fingerprint == fp).values(reference_count=0)
            )

        with pytest.raises(IntegrityViolation):
            async with session_factory() as session, session.begin():
                await open_ledger(session).reap_if_unreferenced(fp)

    async def test_reap_ignores_live_blob(self, session_factory, files, open_ledger) -> None:
        fp = await seed_blob(session_factory, files, b"hello")

        async with session_factory() as session, session.begin():
            assert not await open_ledger(session).reap_if_unreferenced(fp)
