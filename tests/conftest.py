"""Shared pytest fixtures for dedup-store tests."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from pathlib import Path
from typing import TYPE_CHECKING

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from dedup_store.db import init_db, make_engine, make_session_factory
from dedup_store.models import QuotaLedgerEntry
from dedup_store.services.dedup import DedupService
from dedup_store.services.limits import TierQuotaProvider
from dedup_store.storage.files import BlobFileStore
from dedup_store.utils.locks import KeyedLock

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine


@pytest.fixture
async def test_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite database, fresh for every test.

    A file (not :memory:) so that concurrent sessions see each other's commits.
    """
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'store.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(test_engine)


@pytest.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def files(tmp_path: Path) -> BlobFileStore:
    store = BlobFileStore(tmp_path / "storage")
    store.ensure_dirs()
    return store


@pytest.fixture
def locks() -> KeyedLock:
    return KeyedLock()


@pytest.fixture
def limits(session_factory: async_sessionmaker[AsyncSession]) -> TierQuotaProvider:
    return TierQuotaProvider(session_factory)


MakeService = Callable[..., DedupService]


@pytest.fixture
def make_service(
    session_factory: async_sessionmaker[AsyncSession],
    files: BlobFileStore,
    limits: TierQuotaProvider,
    locks: KeyedLock,
) -> MakeService:
    """Factory for DedupService instances sharing one database and blob root."""

    def _make(**kwargs) -> DedupService:
        kwargs.setdefault("limits", limits)
        kwargs.setdefault("locks", locks)
        kwargs.setdefault("charge_deduplicated", True)
        kwargs.setdefault("timeout_seconds", 30.0)
        kwargs.setdefault("max_payload_bytes", 1024 * 1024)
        kwargs.setdefault("size_tolerance_bytes", 100)
        kwargs.setdefault("chunk_size", 64 * 1024)
        return DedupService(session_factory, files, **kwargs)

    return _make


@pytest.fixture
def service(make_service: MakeService) -> DedupService:
    return make_service()


LedgerEntry = Callable[[str], Awaitable[QuotaLedgerEntry | None]]


@pytest.fixture
def ledger_entry(session_factory: async_sessionmaker[AsyncSession]) -> LedgerEntry:
    """Read a tenant's quota row as committed in the database."""

    async def _get(tenant_id: str) -> QuotaLedgerEntry | None:
        async with session_factory() as session:
            return await session.get(QuotaLedgerEntry, tenant_id)

    return _get
