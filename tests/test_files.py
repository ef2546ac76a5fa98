"""Tests for staging, publishing and removing blob files."""

from __future__ import annotations

from collections.abc import AsyncIterator
from uuid import uuid4

import pytest

from dedup_store.errors import PayloadTooLarge, SizeMismatch, WriteFailed
from dedup_store.fingerprint import Fingerprinter, fingerprint
from dedup_store.storage.files import BlobFileStore
from dedup_store.utils.streams import iter_chunks


async def chunks_of(*parts: bytes) -> AsyncIterator[bytes]:
    for part in parts:
        yield part


async def stage(files: BlobFileStore, data: bytes, *, declared: int | None = None, **kwargs):
    hasher = Fingerprinter()
    journal_id = uuid4()
    kwargs.setdefault("max_bytes", 1024)
    kwargs.setdefault("tolerance", 0)
    path = await files.stage(
        journal_id,
        iter_chunks(data, 4),
        hasher,
        declared_size=len(data) if declared is None else declared,
        **kwargs,
    )
    return journal_id, path, hasher


class TestStage:
    async def test_stage_writes_and_hashes(self, files: BlobFileStore) -> None:
        journal_id, path, hasher = await stage(files, b"hello world")

        assert path == files.staging_path(journal_id)
        assert path.read_bytes() == b"hello world"
        assert hasher.hexdigest() == fingerprint(b"hello world")
        assert hasher.size_bytes == 11

    async def test_oversized_stream_leaves_no_partial_file(self, files: BlobFileStore) -> None:
        with pytest.raises(PayloadTooLarge):
            await stage(files, b"x" * 40, declared=8, max_bytes=8, tolerance=100)
        assert files.iter_staged() == []

    async def test_stream_longer_than_declared(self, files: BlobFileStore) -> None:
        with pytest.raises(SizeMismatch):
            await stage(files, b"x" * 40, declared=10, tolerance=5)
        assert files.iter_staged() == []

    async def test_os_error_becomes_write_failed(self, files: BlobFileStore, monkeypatch) -> None:
        def broken_sync(handle) -> None:
            raise OSError(28, "No space left on device")

        monkeypatch.setattr("dedup_store.storage.files._flush_and_sync", broken_sync)

        with pytest.raises(WriteFailed) as exc_info:
            await stage(files, b"data")
        assert exc_info.value.transient
        assert files.iter_staged() == []


class TestPublish:
    async def test_publish_moves_staged_file(self, files: BlobFileStore) -> None:
        _, path, hasher = await stage(files, b"hello")
        fp = hasher.hexdigest()

        location, created = await files.publish(path, fp)

        assert created
        assert location == f"{fp[:2]}/{fp[2:]}"
        assert not path.exists()
        assert await files.read(location) == b"hello"
        assert files.iter_locations() == [location]

    async def test_publish_over_existing_keeps_staged(self, files: BlobFileStore) -> None:
        _, first, hasher = await stage(files, b"hello")
        fp = hasher.hexdigest()
        await files.publish(first, fp)
        _, second, _ = await stage(files, b"hello")

        location, created = await files.publish(second, fp)

        assert not created
        assert second.exists()
        assert files.exists(location)

    async def test_remove_is_idempotent(self, files: BlobFileStore) -> None:
        _, path, hasher = await stage(files, b"hello")
        location, _ = await files.publish(path, hasher.hexdigest())

        assert await files.remove(location)
        assert not await files.remove(location)
        assert files.iter_locations() == []

    async def test_discard_missing_file(self, files: BlobFileStore) -> None:
        assert not await files.discard(files.staging_path(uuid4()))

    def test_location_cannot_escape_root(self, files: BlobFileStore) -> None:
        with pytest.raises(ValueError):
            files.path_for("../../etc/passwd")
