"""Physical blob files on the local filesystem.

Layout under the storage root::

    blobs/ab/cdef0123...      published blobs, sharded by the first two hex chars
    staging/<journal_id>.part bytes of an in-flight ingestion

Files only become visible under ``blobs/`` through an atomic rename of a fully
written, fsynced staging file, so a published blob is never partial.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import AsyncIterator
from pathlib import Path
from uuid import UUID

from dedup_store.errors import PayloadTooLarge, SizeMismatch, WriteFailed
from dedup_store.fingerprint import Fingerprinter

logger = logging.getLogger(__name__)


class BlobFileStore:
    """Manages staged and published blob files under one root directory."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self.blobs_dir = self.root / "blobs"
        self.staging_dir = self.root / "staging"

    def ensure_dirs(self) -> None:
        self.blobs_dir.mkdir(parents=True, exist_ok=True)
        self.staging_dir.mkdir(parents=True, exist_ok=True)

    # ── Paths ────────────────────────────────────────────────────────────────

    @staticmethod
    def location_for(fingerprint: str) -> str:
        """Storage location key for a fingerprint: ``ab/cdef...``."""
        return f"{fingerprint[:2]}/{fingerprint[2:]}"

    def path_for(self, location: str) -> Path:
        path = (self.blobs_dir / location).resolve()
        if not path.is_relative_to(self.blobs_dir.resolve()):
            raise ValueError(f"Storage location escapes blob root: {location}")
        return path

    def staging_path(self, journal_id: UUID) -> Path:
        return self.staging_dir / f"{journal_id}.part"

    def exists(self, location: str) -> bool:
        return self.path_for(location).is_file()

    # ── Staging ──────────────────────────────────────────────────────────────

    async def stage(
        self,
        journal_id: UUID,
        chunks: AsyncIterator[bytes],
        hasher: Fingerprinter,
        *,
        max_bytes: int,
        declared_size: int,
        tolerance: int,
    ) -> Path:
        """Write a stream to the staging area while hashing it.

        Stops reading as soon as the stream exceeds ``max_bytes`` or the
        declared size plus tolerance. On any failure the partial staging file
        is removed before the error propagates.
        """
        path = self.staging_path(journal_id)
        upper = declared_size + tolerance
        try:
            await asyncio.to_thread(self.staging_dir.mkdir, parents=True, exist_ok=True)
            handle = await asyncio.to_thread(open, path, "wb")
            try:
                async for chunk in chunks:
                    hasher.update(chunk)
                    if hasher.size_bytes > max_bytes:
                        raise PayloadTooLarge(
                            f"Stream exceeded maximum of {max_bytes} bytes",
                            max_bytes=max_bytes,
                        )
                    if hasher.size_bytes > upper:
                        raise SizeMismatch(
                            f"Stream exceeded declared size {declared_size} "
                            f"(tolerance: {tolerance} bytes)",
                            declared=declared_size,
                            tolerance=tolerance,
                        )
                    await asyncio.to_thread(handle.write, chunk)
                await asyncio.to_thread(_flush_and_sync, handle)
            finally:
                await asyncio.to_thread(handle.close)
        except OSError as e:
            await self.discard(path)
            raise WriteFailed(f"Failed to stage payload: {e}", path=str(path)) from e
        except BaseException:
            await self.discard(path)
            raise
        return path

    async def discard(self, path: Path) -> bool:
        """Remove a staging file. Missing files are not an error."""
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            return False
        logger.debug("Discarded staging file %s", path)
        return True

    # ── Publishing ───────────────────────────────────────────────────────────

    async def publish(self, staged: Path, fingerprint: str) -> tuple[str, bool]:
        """Atomically move a staged file to its final location.

        Returns ``(location, created)``. When the final file already exists the
        content is identical (same fingerprint), the staged file is left in
        place for the caller to discard and ``created`` is False.
        """
        location = self.location_for(fingerprint)
        final = self.path_for(location)
        if await asyncio.to_thread(final.is_file):
            return location, False
        try:
            await asyncio.to_thread(final.parent.mkdir, parents=True, exist_ok=True)
            await asyncio.to_thread(os.replace, staged, final)
        except OSError as e:
            raise WriteFailed(
                f"Failed to publish blob {fingerprint[:16]}...: {e}",
                fingerprint=fingerprint,
            ) from e
        return location, True

    async def remove(self, location: str) -> bool:
        """Remove a published blob file. Idempotent."""
        path = self.path_for(location)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            return False
        try:
            await asyncio.to_thread(path.parent.rmdir)  # only succeeds if empty
        except OSError:
            pass
        return True

    async def read(self, location: str) -> bytes:
        return await asyncio.to_thread(self.path_for(location).read_bytes)

    # ── Enumeration (used by the reaper) ─────────────────────────────────────

    def iter_locations(self) -> list[str]:
        if not self.blobs_dir.is_dir():
            return []
        return sorted(
            f"{p.parent.name}/{p.name}"
            for p in self.blobs_dir.glob("*/*")
            if p.is_file()
        )

    def iter_staged(self) -> list[Path]:
        if not self.staging_dir.is_dir():
            return []
        return sorted(self.staging_dir.glob("*.part"))


def _flush_and_sync(handle) -> None:
    handle.flush()
    os.fsync(handle.fileno())
