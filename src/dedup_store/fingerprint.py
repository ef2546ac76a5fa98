"""Content fingerprinting.

Fingerprints are SHA-256 hex digests of the raw bytes and serve as the
ContentBlob primary key.
"""

from __future__ import annotations

import hashlib

from dedup_store.config import settings
from dedup_store.errors import PayloadTooLarge

DIGEST_HEX_LENGTH = 64


def check_payload_size(size_bytes: int, max_bytes: int | None = None) -> None:
    """Reject payloads above the configured maximum before any hashing."""
    limit = settings.max_payload_bytes if max_bytes is None else max_bytes
    if size_bytes > limit:
        raise PayloadTooLarge(
            f"Payload of {size_bytes} bytes exceeds maximum of {limit} bytes",
            size_bytes=size_bytes,
            max_bytes=limit,
        )


def fingerprint(data: bytes, max_bytes: int | None = None) -> str:
    """Compute the fingerprint of a complete in-memory payload."""
    check_payload_size(len(data), max_bytes)
    return hashlib.sha256(data).hexdigest()


def is_fingerprint(value: str) -> bool:
    """Check that value looks like a lowercase SHA-256 hex digest."""
    if len(value) != DIGEST_HEX_LENGTH:
        return False
    return all(c in "0123456789abcdef" for c in value)


def hash_prefix(value: str) -> str:
    """Shortened fingerprint for log lines."""
    return value[: settings.hash_prefix_length] + "..."


class Fingerprinter:
    """Incremental hasher for streamed payloads.

    Tracks the number of bytes seen so callers can enforce size limits while
    the stream is being consumed.
    """

    def __init__(self) -> None:
        self._hash = hashlib.sha256()
        self.size_bytes = 0

    def update(self, chunk: bytes) -> None:
        self._hash.update(chunk)
        self.size_bytes += len(chunk)

    def hexdigest(self) -> str:
        return self._hash.hexdigest()
