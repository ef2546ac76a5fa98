"""Helpers for the byte sources accepted by ingestion."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterable, AsyncIterator
from typing import BinaryIO

ByteSource = bytes | bytearray | memoryview | AsyncIterable[bytes] | BinaryIO
"""Anything ingest() can read: an in-memory buffer, an async stream of chunks,
or a binary file object."""


async def iter_chunks(source: ByteSource, chunk_size: int) -> AsyncIterator[bytes]:
    """Yield the payload of ``source`` in chunks of at most ``chunk_size`` bytes."""
    if isinstance(source, (bytes, bytearray, memoryview)):
        view = memoryview(source)
        for start in range(0, len(view), chunk_size):
            yield bytes(view[start : start + chunk_size])
        return

    if hasattr(source, "__aiter__"):
        async for chunk in source:  # type: ignore[union-attr]
            if chunk:
                yield bytes(chunk)
        return

    # Blocking file object: read off the event loop
    while True:
        chunk = await asyncio.to_thread(source.read, chunk_size)  # type: ignore[union-attr]
        if not chunk:
            break
        yield chunk
