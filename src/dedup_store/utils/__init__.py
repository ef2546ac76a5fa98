"""Utility modules for dedup-store."""

from dedup_store.utils.locks import KeyedLock
from dedup_store.utils.streams import ByteSource, iter_chunks

__all__ = [
    "ByteSource",
    "KeyedLock",
    "iter_chunks",
]
