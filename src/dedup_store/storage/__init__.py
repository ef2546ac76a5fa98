"""Blob storage: physical files and ContentBlob rows."""

from dedup_store.storage.content_store import ContentStore
from dedup_store.storage.files import BlobFileStore

__all__ = [
    "BlobFileStore",
    "ContentStore",
]
