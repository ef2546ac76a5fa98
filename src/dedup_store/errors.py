"""Error taxonomy for dedup-store.

Every failure surfaced by the store carries an ``ErrorKind`` so callers can
decide what to do without matching on exception classes:

- transient kinds (``timeout``, ``write_failed``) may be retried with backoff
- ``integrity_violation`` is never retried; it needs an operator
- ``already_exists`` is internal: the ingestion path converts it into the
  deduplication path and it never reaches a caller

Rollback failures never replace the original error. They are appended to
``rollback_failures`` on the error the caller receives.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Machine-readable category of a store failure."""

    PAYLOAD_TOO_LARGE = "payload_too_large"
    SIZE_MISMATCH = "size_mismatch"
    WRITE_FAILED = "write_failed"
    ALREADY_EXISTS = "already_exists"
    NOT_FOUND = "not_found"
    OWNER_CONFLICT = "owner_conflict"
    QUOTA_EXCEEDED = "quota_exceeded"
    TIMEOUT = "timeout"
    INTEGRITY_VIOLATION = "integrity_violation"


TRANSIENT_KINDS = frozenset({ErrorKind.TIMEOUT, ErrorKind.WRITE_FAILED})


class DedupError(Exception):
    """Base class for all typed store failures."""

    kind: ErrorKind

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details
        self.rollback_failures: list[str] = []

    @property
    def transient(self) -> bool:
        return self.kind in TRANSIENT_KINDS

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "kind": self.kind.value,
            "message": self.message,
            "details": self.details,
        }
        if self.rollback_failures:
            payload["rollback_failures"] = list(self.rollback_failures)
        return payload


class PayloadTooLarge(DedupError):
    kind = ErrorKind.PAYLOAD_TOO_LARGE


class SizeMismatch(DedupError):
    """Actual payload size differs from the declared size beyond tolerance."""

    kind = ErrorKind.SIZE_MISMATCH


class WriteFailed(DedupError):
    kind = ErrorKind.WRITE_FAILED


class AlreadyExists(DedupError):
    kind = ErrorKind.ALREADY_EXISTS


class NotFound(DedupError):
    kind = ErrorKind.NOT_FOUND


class OwnerConflict(DedupError):
    """The owner already holds a reference to some content."""

    kind = ErrorKind.OWNER_CONFLICT


class QuotaExceeded(DedupError):
    kind = ErrorKind.QUOTA_EXCEEDED


class IngestTimeout(DedupError):
    kind = ErrorKind.TIMEOUT


class IntegrityViolation(DedupError):
    """Detected inconsistency between references, blobs and counts.

    Always a bug signal. Operations fail closed and the incident is recorded.
    """

    kind = ErrorKind.INTEGRITY_VIOLATION
