"""Tests for fingerprinting and payload size checks."""

import hashlib

import pytest

from dedup_store.errors import ErrorKind, PayloadTooLarge
from dedup_store.fingerprint import (
    Fingerprinter,
    check_payload_size,
    fingerprint,
    hash_prefix,
    is_fingerprint,
)

HELLO_SHA256 = "2cf24dba5fb0a30e26e83b2ac5b9e29e1b161e5c1fa7425e73043362938b9824"


class TestFingerprint:
    def test_known_digest(self) -> None:
        assert fingerprint(b"hello") == HELLO_SHA256

    def test_empty_payload(self) -> None:
        assert fingerprint(b"") == hashlib.sha256(b"").hexdigest()

    def test_identical_bytes_identical_fingerprint(self) -> None:
        assert fingerprint(b"abc" * 100) == fingerprint(bytes(b"abc" * 100))

    def test_one_byte_difference_changes_fingerprint(self) -> None:
        assert fingerprint(b"hello") != fingerprint(b"hellp")

    def test_too_large_rejected_before_hashing(self) -> None:
        with pytest.raises(PayloadTooLarge) as exc_info:
            fingerprint(b"x" * 11, max_bytes=10)
        assert exc_info.value.kind is ErrorKind.PAYLOAD_TOO_LARGE
        assert exc_info.value.details == {"size_bytes": 11, "max_bytes": 10}

    def test_exactly_max_is_accepted(self) -> None:
        check_payload_size(10, max_bytes=10)


class TestFingerprinter:
    def test_streamed_digest_matches_one_shot(self) -> None:
        hasher = Fingerprinter()
        for chunk in (b"hel", b"", b"lo"):
            hasher.update(chunk)
        assert hasher.hexdigest() == HELLO_SHA256
        assert hasher.size_bytes == 5


class TestHelpers:
    def test_is_fingerprint(self) -> None:
        assert is_fingerprint(HELLO_SHA256)
        assert not is_fingerprint(HELLO_SHA256.upper())
        assert not is_fingerprint(HELLO_SHA256[:-1])
        assert not is_fingerprint("../" + HELLO_SHA256[3:])

    def test_hash_prefix(self) -> None:
        assert hash_prefix(HELLO_SHA256) == "2cf24dba5fb0a30e..."
