"""Hashing helpers for release verification."""

from __future__ import annotations

import hashlib
import hmac


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def verify_hash(data: bytes, expected_hash: str) -> bool:
    """Return True if *data* hashes to *expected_hash* (hex, any case)."""
    expected = expected_hash.strip().lower()
    if not expected.isascii():
        return False
    return hmac.compare_digest(sha256_hex(data), expected)
