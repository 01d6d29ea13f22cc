from __future__ import annotations

import hashlib
import hmac


def blob_id(data: bytes) -> bytes:
    """Content identity of a blob: SHA-256 over its plaintext."""
    return hashlib.sha256(data).digest()


def object_name(signing_key: bytes, data: bytes) -> str:
    # Keyed so stored object names reveal nothing about their contents.
    return hmac.new(signing_key, data, hashlib.sha256).hexdigest()


def file_id(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def short_id(value: str) -> str:
    return value[:10]
