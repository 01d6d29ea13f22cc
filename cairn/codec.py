from __future__ import annotations

import zlib
from typing import Optional, Tuple

from .constants import COMPRESSION_AUTO, COMPRESSION_MAX, COMPRESSION_MODES, COMPRESSION_OFF
from .errors import InvalidRequest, PackFormatError


_LEVELS = {COMPRESSION_AUTO: 6, COMPRESSION_MAX: 9}


class Codec:
    """Blob compression for one repository compression mode.

    ``compress`` returns ``(payload, uncompressed_length)``; the length is
    None when the blob is stored as-is, either because compression is off or
    because deflate did not make it smaller.
    """

    def __init__(self, mode: str = COMPRESSION_AUTO):
        if mode not in COMPRESSION_MODES:
            raise InvalidRequest(f"unknown compression mode: {mode}")
        self.mode = mode

    def compress(self, data: bytes) -> Tuple[bytes, Optional[int]]:
        if self.mode == COMPRESSION_OFF or not data:
            return data, None
        packed = zlib.compress(data, _LEVELS[self.mode])
        if len(packed) >= len(data):
            return data, None
        return packed, len(data)

    @staticmethod
    def decompress(payload: bytes, uncompressed_length: Optional[int]) -> bytes:
        if uncompressed_length is None:
            return payload
        try:
            raw = zlib.decompress(payload)
        except zlib.error as exc:
            raise PackFormatError(f"blob decompression failed: {exc}") from exc
        if len(raw) != uncompressed_length:
            raise PackFormatError("blob length mismatch after decompress")
        return raw
