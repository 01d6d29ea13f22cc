"""Content-defined chunking with a Rabin fingerprint over a sliding window.

The fingerprint of the last ``CHUNKER_WINDOW_SIZE`` bytes is kept modulo the
repository polynomial. A chunk ends where the low ``average_bits`` bits of the
fingerprint are all zero, provided the chunk has reached ``min_size``, or
unconditionally at ``max_size``. Boundaries depend only on nearby content, so
an insertion moves the boundaries around it and leaves the rest alone.

Lookup tables are derived once per polynomial and shared read-only between
all chunkers using that polynomial.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import BinaryIO, Dict, Iterator, Optional, Tuple

from .constants import (
    CHUNKER_AVERAGE_BITS,
    CHUNKER_BUFFER_SIZE,
    CHUNKER_MAX_SIZE,
    CHUNKER_MIN_SIZE,
    CHUNKER_WINDOW_SIZE,
)
from .polynomial import pol_deg, pol_mod


@dataclass
class Chunk:
    start: int
    length: int
    cut: int
    data: bytes


_Tables = Tuple[Tuple[int, ...], Tuple[int, ...]]

_TABLE_CACHE: Dict[int, _Tables] = {}
_TABLE_LOCK = threading.Lock()


def _append_byte(digest: int, b: int, pol: int) -> int:
    return pol_mod((digest << 8) | b, pol)


def _build_tables(pol: int) -> _Tables:
    # out[b] = H(b || 0 ... 0): XOR-ing it removes b when it leaves the window.
    out = []
    for b in range(256):
        h = _append_byte(0, b, pol)
        for _ in range(CHUNKER_WINDOW_SIZE - 1):
            h = _append_byte(h, 0, pol)
        out.append(h)
    # mod[b] = (b * x^k mod pol) | (b * x^k): one XOR clears the top byte and
    # adds its remainder.
    k = pol_deg(pol)
    mod = [pol_mod(b << k, pol) | (b << k) for b in range(256)]
    return tuple(out), tuple(mod)


def tables_for(pol: int) -> _Tables:
    with _TABLE_LOCK:
        tables = _TABLE_CACHE.get(pol)
        if tables is None:
            tables = _build_tables(pol)
            _TABLE_CACHE[pol] = tables
        return tables


class Chunker:
    """Split a byte stream into content-defined chunks.

    Iterating a Chunker yields Chunk objects until the stream is exhausted.
    ``reset(reader)`` starts over on a new stream while keeping the tables.
    """

    def __init__(
        self,
        pol: int,
        reader: Optional[BinaryIO] = None,
        *,
        min_size: int = CHUNKER_MIN_SIZE,
        max_size: int = CHUNKER_MAX_SIZE,
        average_bits: int = CHUNKER_AVERAGE_BITS,
        buffer_size: int = CHUNKER_BUFFER_SIZE,
    ):
        if pol_deg(pol) < 9:
            raise ValueError("chunker polynomial must have degree of at least 9")
        if min_size < CHUNKER_WINDOW_SIZE:
            raise ValueError(f"min_size must be at least {CHUNKER_WINDOW_SIZE}")
        if max_size < min_size:
            raise ValueError("max_size must not be smaller than min_size")
        self.pol = pol
        self.min_size = min_size
        self.max_size = max_size
        self.split_mask = (1 << average_bits) - 1
        self.buffer_size = buffer_size
        self._out_table, self._mod_table = tables_for(pol)
        self._pol_shift = pol_deg(pol) - 8
        self.reset(reader)

    def reset(self, reader: Optional[BinaryIO]) -> None:
        self._reader = reader
        self._buf = b""
        self._bpos = 0
        self._pos = 0
        self._closed = reader is None
        self._reset_chunk()

    def _reset_chunk(self) -> None:
        self._window = bytearray(CHUNKER_WINDOW_SIZE)
        self._wpos = 0
        self._count = 0
        self._digest = 0
        self._slide(1)
        self._start = self._pos
        # bytes before the last window of the minimum size are never a cut
        self._pre = self.min_size - CHUNKER_WINDOW_SIZE

    def _slide(self, b: int) -> None:
        out = self._window[self._wpos]
        self._window[self._wpos] = b
        self._digest ^= self._out_table[out]
        self._wpos = (self._wpos + 1) % CHUNKER_WINDOW_SIZE
        index = (self._digest >> self._pol_shift) & 0xFF
        self._digest = ((self._digest << 8) | b) ^ self._mod_table[index]

    def next_chunk(self) -> Optional[Chunk]:
        """Return the next chunk, or None once the stream is exhausted."""
        if self._closed:
            return None
        data = bytearray()
        out_table = self._out_table
        mod_table = self._mod_table
        shift = self._pol_shift
        mask = self.split_mask
        min_size = self.min_size
        max_size = self.max_size
        window = self._window
        while True:
            if self._bpos >= len(self._buf):
                self._buf = self._reader.read(self.buffer_size)
                self._bpos = 0
                if not self._buf:
                    self._closed = True
                    if self._count > 0:
                        return Chunk(self._start, self._count, self._digest, bytes(data))
                    return None

            buf = self._buf
            bmax = len(buf)
            if self._pre > 0:
                n = bmax - self._bpos
                if self._pre > n:
                    self._pre -= n
                    data += buf[self._bpos :]
                    self._count += n
                    self._pos += n
                    self._bpos = bmax
                    continue
                data += buf[self._bpos : self._bpos + self._pre]
                self._bpos += self._pre
                self._count += self._pre
                self._pos += self._pre
                self._pre = 0

            add = self._count
            digest = self._digest
            wpos = self._wpos
            start = self._bpos
            for i in range(start, bmax):
                b = buf[i]
                digest ^= out_table[window[wpos]]
                window[wpos] = b
                wpos = (wpos + 1) % CHUNKER_WINDOW_SIZE
                digest = ((digest << 8) | b) ^ mod_table[(digest >> shift) & 0xFF]
                add += 1
                if add < min_size:
                    continue
                if (digest & mask) == 0 or add >= max_size:
                    data += buf[start : i + 1]
                    self._pos += i + 1 - start
                    self._bpos = i + 1
                    chunk = Chunk(self._start, add, digest, bytes(data))
                    self._reset_chunk()
                    return chunk

            data += buf[start:bmax]
            self._pos += bmax - start
            self._bpos = bmax
            self._count = add
            self._digest = digest
            self._wpos = wpos

    def __iter__(self) -> Iterator[Chunk]:
        while True:
            chunk = self.next_chunk()
            if chunk is None:
                return
            yield chunk


def iter_boundaries(pol: int, reader: BinaryIO, **bounds) -> Iterator[int]:
    """Yield the end offset of every chunk in ``reader``."""
    for chunk in Chunker(pol, reader, **bounds):
        yield chunk.start + chunk.length
