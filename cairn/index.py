"""Blob index: content identity -> pack location.

The index is a cache. Every entry can be recovered from pack headers, so a
lost or stale index is repaired with ``Index.rebuild``.

Writers deduplicate through reservations: ``reserve`` atomically checks that
an id is neither indexed nor in flight and marks it in flight. The upload
happens without holding the lock; ``finalize`` records the location and
``release`` drops the reservation after a failed upload. Two processes (or an
upload racing a reloaded index) can still store the same blob twice; the last
recorded location wins, which is harmless because the bytes are identical.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Set

from . import tlv
from .backend import Backend
from .constants import DATA_DIR, INDEX_DIR
from .crypto import MasterKey
from .errors import PackFormatError
from .hashutil import object_name
from .pack import PackedBlob, read_header

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IndexEntry:
    pack: str
    kind: int
    offset: int
    length: int
    uncompressed_length: Optional[int] = None


class Index:
    def __init__(self):
        self._entries: Dict[bytes, IndexEntry] = {}
        self._reserved: Set[bytes] = set()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, blob_id: bytes) -> bool:
        return self.has(blob_id)

    def has(self, blob_id: bytes) -> bool:
        with self._lock:
            return blob_id in self._entries

    def locate(self, blob_id: bytes) -> Optional[IndexEntry]:
        with self._lock:
            return self._entries.get(blob_id)

    def record(self, blob_id: bytes, entry: IndexEntry) -> None:
        with self._lock:
            self._entries[blob_id] = entry

    def record_pack(self, pack: str, blobs: List[PackedBlob]) -> None:
        with self._lock:
            for b in blobs:
                self._entries[b.id] = entry_for(pack, b)

    def reserve(self, blob_id: bytes) -> bool:
        """Mark ``blob_id`` in flight; False if already stored or in flight."""
        with self._lock:
            if blob_id in self._entries or blob_id in self._reserved:
                return False
            self._reserved.add(blob_id)
            return True

    def finalize(self, blob_id: bytes, entry: IndexEntry) -> None:
        with self._lock:
            self._entries[blob_id] = entry
            self._reserved.discard(blob_id)

    def release(self, blob_id: bytes) -> None:
        with self._lock:
            self._reserved.discard(blob_id)

    def in_flight(self) -> int:
        with self._lock:
            return len(self._reserved)

    def items(self) -> Iterator:
        with self._lock:
            snapshot = list(self._entries.items())
        return iter(snapshot)

    def packs(self) -> Set[str]:
        with self._lock:
            return {e.pack for e in self._entries.values()}

    def merge(self, other: "Index") -> None:
        for blob_id, entry in other.items():
            self.record(blob_id, entry)

    # persistence

    def encode(self) -> bytes:
        by_pack: Dict[str, List[Dict]] = {}
        for blob_id, e in self.items():
            by_pack.setdefault(e.pack, []).append(
                {
                    "id": blob_id,
                    "kind": e.kind,
                    "offset": e.offset,
                    "length": e.length,
                    "uncompressed_length": e.uncompressed_length,
                }
            )
        for blobs in by_pack.values():
            blobs.sort(key=lambda b: b["offset"])
        return tlv.dumps_index(by_pack)

    @classmethod
    def decode(cls, data: bytes) -> "Index":
        idx = cls()
        for pack, blobs in tlv.loads_index(data).items():
            for b in blobs:
                idx.record(
                    b["id"],
                    IndexEntry(
                        pack=pack,
                        kind=b["kind"],
                        offset=b["offset"],
                        length=b["length"],
                        uncompressed_length=b.get("uncompressed_length"),
                    ),
                )
        return idx

    def save(self, backend: Backend, key: MasterKey) -> str:
        """Store the index as an encrypted file; returns its object name."""
        payload = key.encrypt(self.encode())
        name = f"{INDEX_DIR}/{object_name(key.signing_key, payload)}"
        backend.create(name, payload)
        logger.info("saved index %s with %d blobs", name, len(self))
        return name

    @classmethod
    def load(cls, backend: Backend, key: MasterKey) -> "Index":
        idx = cls()
        for name in backend.list(INDEX_DIR):
            try:
                part = cls.decode(key.decrypt(backend.read(name)))
            except ValueError as exc:
                raise PackFormatError(f"malformed index file {name}: {exc}") from exc
            idx.merge(part)
        logger.debug("loaded index with %d blobs", len(idx))
        return idx

    @classmethod
    def rebuild(cls, backend: Backend, key: MasterKey) -> "Index":
        """Recreate the index from the headers of every stored pack."""
        idx = cls()
        count = 0
        for path in backend.list(DATA_DIR):
            name = path.rsplit("/", 1)[-1]
            idx.record_pack(name, read_header(backend, name, key))
            count += 1
        logger.info("rebuilt index from %d packs (%d blobs)", count, len(idx))
        return idx


def entry_for(pack: str, blob: PackedBlob) -> IndexEntry:
    return IndexEntry(
        pack=pack,
        kind=blob.kind,
        offset=blob.offset,
        length=blob.length,
        uncompressed_length=blob.uncompressed_length,
    )
