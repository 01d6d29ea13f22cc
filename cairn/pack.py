from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from typing import List, Optional

from .backend import Backend
from .constants import (
    DATA_DIR,
    ID_SIZE,
    KIND_DATA,
    KIND_DATA_COMPRESSED,
    KIND_TREE,
    KIND_TREE_COMPRESSED,
    PACK_HEADER_LENGTH_SIZE,
    PACK_MAX_HEADER_ENTRIES,
    PACK_TARGET_SIZE,
)
from .crypto import MasterKey
from .errors import PackFormatError
from .hashutil import object_name

logger = logging.getLogger(__name__)


# Pack layout:
#   blob_1 .. blob_n       each nonce[24] || ciphertext || tag[16]
#   encrypted header       nonce[24] || E(entries) || tag[16]
#   header_length u32 LE   length of the encrypted header
#
# Header entry (little endian):
#   kind u8, length u32, [uncompressed_length u32 for compressed kinds], id[32]
_ENTRY_HEAD = struct.Struct("<BI")
_ENTRY_ULEN = struct.Struct("<I")
_TRAILER = struct.Struct("<I")

_PLAIN_ENTRY_SIZE = _ENTRY_HEAD.size + ID_SIZE
_COMPRESSED_ENTRY_SIZE = _ENTRY_HEAD.size + _ENTRY_ULEN.size + ID_SIZE


@dataclass
class PackedBlob:
    id: bytes
    kind: int  # KIND_DATA or KIND_TREE
    offset: int
    length: int
    uncompressed_length: Optional[int] = None

    @property
    def compressed(self) -> bool:
        return self.uncompressed_length is not None

    def plaintext_length(self) -> int:
        if self.uncompressed_length is not None:
            return self.uncompressed_length
        return self.length - MasterKey.overhead()


@dataclass
class Pack:
    name: str
    data: bytes
    blobs: List[PackedBlob]


def pack_path(name: str) -> str:
    return f"{DATA_DIR}/{name[:2]}/{name}"


def _stored_kind(kind: int, compressed: bool) -> int:
    if kind == KIND_DATA:
        return KIND_DATA_COMPRESSED if compressed else KIND_DATA
    if kind == KIND_TREE:
        return KIND_TREE_COMPRESSED if compressed else KIND_TREE
    raise ValueError(f"invalid blob kind {kind}")


def encode_header(blobs: List[PackedBlob]) -> bytes:
    out = bytearray()
    for b in blobs:
        out += _ENTRY_HEAD.pack(_stored_kind(b.kind, b.compressed), b.length)
        if b.compressed:
            out += _ENTRY_ULEN.pack(b.uncompressed_length)
        out += b.id
    return bytes(out)


def decode_header(plain: bytes) -> List[PackedBlob]:
    blobs: List[PackedBlob] = []
    pos = 0
    offset = 0
    n = len(plain)
    while pos < n:
        if len(blobs) >= PACK_MAX_HEADER_ENTRIES:
            raise PackFormatError("pack header lists too many blobs")
        if pos + _ENTRY_HEAD.size > n:
            raise PackFormatError("truncated pack header entry")
        stored_kind, length = _ENTRY_HEAD.unpack_from(plain, pos)
        pos += _ENTRY_HEAD.size
        ulen: Optional[int] = None
        if stored_kind in (KIND_DATA_COMPRESSED, KIND_TREE_COMPRESSED):
            if pos + _ENTRY_ULEN.size > n:
                raise PackFormatError("truncated pack header entry")
            (ulen,) = _ENTRY_ULEN.unpack_from(plain, pos)
            pos += _ENTRY_ULEN.size
            kind = KIND_DATA if stored_kind == KIND_DATA_COMPRESSED else KIND_TREE
        elif stored_kind in (KIND_DATA, KIND_TREE):
            kind = stored_kind
        else:
            raise PackFormatError(f"invalid blob kind {stored_kind} in pack header")
        if pos + ID_SIZE > n:
            raise PackFormatError("truncated pack header entry")
        blob_id = bytes(plain[pos : pos + ID_SIZE])
        pos += ID_SIZE
        blobs.append(PackedBlob(id=blob_id, kind=kind, offset=offset, length=length, uncompressed_length=ulen))
        offset += length
    return blobs


class Packer:
    """In-memory pack under construction.

    Blobs are encrypted as they are added; ``finalize`` appends the encrypted
    header and the trailer and names the pack by a keyed hash of its bytes.
    """

    def __init__(self, key: MasterKey, target_size: int = PACK_TARGET_SIZE):
        self.key = key
        self.target_size = target_size
        self._buf = bytearray()
        self.blobs: List[PackedBlob] = []

    def add(self, kind: int, blob_id: bytes, payload: bytes, uncompressed_length: Optional[int] = None) -> PackedBlob:
        if len(blob_id) != ID_SIZE:
            raise ValueError("blob id must be 32 bytes")
        _stored_kind(kind, uncompressed_length is not None)
        encrypted = self.key.encrypt(payload)
        blob = PackedBlob(
            id=blob_id,
            kind=kind,
            offset=len(self._buf),
            length=len(encrypted),
            uncompressed_length=uncompressed_length,
        )
        self._buf += encrypted
        self.blobs.append(blob)
        return blob

    def size(self) -> int:
        return len(self._buf)

    def count(self) -> int:
        return len(self.blobs)

    def full(self) -> bool:
        return self.size() >= self.target_size or len(self.blobs) >= PACK_MAX_HEADER_ENTRIES

    def finalize(self) -> Pack:
        header = self.key.encrypt(encode_header(self.blobs))
        data = bytes(self._buf) + header + _TRAILER.pack(len(header))
        name = object_name(self.key.signing_key, data)
        return Pack(name=name, data=data, blobs=list(self.blobs))


def _check_header_length(header_len: int, pack_size: int) -> None:
    if header_len < MasterKey.overhead():
        raise PackFormatError("pack header length too small")
    if header_len > pack_size - PACK_HEADER_LENGTH_SIZE:
        raise PackFormatError("pack header length exceeds pack size")
    max_plain = PACK_MAX_HEADER_ENTRIES * _COMPRESSED_ENTRY_SIZE
    if header_len > max_plain + MasterKey.overhead():
        raise PackFormatError("pack header too large")


def _validate_layout(blobs: List[PackedBlob], data_end: int) -> None:
    total = sum(b.length for b in blobs)
    if total != data_end:
        raise PackFormatError(f"pack header covers {total} bytes but blobs occupy {data_end}")
    for b in blobs:
        if b.length < MasterKey.overhead():
            raise PackFormatError("pack header lists a blob shorter than its encryption overhead")


def parse_header(data: bytes, key: MasterKey) -> List[PackedBlob]:
    """Directory of an in-memory pack."""
    if len(data) < PACK_HEADER_LENGTH_SIZE:
        raise PackFormatError("pack too short")
    (header_len,) = _TRAILER.unpack_from(data, len(data) - PACK_HEADER_LENGTH_SIZE)
    _check_header_length(header_len, len(data))
    data_end = len(data) - PACK_HEADER_LENGTH_SIZE - header_len
    blobs = decode_header(key.decrypt(data[data_end : data_end + header_len]))
    _validate_layout(blobs, data_end)
    return blobs


def read_header(backend: Backend, name: str, key: MasterKey) -> List[PackedBlob]:
    """Directory of a stored pack, read from its tail without fetching blobs."""
    path = pack_path(name)
    size = backend.size(path)
    if size < PACK_HEADER_LENGTH_SIZE:
        raise PackFormatError(f"pack {name} too short")
    (header_len,) = _TRAILER.unpack(backend.read(path, size - PACK_HEADER_LENGTH_SIZE, PACK_HEADER_LENGTH_SIZE))
    _check_header_length(header_len, size)
    data_end = size - PACK_HEADER_LENGTH_SIZE - header_len
    blobs = decode_header(key.decrypt(backend.read(path, data_end, header_len)))
    _validate_layout(blobs, data_end)
    return blobs


def read_blob(backend: Backend, name: str, offset: int, length: int, key: MasterKey) -> bytes:
    """Decrypt one blob's stored payload (still compressed if it was stored so)."""
    return key.decrypt(backend.read(pack_path(name), offset, length))


def write_pack(backend: Backend, pack: Pack) -> None:
    backend.create(pack_path(pack.name), pack.data)
    logger.info("wrote pack %s (%d blobs, %d bytes)", pack.name[:10], len(pack.blobs), len(pack.data))
