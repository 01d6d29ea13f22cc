"""
Minimal TLV encoder/decoder for persisted index files.

Encoding
- TLV: varint(tag) || varint(length) || payload
- Integers: unsigned LEB128 varint
- Bytes: raw payload (length provided by TLV len)
- Strings: UTF-8 bytes (length provided by TLV len)

Top-level index tags
- 1: version (varint)
- 2: packs (container; contains pack TLVs, tag=1 per pack)

Pack (within packs container; tag=1)
- 1: pack name (utf8, hex)
- 2: blobs (container; contains blob TLVs, tag=1 per blob)

Blob (within blobs container; tag=1)
- 1: id (bytes[32])
- 2: kind (varint)
- 3: offset (varint)
- 4: length (varint)
- 5: uncompressed_length (varint, only for compressed blobs)
"""

from __future__ import annotations

from typing import Dict, List, Optional, Tuple


INDEX_FORMAT_VERSION = 1


def _varint_encode(n: int) -> bytes:
    if n < 0:
        raise ValueError("varint: negative not supported")
    out = bytearray()
    while True:
        b = n & 0x7F
        n >>= 7
        if n:
            out.append(b | 0x80)
        else:
            out.append(b)
            break
    return bytes(out)


def _varint_decode(data: bytes, pos: int) -> Tuple[int, int]:
    shift = 0
    result = 0
    while True:
        if pos >= len(data):
            raise ValueError("varint: truncated")
        b = data[pos]
        pos += 1
        result |= (b & 0x7F) << shift
        if not (b & 0x80):
            return result, pos
        shift += 7
        if shift > 63:
            raise ValueError("varint: too large")


def _varint(payload: bytes) -> int:
    value, end = _varint_decode(payload, 0)
    if end != len(payload):
        raise ValueError("varint: trailing bytes")
    return value


def _tlv(tag: int, payload: bytes) -> bytes:
    return _varint_encode(tag) + _varint_encode(len(payload)) + payload


def _iter_tlvs(data: bytes) -> List[Tuple[int, bytes]]:
    items: List[Tuple[int, bytes]] = []
    pos = 0
    n = len(data)
    while pos < n:
        tag, pos = _varint_decode(data, pos)
        ln, pos = _varint_decode(data, pos)
        if pos + ln > n:
            raise ValueError("TLV length out of range")
        items.append((tag, data[pos : pos + ln]))
        pos += ln
    return items


def dumps_index(packs: Dict[str, List[Dict]]) -> bytes:
    """Encode ``{pack_name: [blob dict, ...]}``.

    Blob dicts carry ``id``, ``kind``, ``offset``, ``length`` and optionally
    ``uncompressed_length``.
    """
    out = bytearray()
    out += _tlv(1, _varint_encode(INDEX_FORMAT_VERSION))
    packs_payload = bytearray()
    for name in sorted(packs):
        p_payload = bytearray()
        p_payload += _tlv(1, name.encode("utf-8"))
        blobs_payload = bytearray()
        for blob in packs[name]:
            b_payload = bytearray()
            b_payload += _tlv(1, bytes(blob["id"]))
            b_payload += _tlv(2, _varint_encode(int(blob["kind"])))
            b_payload += _tlv(3, _varint_encode(int(blob["offset"])))
            b_payload += _tlv(4, _varint_encode(int(blob["length"])))
            if blob.get("uncompressed_length") is not None:
                b_payload += _tlv(5, _varint_encode(int(blob["uncompressed_length"])))
            blobs_payload += _tlv(1, bytes(b_payload))
        p_payload += _tlv(2, bytes(blobs_payload))
        packs_payload += _tlv(1, bytes(p_payload))
    out += _tlv(2, bytes(packs_payload))
    return bytes(out)


def loads_index(data: bytes, *, max_blobs: int = 50_000_000) -> Dict[str, List[Dict]]:
    """Parse an index file body produced by ``dumps_index``."""
    packs: Dict[str, List[Dict]] = {}
    version: Optional[int] = None
    total = 0
    for tag, payload in _iter_tlvs(data):
        if tag == 1:
            version = _varint(payload)
            if version != INDEX_FORMAT_VERSION:
                raise ValueError(f"unsupported index format version {version}")
        elif tag == 2:
            for ptag, ppayload in _iter_tlvs(payload):
                if ptag != 1:
                    continue
                name: Optional[str] = None
                blobs: List[Dict] = []
                for ftag, fpayload in _iter_tlvs(ppayload):
                    if ftag == 1:
                        name = fpayload.decode("utf-8")
                    elif ftag == 2:
                        for btag, bpayload in _iter_tlvs(fpayload):
                            if btag != 1:
                                continue
                            total += 1
                            if total > max_blobs:
                                raise ValueError("index lists too many blobs")
                            blobs.append(_parse_blob(bpayload))
                if name is None:
                    raise ValueError("index pack entry without a name")
                packs.setdefault(name, []).extend(blobs)
        # unknown tags are skipped for forward compatibility
    if version is None:
        raise ValueError("index file has no version")
    return packs


def _parse_blob(payload: bytes) -> Dict:
    blob: Dict = {}
    for tag, value in _iter_tlvs(payload):
        if tag == 1:
            blob["id"] = bytes(value)
        elif tag == 2:
            blob["kind"] = _varint(value)
        elif tag == 3:
            blob["offset"] = _varint(value)
        elif tag == 4:
            blob["length"] = _varint(value)
        elif tag == 5:
            blob["uncompressed_length"] = _varint(value)
    for required in ("id", "kind", "offset", "length"):
        if required not in blob:
            raise ValueError(f"index blob entry missing {required}")
    if len(blob["id"]) != 32:
        raise ValueError("index blob id must be 32 bytes")
    return blob
