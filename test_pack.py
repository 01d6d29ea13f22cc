from __future__ import annotations

import os
import struct
import unittest

from cairn.backend import MemoryBackend
from cairn.constants import KIND_DATA, KIND_TREE
from cairn.crypto import MasterKey
from cairn.errors import AuthenticationFailed, PackFormatError
from cairn.hashutil import blob_id, object_name
from cairn.pack import (
    PackedBlob,
    Packer,
    decode_header,
    encode_header,
    pack_path,
    parse_header,
    read_blob,
    read_header,
    write_pack,
)


def _build_pack(key: MasterKey):
    packer = Packer(key)
    contents = [os.urandom(300), b"tree node", os.urandom(1000)]
    packer.add(KIND_DATA, blob_id(contents[0]), contents[0])
    packer.add(KIND_TREE, blob_id(contents[1]), contents[1])
    packer.add(KIND_DATA, blob_id(contents[2]), b"pretend-compressed", len(contents[2]))
    return packer.finalize(), contents


class PackLayoutTests(unittest.TestCase):
    def test_pack_is_self_describing(self):
        key = MasterKey.generate()
        pack, contents = _build_pack(key)
        self.assertEqual(pack.name, object_name(key.signing_key, pack.data))
        blobs = parse_header(pack.data, key)
        self.assertEqual([b.id for b in blobs], [blob_id(c) for c in contents])
        self.assertEqual([b.kind for b in blobs], [KIND_DATA, KIND_TREE, KIND_DATA])
        self.assertEqual([b.uncompressed_length for b in blobs], [None, None, 1000])
        self.assertEqual(blobs[0].offset, 0)
        self.assertEqual(blobs[1].offset, blobs[0].length)
        self.assertEqual(blobs[0].plaintext_length(), 300)
        for b in blobs[:2]:
            plain = key.decrypt(pack.data[b.offset : b.offset + b.length])
            self.assertEqual(blob_id(plain), b.id)

    def test_stored_pack_header_and_blob_reads(self):
        key = MasterKey.generate()
        backend = MemoryBackend()
        pack, contents = _build_pack(key)
        write_pack(backend, pack)
        self.assertTrue(backend.exists(pack_path(pack.name)))
        self.assertTrue(pack_path(pack.name).startswith(f"data/{pack.name[:2]}/"))
        blobs = read_header(backend, pack.name, key)
        self.assertEqual(blobs, parse_header(pack.data, key))
        b = blobs[1]
        self.assertEqual(read_blob(backend, pack.name, b.offset, b.length, key), contents[1])
        self.assertEqual(read_blob(backend, pack.name, blobs[2].offset, blobs[2].length, key), b"pretend-compressed")

    def test_header_is_encrypted(self):
        key = MasterKey.generate()
        pack, contents = _build_pack(key)
        self.assertNotIn(blob_id(contents[0]), pack.data)

    def test_header_encoding(self):
        blobs = [
            PackedBlob(id=b"\x01" * 32, kind=KIND_DATA, offset=0, length=100),
            PackedBlob(id=b"\x02" * 32, kind=KIND_TREE, offset=100, length=60, uncompressed_length=500),
        ]
        raw = encode_header(blobs)
        self.assertEqual(len(raw), (1 + 4 + 32) + (1 + 4 + 4 + 32))
        self.assertEqual(raw[0], 0)
        self.assertEqual(raw[37], 3)
        self.assertEqual(decode_header(raw), blobs)

    def test_malformed_headers(self):
        with self.assertRaises(PackFormatError):
            decode_header(struct.pack("<BI", 7, 10) + b"\x00" * 32)
        with self.assertRaises(PackFormatError):
            decode_header(struct.pack("<BI", 0, 10) + b"\x00" * 5)

    def test_corrupted_packs(self):
        key = MasterKey.generate()
        pack, _ = _build_pack(key)
        with self.assertRaises(PackFormatError):
            parse_header(b"\x00\x00", key)
        with self.assertRaises(PackFormatError):
            parse_header(b"abc" + struct.pack("<I", 0), key)
        with self.assertRaises(PackFormatError):
            parse_header(b"abc" + struct.pack("<I", 1 << 30), key)
        # flip a byte inside the encrypted header
        data = bytearray(pack.data)
        data[-10] ^= 0xFF
        with self.assertRaises(AuthenticationFailed):
            parse_header(bytes(data), key)
        with self.assertRaises(AuthenticationFailed):
            parse_header(pack.data, MasterKey.generate())

    def test_header_must_cover_blob_area(self):
        key = MasterKey.generate()
        header = key.encrypt(encode_header([PackedBlob(id=b"\x03" * 32, kind=KIND_DATA, offset=0, length=1000)]))
        data = os.urandom(100) + header + struct.pack("<I", len(header))
        with self.assertRaises(PackFormatError):
            parse_header(data, key)

    def test_packer_fills_to_target(self):
        key = MasterKey.generate()
        packer = Packer(key, target_size=1024)
        self.assertFalse(packer.full())
        packer.add(KIND_DATA, blob_id(b"a"), os.urandom(2000))
        self.assertTrue(packer.full())
        self.assertEqual(packer.count(), 1)
        with self.assertRaises(ValueError):
            packer.add(KIND_DATA, b"short id", b"x")
        with self.assertRaises(ValueError):
            packer.add(9, blob_id(b"b"), b"x")


if __name__ == "__main__":
    unittest.main()
