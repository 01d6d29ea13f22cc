from __future__ import annotations

import threading
import unittest

from cairn import tlv
from cairn.backend import MemoryBackend
from cairn.constants import KIND_DATA, KIND_TREE
from cairn.crypto import MasterKey
from cairn.errors import AuthenticationFailed
from cairn.hashutil import blob_id
from cairn.index import Index, IndexEntry
from cairn.pack import Packer, write_pack


def _stored_pack(backend, key, payloads):
    packer = Packer(key)
    for p in payloads:
        packer.add(KIND_DATA, blob_id(p), p)
    pack = packer.finalize()
    write_pack(backend, pack)
    return pack


class ReservationTests(unittest.TestCase):
    def test_reserve_finalize_release(self):
        idx = Index()
        bid = blob_id(b"x")
        self.assertTrue(idx.reserve(bid))
        self.assertFalse(idx.reserve(bid))
        self.assertEqual(idx.in_flight(), 1)
        idx.release(bid)
        self.assertEqual(idx.in_flight(), 0)
        self.assertTrue(idx.reserve(bid))
        entry = IndexEntry(pack="ab" * 32, kind=KIND_DATA, offset=0, length=50)
        idx.finalize(bid, entry)
        self.assertIn(bid, idx)
        self.assertEqual(idx.locate(bid), entry)
        self.assertFalse(idx.reserve(bid))
        self.assertEqual(idx.in_flight(), 0)

    def test_concurrent_reserve_has_one_winner(self):
        idx = Index()
        bid = blob_id(b"contended")
        results = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            results.append(idx.reserve(bid))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        self.assertEqual(results.count(True), 1)

    def test_last_finalize_wins(self):
        idx = Index()
        bid = blob_id(b"dup")
        idx.record(bid, IndexEntry(pack="a" * 64, kind=KIND_DATA, offset=0, length=50))
        idx.finalize(bid, IndexEntry(pack="b" * 64, kind=KIND_DATA, offset=0, length=50))
        self.assertEqual(len(idx), 1)
        self.assertEqual(idx.locate(bid).pack, "b" * 64)


class PersistenceTests(unittest.TestCase):
    def test_encode_decode(self):
        idx = Index()
        a, b = blob_id(b"a"), blob_id(b"b")
        idx.record(a, IndexEntry(pack="aa" * 32, kind=KIND_DATA, offset=0, length=60))
        idx.record(b, IndexEntry(pack="aa" * 32, kind=KIND_TREE, offset=60, length=70, uncompressed_length=200))
        restored = Index.decode(idx.encode())
        self.assertEqual(dict(restored.items()), dict(idx.items()))

    def test_decode_rejects_garbage(self):
        with self.assertRaises(ValueError):
            Index.decode(b"\x01")
        with self.assertRaises(ValueError):
            tlv.loads_index(tlv._tlv(1, tlv._varint_encode(99)))
        body = tlv.dumps_index({"aa" * 32: [{"id": b"\x01" * 32, "kind": 0, "offset": 0, "length": 50}] * 3})
        with self.assertRaises(ValueError):
            tlv.loads_index(body, max_blobs=2)

    def test_save_and_load(self):
        backend = MemoryBackend()
        key = MasterKey.generate()
        pack = _stored_pack(backend, key, [b"one", b"two"])
        idx = Index()
        idx.record_pack(pack.name, pack.blobs)
        name = idx.save(backend, key)
        self.assertTrue(name.startswith("index/"))
        loaded = Index.load(backend, key)
        self.assertEqual(dict(loaded.items()), dict(idx.items()))
        self.assertEqual(loaded.packs(), {pack.name})
        with self.assertRaises(AuthenticationFailed):
            Index.load(backend, MasterKey.generate())

    def test_load_merges_index_files(self):
        backend = MemoryBackend()
        key = MasterKey.generate()
        p1 = _stored_pack(backend, key, [b"one"])
        p2 = _stored_pack(backend, key, [b"two"])
        for p in (p1, p2):
            part = Index()
            part.record_pack(p.name, p.blobs)
            part.save(backend, key)
        loaded = Index.load(backend, key)
        self.assertEqual(len(loaded), 2)
        self.assertEqual(loaded.packs(), {p1.name, p2.name})

    def test_rebuild_from_pack_headers(self):
        backend = MemoryBackend()
        key = MasterKey.generate()
        p1 = _stored_pack(backend, key, [b"one", b"two"])
        p2 = _stored_pack(backend, key, [b"three"])
        rebuilt = Index.rebuild(backend, key)
        self.assertEqual(len(rebuilt), 3)
        self.assertEqual(rebuilt.locate(blob_id(b"three")).pack, p2.name)
        entry = rebuilt.locate(blob_id(b"two"))
        self.assertEqual(entry.pack, p1.name)
        self.assertEqual(entry.offset, p1.blobs[1].offset)


if __name__ == "__main__":
    unittest.main()
