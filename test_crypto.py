from __future__ import annotations

import json
import unittest

from cairn.codec import Codec
from cairn.crypto import (
    KDF_PROFILES,
    NONCE_SIZE,
    KDFParams,
    KeyRecord,
    MasterKey,
    seal,
    unlock,
)
from cairn.errors import AuthenticationFailed, InvalidRequest, PackFormatError
from cairn.hashutil import blob_id, object_name


FAST = KDF_PROFILES["minimal"]
HINT = {"hostname": "host", "username": "user", "created": "2026-01-01T00:00:00Z"}


class MasterKeyTests(unittest.TestCase):
    def test_encrypt_decrypt_roundtrip(self):
        key = MasterKey.generate()
        payload = key.encrypt(b"chunk contents")
        self.assertEqual(len(payload), len(b"chunk contents") + MasterKey.overhead())
        self.assertEqual(key.decrypt(payload), b"chunk contents")

    def test_fresh_nonce_per_encryption(self):
        key = MasterKey.generate()
        a = key.encrypt(b"same")
        b = key.encrypt(b"same")
        self.assertNotEqual(a[:NONCE_SIZE], b[:NONCE_SIZE])
        self.assertNotEqual(a, b)

    def test_tampering_is_rejected(self):
        key = MasterKey.generate()
        payload = bytearray(key.encrypt(b"important bytes"))
        for pos in (0, NONCE_SIZE + 2, len(payload) - 1):
            flipped = bytearray(payload)
            flipped[pos] ^= 0x01
            with self.assertRaises(AuthenticationFailed):
                key.decrypt(bytes(flipped))
        with self.assertRaises(AuthenticationFailed):
            key.decrypt(b"short")
        with self.assertRaises(AuthenticationFailed):
            MasterKey.generate().decrypt(bytes(payload))

    def test_associated_data_is_bound(self):
        key = MasterKey.generate()
        payload = key.encrypt(b"x", aad=b"context-a")
        self.assertEqual(key.decrypt(payload, aad=b"context-a"), b"x")
        with self.assertRaises(AuthenticationFailed):
            key.decrypt(payload, aad=b"context-b")

    def test_serialization(self):
        key = MasterKey.generate()
        self.assertEqual(MasterKey.from_bytes(key.to_bytes()).to_bytes(), key.to_bytes())
        with self.assertRaises(AuthenticationFailed):
            MasterKey.from_bytes(b"\x00" * 10)


class KeyRecordTests(unittest.TestCase):
    def test_seal_unlock_roundtrip(self):
        key, record = seal(None, "pw1", FAST, HINT)
        restored = KeyRecord.from_json(record.to_json())
        self.assertEqual(unlock(restored, "pw1").to_bytes(), key.to_bytes())
        self.assertEqual(restored.hint, HINT)
        self.assertEqual(restored.kdf_params, FAST)

    def test_rewrap_existing_key(self):
        key, _ = seal(None, "pw1", FAST, HINT)
        same, record = seal(key, "pw2", FAST, HINT)
        self.assertIs(same, key)
        self.assertEqual(unlock(record, "pw2").to_bytes(), key.to_bytes())

    def test_wrong_password(self):
        _, record = seal(None, "pw1", FAST, HINT)
        with self.assertRaises(AuthenticationFailed):
            unlock(record, "pw2")

    def test_kdf_parameters_are_authenticated(self):
        _, record = seal(None, "pw1", FAST, HINT)
        doc = json.loads(record.to_json())
        doc["kdf_cost_parameters"]["time_cost"] = 2
        with self.assertRaises(AuthenticationFailed):
            unlock(KeyRecord.from_json(json.dumps(doc).encode()), "pw1")

    def test_salt_is_authenticated(self):
        _, record = seal(None, "pw1", FAST, HINT)
        record.salt = bytes(b ^ 1 for b in record.salt)
        with self.assertRaises(AuthenticationFailed):
            unlock(record, "pw1")

    def test_hint_is_not_authenticated(self):
        key, record = seal(None, "pw1", FAST, HINT)
        record.hint = {"hostname": "elsewhere"}
        self.assertEqual(unlock(record, "pw1").to_bytes(), key.to_bytes())

    def test_record_fields(self):
        _, record = seal(None, "pw1", FAST, HINT)
        doc = json.loads(record.to_json())
        for field in (
            "kdf_algorithm",
            "kdf_cost_parameters",
            "salt",
            "nonce",
            "encrypted_master_key_material",
            "authentication_tag",
            "hint",
        ):
            self.assertIn(field, doc)
        self.assertEqual(doc["kdf_algorithm"], "argon2id")
        self.assertNotIn("pw1", record.to_json().decode())

    def test_malformed_record(self):
        with self.assertRaises(AuthenticationFailed):
            KeyRecord.from_json(b"not json")
        with self.assertRaises(AuthenticationFailed):
            KeyRecord.from_json(b'{"kdf_algorithm": "argon2id"}')

    def test_unsupported_parameters(self):
        with self.assertRaises(InvalidRequest):
            seal(None, "pw", KDFParams(time_cost=0, memory_cost_kib=1024, parallelism=1))
        _, record = seal(None, "pw", FAST, HINT)
        record.kdf_params = KDFParams(time_cost=1, memory_cost_kib=64 * 1024 * 1024, parallelism=1)
        with self.assertRaises(AuthenticationFailed):
            unlock(record, "pw")

    def test_default_hint(self):
        _, record = seal(None, "pw", FAST)
        self.assertIn("hostname", record.hint)
        self.assertIn("created", record.hint)


class HashAndCodecTests(unittest.TestCase):
    def test_blob_id_and_object_name(self):
        self.assertEqual(len(blob_id(b"abc")), 32)
        self.assertEqual(blob_id(b"abc"), blob_id(b"abc"))
        k1 = MasterKey.generate().signing_key
        k2 = MasterKey.generate().signing_key
        self.assertNotEqual(object_name(k1, b"abc"), object_name(k2, b"abc"))
        self.assertEqual(len(object_name(k1, b"abc")), 64)

    def test_codec_modes(self):
        text = b"compressible " * 500
        payload, ulen = Codec("auto").compress(text)
        self.assertEqual(ulen, len(text))
        self.assertLess(len(payload), len(text))
        self.assertEqual(Codec.decompress(payload, ulen), text)

        payload, ulen = Codec("off").compress(text)
        self.assertIsNone(ulen)
        self.assertEqual(payload, text)

        incompressible = bytes(range(7))
        payload, ulen = Codec("max").compress(incompressible)
        self.assertIsNone(ulen)
        self.assertEqual(payload, incompressible)

    def test_codec_errors(self):
        with self.assertRaises(InvalidRequest):
            Codec("zstd-ultra")
        with self.assertRaises(PackFormatError):
            Codec.decompress(b"not zlib", 10)
        payload, ulen = Codec("auto").compress(b"a" * 1000)
        with self.assertRaises(PackFormatError):
            Codec.decompress(payload, ulen + 1)


if __name__ == "__main__":
    unittest.main()
