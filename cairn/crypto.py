from __future__ import annotations

import base64
import getpass
import json
import os
import socket
import time
from dataclasses import dataclass, field
from typing import Dict, Optional

from argon2.low_level import Type as _ArgonType, hash_secret_raw as _argon_hash
from Cryptodome.Cipher import ChaCha20_Poly1305

from .constants import KEY_RECORD_MAGIC
from .errors import AuthenticationFailed, InvalidRequest


NONCE_SIZE = 24  # XChaCha20-Poly1305
TAG_SIZE = 16
KEY_SIZE = 32
SALT_SIZE = 16

KDF_ALGORITHM = "argon2id"


@dataclass(frozen=True)
class KDFParams:
    time_cost: int
    memory_cost_kib: int
    parallelism: int


# "minimal" exists for tests and very small machines only.
KDF_PROFILES: Dict[str, KDFParams] = {
    "minimal": KDFParams(time_cost=1, memory_cost_kib=1024, parallelism=1),
    "interactive": KDFParams(time_cost=2, memory_cost_kib=64 * 1024, parallelism=4),
    "balanced": KDFParams(time_cost=3, memory_cost_kib=256 * 1024, parallelism=4),
    "archival": KDFParams(time_cost=4, memory_cost_kib=1024 * 1024, parallelism=4),
}
DEFAULT_KDF_PROFILE = "balanced"

# Bounds applied before deriving so a hostile key record cannot demand
# unbounded memory or time.
_MAX_TIME_COST = 64
_MAX_MEMORY_COST_KIB = 4 * 1024 * 1024
_MAX_PARALLELISM = 64


def _params_ok(params: KDFParams) -> bool:
    return (
        1 <= params.time_cost <= _MAX_TIME_COST
        and 1 <= params.parallelism <= _MAX_PARALLELISM
        and 8 * params.parallelism <= params.memory_cost_kib <= _MAX_MEMORY_COST_KIB
    )


def derive(password: str, salt: bytes, params: KDFParams) -> bytes:
    """Argon2id stretch of ``password`` into a 32-byte key."""
    return _argon_hash(
        password.encode("utf-8"),
        salt,
        time_cost=params.time_cost,
        memory_cost=params.memory_cost_kib,
        parallelism=params.parallelism,
        hash_len=KEY_SIZE,
        type=_ArgonType.ID,
    )


def _aead_seal(key: bytes, plaintext: bytes, aad: bytes):
    nonce = os.urandom(NONCE_SIZE)
    cipher = ChaCha20_Poly1305.new(key=key, nonce=nonce)
    if aad:
        cipher.update(aad)
    ciphertext, tag = cipher.encrypt_and_digest(plaintext)
    return nonce, ciphertext, tag


def _aead_open(key: bytes, nonce: bytes, ciphertext: bytes, tag: bytes, aad: bytes) -> bytes:
    if len(nonce) != NONCE_SIZE or len(tag) != TAG_SIZE:
        raise AuthenticationFailed("malformed nonce or authentication tag")
    cipher = ChaCha20_Poly1305.new(key=key, nonce=nonce)
    if aad:
        cipher.update(aad)
    try:
        return cipher.decrypt_and_verify(ciphertext, tag)
    except ValueError as exc:
        raise AuthenticationFailed("ciphertext verification failed") from exc


class MasterKey:
    """Repository master key material: an AEAD key plus a signing key.

    Every encryption draws a fresh random 24-byte nonce, so the same key can
    seal any number of blobs, headers and config objects.
    """

    SIZE = 2 * KEY_SIZE

    def __init__(self, encryption_key: bytes, signing_key: bytes):
        if len(encryption_key) != KEY_SIZE or len(signing_key) != KEY_SIZE:
            raise ValueError("master key parts must be 32 bytes each")
        self.encryption_key = encryption_key
        self.signing_key = signing_key

    @classmethod
    def generate(cls) -> "MasterKey":
        return cls(os.urandom(KEY_SIZE), os.urandom(KEY_SIZE))

    @classmethod
    def from_bytes(cls, raw: bytes) -> "MasterKey":
        if len(raw) != cls.SIZE:
            raise AuthenticationFailed("master key material has the wrong size")
        return cls(raw[:KEY_SIZE], raw[KEY_SIZE:])

    def to_bytes(self) -> bytes:
        return self.encryption_key + self.signing_key

    def encrypt(self, plaintext: bytes, aad: bytes = b"") -> bytes:
        nonce, ciphertext, tag = _aead_seal(self.encryption_key, plaintext, aad)
        return nonce + ciphertext + tag

    def decrypt(self, payload: bytes, aad: bytes = b"") -> bytes:
        if len(payload) < self.overhead():
            raise AuthenticationFailed("encrypted payload too short")
        nonce = payload[:NONCE_SIZE]
        tag = payload[-TAG_SIZE:]
        ciphertext = payload[NONCE_SIZE:-TAG_SIZE]
        return _aead_open(self.encryption_key, nonce, ciphertext, tag, aad)

    @staticmethod
    def overhead() -> int:
        return NONCE_SIZE + TAG_SIZE


def default_hint() -> Dict[str, str]:
    try:
        username = getpass.getuser()
    except (KeyError, OSError):
        username = ""
    return {
        "hostname": socket.gethostname(),
        "username": username,
        "created": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
    }


@dataclass
class KeyRecord:
    kdf_algorithm: str
    kdf_params: KDFParams
    salt: bytes
    nonce: bytes
    encrypted_master_key: bytes
    authentication_tag: bytes
    hint: Dict[str, str] = field(default_factory=dict)

    def associated_data(self) -> bytes:
        # Binds algorithm, cost parameters and salt into the tag; the hint
        # stays unauthenticated.
        p = self.kdf_params
        head = f"{KEY_RECORD_MAGIC}|{self.kdf_algorithm}|{p.time_cost}|{p.memory_cost_kib}|{p.parallelism}|"
        return head.encode("ascii") + self.salt

    def to_json(self) -> bytes:
        doc = {
            "kdf_algorithm": self.kdf_algorithm,
            "kdf_cost_parameters": {
                "time_cost": self.kdf_params.time_cost,
                "memory_cost_kib": self.kdf_params.memory_cost_kib,
                "parallelism": self.kdf_params.parallelism,
            },
            "salt": base64.b64encode(self.salt).decode("ascii"),
            "nonce": base64.b64encode(self.nonce).decode("ascii"),
            "encrypted_master_key_material": base64.b64encode(self.encrypted_master_key).decode("ascii"),
            "authentication_tag": base64.b64encode(self.authentication_tag).decode("ascii"),
            "hint": dict(self.hint),
        }
        return json.dumps(doc, sort_keys=True, indent=2).encode("utf-8")

    @classmethod
    def from_json(cls, raw: bytes) -> "KeyRecord":
        try:
            doc = json.loads(raw.decode("utf-8"))
            cost = doc["kdf_cost_parameters"]
            return cls(
                kdf_algorithm=str(doc["kdf_algorithm"]),
                kdf_params=KDFParams(
                    time_cost=int(cost["time_cost"]),
                    memory_cost_kib=int(cost["memory_cost_kib"]),
                    parallelism=int(cost["parallelism"]),
                ),
                salt=base64.b64decode(doc["salt"]),
                nonce=base64.b64decode(doc["nonce"]),
                encrypted_master_key=base64.b64decode(doc["encrypted_master_key_material"]),
                authentication_tag=base64.b64decode(doc["authentication_tag"]),
                hint={str(k): str(v) for k, v in (doc.get("hint") or {}).items()},
            )
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise AuthenticationFailed(f"malformed key record: {exc}") from exc


def seal(
    master_key: Optional[MasterKey],
    password: str,
    params: Optional[KDFParams] = None,
    hint: Optional[Dict[str, str]] = None,
) -> tuple[MasterKey, KeyRecord]:
    """Protect ``master_key`` under ``password``.

    Passing ``master_key=None`` generates fresh material (first key of a new
    repository); otherwise the existing key is wrapped again for an added
    password. Returns the master key together with the new record.
    """
    params = params or KDF_PROFILES[DEFAULT_KDF_PROFILE]
    if not _params_ok(params):
        raise InvalidRequest("unsupported Argon2 parameters")
    if master_key is None:
        master_key = MasterKey.generate()
    salt = os.urandom(SALT_SIZE)
    record = KeyRecord(
        kdf_algorithm=KDF_ALGORITHM,
        kdf_params=params,
        salt=salt,
        nonce=b"",
        encrypted_master_key=b"",
        authentication_tag=b"",
        hint=dict(hint) if hint is not None else default_hint(),
    )
    wrapping_key = derive(password, salt, params)
    nonce, ciphertext, tag = _aead_seal(wrapping_key, master_key.to_bytes(), record.associated_data())
    record.nonce = nonce
    record.encrypted_master_key = ciphertext
    record.authentication_tag = tag
    return master_key, record


def unlock(record: KeyRecord, password: str) -> MasterKey:
    """Recover the master key from ``record``; raises AuthenticationFailed."""
    if record.kdf_algorithm != KDF_ALGORITHM:
        raise AuthenticationFailed(f"unsupported KDF algorithm {record.kdf_algorithm!r}")
    if not _params_ok(record.kdf_params):
        raise AuthenticationFailed("key record has unsupported Argon2 parameters")
    wrapping_key = derive(password, record.salt, record.kdf_params)
    raw = _aead_open(
        wrapping_key,
        record.nonce,
        record.encrypted_master_key,
        record.authentication_tag,
        record.associated_data(),
    )
    return MasterKey.from_bytes(raw)
