from __future__ import annotations

import json
import logging
from dataclasses import dataclass

from .backend import Backend
from .constants import (
    COMPRESSION_MODES,
    CONFIG_NAME,
    DEFAULT_COMPRESSION,
    REPOSITORY_VERSION,
    new_id,
)
from .crypto import MasterKey
from .errors import ObjectNotFound, RepositoryBroken, RepositoryNotFound
from .polynomial import format_polynomial, is_irreducible, parse_polynomial

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RepositoryConfig:
    id: str
    version: int
    chunker_polynomial: int
    compression: str = DEFAULT_COMPRESSION

    @classmethod
    def new(cls, chunker_polynomial: int, compression: str = DEFAULT_COMPRESSION) -> "RepositoryConfig":
        return cls(
            id=new_id(),
            version=REPOSITORY_VERSION,
            chunker_polynomial=chunker_polynomial,
            compression=compression,
        )

    def to_json(self) -> bytes:
        doc = {
            "id": self.id,
            "version": self.version,
            "chunker_polynomial": format_polynomial(self.chunker_polynomial),
            "compression": self.compression,
        }
        return json.dumps(doc, sort_keys=True).encode("utf-8")

    @classmethod
    def from_json(cls, raw: bytes) -> "RepositoryConfig":
        try:
            doc = json.loads(raw.decode("utf-8"))
            cfg = cls(
                id=str(doc["id"]),
                version=int(doc["version"]),
                chunker_polynomial=parse_polynomial(str(doc["chunker_polynomial"])),
                compression=str(doc.get("compression", DEFAULT_COMPRESSION)),
            )
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            raise RepositoryBroken(f"malformed repository config: {exc}") from exc
        cfg.validate()
        return cfg

    def validate(self) -> None:
        if self.version != REPOSITORY_VERSION:
            raise RepositoryBroken(f"unsupported repository version {self.version}")
        if not self.id:
            raise RepositoryBroken("repository config has no id")
        if self.compression not in COMPRESSION_MODES:
            raise RepositoryBroken(f"unknown compression mode {self.compression!r}")
        if not is_irreducible(self.chunker_polynomial):
            raise RepositoryBroken("chunker polynomial is not irreducible")


def save_config(backend: Backend, key: MasterKey, cfg: RepositoryConfig) -> None:
    """Write the encrypted config; raises ObjectExists if one is already there."""
    backend.create(CONFIG_NAME, key.encrypt(cfg.to_json()))
    logger.info("wrote config for repository %s", cfg.id[:10])


def load_config(backend: Backend, key: MasterKey) -> RepositoryConfig:
    try:
        payload = backend.read(CONFIG_NAME)
    except ObjectNotFound as exc:
        raise RepositoryNotFound(f"no repository config at {backend.location}") from exc
    return RepositoryConfig.from_json(key.decrypt(payload))
