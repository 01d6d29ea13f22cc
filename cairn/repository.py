from __future__ import annotations

import concurrent.futures as _fut
import logging
import threading
from typing import BinaryIO, Dict, Iterable, List, Optional, Tuple

from .backend import Backend
from .chunker import Chunker
from .codec import Codec
from .config import RepositoryConfig, load_config
from .constants import CONFIG_NAME, DATA_DIR, KEYS_DIR, KIND_DATA, PACK_TARGET_SIZE
from .crypto import KDFParams, KeyRecord, MasterKey, seal, unlock
from .errors import (
    AuthenticationFailed,
    BlobNotFound,
    Cancelled,
    CairnError,
    InvalidRequest,
    ObjectNotFound,
    PackFormatError,
    RepositoryBroken,
    RepositoryNotFound,
)
from .hashutil import blob_id as _blob_id, file_id, object_name
from .index import Index, entry_for
from .pack import Packer, pack_path, parse_header, read_blob, write_pack

logger = logging.getLogger(__name__)


class CancelToken:
    """Cooperative cancellation flag shared with long-running operations."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self) -> None:
        if self._event.is_set():
            raise Cancelled("operation cancelled")


def check_cancel(cancel: Optional[CancelToken]) -> None:
    if cancel is not None:
        cancel.check()


def key_path(name: str) -> str:
    return f"{KEYS_DIR}/{name}"


def store_key(backend: Backend, record: KeyRecord) -> str:
    raw = record.to_json()
    name = file_id(raw)
    backend.create(key_path(name), raw)
    return name


def find_key(
    backend: Backend, password: str, cancel: Optional[CancelToken] = None
) -> Tuple[str, MasterKey]:
    """Try every key record; return the first one ``password`` unlocks."""
    tried = 0
    for path in backend.list(KEYS_DIR):
        check_cancel(cancel)
        name = path.rsplit("/", 1)[-1]
        tried += 1
        try:
            return name, unlock(KeyRecord.from_json(backend.read(path)), password)
        except AuthenticationFailed:
            logger.debug("key %s does not match", name[:10])
            continue
    if tried == 0:
        raise RepositoryBroken(f"no key records at {backend.location}")
    raise AuthenticationFailed("wrong password or no key found")


class Repository:
    """An unlocked repository: config, master key, index and packers.

    Blobs saved here are buffered in packers; call ``flush`` (or use the
    repository as a context manager) to upload partially filled packs and
    persist the index.
    """

    def __init__(
        self,
        backend: Backend,
        key: MasterKey,
        config: RepositoryConfig,
        *,
        key_name: Optional[str] = None,
        pack_size: int = PACK_TARGET_SIZE,
        chunker_bounds: Optional[Dict[str, int]] = None,
    ):
        self.backend = backend
        self.key = key
        self.config = config
        self.key_name = key_name
        self.pack_size = pack_size
        self.chunker_bounds = dict(chunker_bounds or {})
        self.index = Index()
        self.codec = Codec(config.compression)
        self._idle_packers: List[Packer] = []
        self._pool_lock = threading.Lock()
        self._unsaved: List[Tuple[str, list]] = []

    @classmethod
    def open(
        cls,
        backend: Backend,
        password: str,
        *,
        cancel: Optional[CancelToken] = None,
        load_index: bool = True,
        **kwargs,
    ) -> "Repository":
        if not backend.exists(CONFIG_NAME):
            if any(True for _ in backend.list(KEYS_DIR)):
                raise RepositoryBroken(f"repository at {backend.location} has keys but no config")
            raise RepositoryNotFound(f"no repository at {backend.location}")
        key_name, key = find_key(backend, password, cancel)
        check_cancel(cancel)
        config = load_config(backend, key)
        repo = cls(backend, key, config, key_name=key_name, **kwargs)
        if load_index:
            repo.load_index()
        logger.info("opened repository %s at %s", config.id[:10], backend.location)
        return repo

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is None:
            self.flush()

    # chunking

    def chunker(self, reader: Optional[BinaryIO] = None) -> Chunker:
        return Chunker(self.config.chunker_polynomial, reader, **self.chunker_bounds)

    # blobs

    def save_blob(self, kind: int, data: bytes) -> Tuple[bytes, bool]:
        """Store ``data`` unless an identical blob is stored or in flight.

        Returns ``(id, stored)``; ``stored`` is False for a duplicate.
        """
        blob_id = _blob_id(data)
        if not self.index.reserve(blob_id):
            logger.debug("blob %s already known", blob_id.hex()[:10])
            return blob_id, False
        try:
            payload, ulen = self.codec.compress(data)
            packer = self._take_packer()
        except BaseException:
            self.index.release(blob_id)
            raise
        try:
            packer.add(kind, blob_id, payload, ulen)
        except BaseException:
            self.index.release(blob_id)
            self._return_packer(packer)
            raise
        if packer.full():
            self._upload(packer)
        else:
            self._return_packer(packer)
        return blob_id, True

    def save_stream(self, reader: BinaryIO, kind: int = KIND_DATA) -> List[bytes]:
        """Chunk ``reader`` and save every chunk; returns the ordered ids."""
        ids: List[bytes] = []
        for chunk in self.chunker(reader):
            blob_id, _ = self.save_blob(kind, chunk.data)
            ids.append(blob_id)
        return ids

    def save_streams(self, readers: Iterable[BinaryIO], jobs: int = 4) -> List[List[bytes]]:
        """Chunk independent streams in parallel; results keep input order."""
        readers = list(readers)
        with _fut.ThreadPoolExecutor(max_workers=max(1, jobs)) as ex:
            return list(ex.map(self.save_stream, readers))

    def load_blob(self, kind: int, blob_id: bytes) -> bytes:
        entry = self.index.locate(blob_id)
        if entry is None:
            raise BlobNotFound(f"blob {blob_id.hex()} not found in index")
        if entry.kind != kind:
            raise BlobNotFound(f"blob {blob_id.hex()} has kind {entry.kind}, not {kind}")
        payload = read_blob(self.backend, entry.pack, entry.offset, entry.length, self.key)
        data = self.codec.decompress(payload, entry.uncompressed_length)
        if _blob_id(data) != blob_id:
            raise PackFormatError(f"blob {blob_id.hex()} content does not match its id")
        return data

    # packers

    def _take_packer(self) -> Packer:
        with self._pool_lock:
            if self._idle_packers:
                return self._idle_packers.pop()
        return Packer(self.key, self.pack_size)

    def _return_packer(self, packer: Packer) -> None:
        with self._pool_lock:
            self._idle_packers.append(packer)

    def _upload(self, packer: Packer) -> None:
        pack = packer.finalize()
        try:
            write_pack(self.backend, pack)
        except BaseException:
            for b in pack.blobs:
                self.index.release(b.id)
            raise
        for b in pack.blobs:
            self.index.finalize(b.id, entry_for(pack.name, b))
        with self._pool_lock:
            self._unsaved.append((pack.name, pack.blobs))

    def flush(self) -> Optional[str]:
        """Upload buffered packers and save an index covering new packs."""
        with self._pool_lock:
            packers, self._idle_packers = self._idle_packers, []
        for n, packer in enumerate(packers):
            if not packer.count():
                continue
            try:
                self._upload(packer)
            except BaseException:
                # packers not yet attempted keep their blobs for the next flush
                with self._pool_lock:
                    self._idle_packers.extend(packers[n + 1 :])
                raise
        return self.save_index()

    # index

    def save_index(self) -> Optional[str]:
        with self._pool_lock:
            unsaved, self._unsaved = self._unsaved, []
        if not unsaved:
            return None
        part = Index()
        for name, blobs in unsaved:
            part.record_pack(name, blobs)
        return part.save(self.backend, self.key)

    def load_index(self) -> None:
        self.index.merge(Index.load(self.backend, self.key))

    def rebuild_index(self, *, save: bool = True) -> Index:
        """Replace the index with one rebuilt from pack headers."""
        fresh = Index.rebuild(self.backend, self.key)
        self.index = fresh
        if save and len(fresh):
            fresh.save(self.backend, self.key)
        return fresh

    def check(self, *, read_data: bool = True) -> List[str]:
        """Re-read every pack; returns a list of problems (empty when clean)."""
        problems: List[str] = []
        for path in self.backend.list(DATA_DIR):
            name = path.rsplit("/", 1)[-1]
            try:
                data = self.backend.read(pack_path(name))
                if object_name(self.key.signing_key, data) != name:
                    problems.append(f"pack {name}: contents do not match name")
                    continue
                blobs = parse_header(data, self.key)
            except CairnError as exc:
                problems.append(f"pack {name}: {exc}")
                continue
            if not read_data:
                continue
            for b in blobs:
                try:
                    payload = self.key.decrypt(data[b.offset : b.offset + b.length])
                    raw = self.codec.decompress(payload, b.uncompressed_length)
                except CairnError as exc:
                    problems.append(f"pack {name}: blob {b.id.hex()[:10]}: {exc}")
                    continue
                if _blob_id(raw) != b.id:
                    problems.append(f"pack {name}: blob {b.id.hex()[:10]} does not match its id")
        return problems

    # keys

    def add_key(
        self, password: str, *, kdf_params: Optional[KDFParams] = None, hint: Optional[Dict[str, str]] = None
    ) -> str:
        if not password:
            raise InvalidRequest("an empty password is not allowed")
        _, record = seal(self.key, password, kdf_params, hint)
        name = store_key(self.backend, record)
        logger.info("added key %s", name[:10])
        return name

    def list_keys(self) -> List[Tuple[str, Dict[str, str]]]:
        out: List[Tuple[str, Dict[str, str]]] = []
        for path in self.backend.list(KEYS_DIR):
            name = path.rsplit("/", 1)[-1]
            out.append((name, KeyRecord.from_json(self.backend.read(path)).hint))
        return out

    def remove_key(self, name: str) -> None:
        if name == self.key_name:
            raise InvalidRequest("refusing to remove the key currently in use")
        try:
            self.backend.delete(key_path(name))
        except ObjectNotFound as exc:
            raise InvalidRequest(f"no key named {name}") from exc
        logger.info("removed key %s", name[:10])
