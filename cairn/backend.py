"""Blob-store backends.

A backend is a flat namespace of immutable named objects. Names use ``/`` as
separator (``config``, ``keys/<id>``, ``data/ab/<id>``, ``index/<id>``).
``create`` refuses to replace an existing object, which is what makes
repository bootstrap single-shot. Backends never retry; transport failures
surface as BackendUnavailable.
"""

from __future__ import annotations

import logging
import os
import threading
from typing import Dict, Iterator, Optional

from .errors import BackendUnavailable, InvalidRequest, ObjectExists, ObjectNotFound

logger = logging.getLogger(__name__)


class Backend:
    location = ""

    def create(self, name: str, data: bytes) -> None:
        """Store ``data`` under ``name``; raise ObjectExists if taken."""
        raise NotImplementedError

    def read(self, name: str, offset: int = 0, length: Optional[int] = None) -> bytes:
        raise NotImplementedError

    def size(self, name: str) -> int:
        raise NotImplementedError

    def exists(self, name: str) -> bool:
        raise NotImplementedError

    def list(self, prefix: str) -> Iterator[str]:
        """Yield full names of objects below the directory ``prefix``."""
        raise NotImplementedError

    def delete(self, name: str) -> None:
        raise NotImplementedError


def _check_name(name: str) -> None:
    parts = name.split("/")
    if not name or any(p in ("", ".", "..") for p in parts):
        raise ValueError(f"invalid object name: {name!r}")


class LocalBackend(Backend):
    """Objects stored as files below a root directory."""

    def __init__(self, root: str):
        self.root = os.path.abspath(root)
        self.location = root

    def _path(self, name: str) -> str:
        _check_name(name)
        return os.path.join(self.root, *name.split("/"))

    def create(self, name: str, data: bytes) -> None:
        path = self._path(name)
        tmp = f"{path}.tmp-{os.getpid()}-{threading.get_ident()}"
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(tmp, "wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            # link() fails if the target exists, so concurrent creators of the
            # same name cannot overwrite each other.
            os.link(tmp, path)
        except FileExistsError as exc:
            raise ObjectExists(f"{name} already exists") from exc
        except OSError as exc:
            raise BackendUnavailable(f"cannot create {name}: {exc}") from exc
        finally:
            try:
                os.unlink(tmp)
            except FileNotFoundError:
                pass
            except OSError as exc:
                logger.warning("failed to remove temporary file %s: %s", tmp, exc)
        logger.debug("created %s (%d bytes)", name, len(data))

    def read(self, name: str, offset: int = 0, length: Optional[int] = None) -> bytes:
        path = self._path(name)
        try:
            with open(path, "rb") as fh:
                fh.seek(offset)
                data = fh.read() if length is None else fh.read(length)
        except FileNotFoundError as exc:
            raise ObjectNotFound(f"{name} does not exist") from exc
        except OSError as exc:
            raise BackendUnavailable(f"cannot read {name}: {exc}") from exc
        if length is not None and len(data) != length:
            raise BackendUnavailable(f"short read on {name}: wanted {length}, got {len(data)}")
        return data

    def size(self, name: str) -> int:
        try:
            return os.stat(self._path(name)).st_size
        except FileNotFoundError as exc:
            raise ObjectNotFound(f"{name} does not exist") from exc
        except OSError as exc:
            raise BackendUnavailable(f"cannot stat {name}: {exc}") from exc

    def exists(self, name: str) -> bool:
        return os.path.isfile(self._path(name))

    def list(self, prefix: str) -> Iterator[str]:
        base = self._path(prefix)
        if not os.path.isdir(base):
            return
        try:
            for root, dirs, files in os.walk(base):
                dirs.sort()
                for fn in sorted(files):
                    if ".tmp-" in fn:
                        continue
                    rel = os.path.relpath(os.path.join(root, fn), self.root)
                    yield rel.replace(os.sep, "/")
        except OSError as exc:
            raise BackendUnavailable(f"cannot list {prefix}: {exc}") from exc

    def delete(self, name: str) -> None:
        try:
            os.unlink(self._path(name))
        except FileNotFoundError as exc:
            raise ObjectNotFound(f"{name} does not exist") from exc
        except OSError as exc:
            raise BackendUnavailable(f"cannot remove {name}: {exc}") from exc


class MemoryBackend(Backend):
    """Process-local backend, mostly useful in tests."""

    def __init__(self, location: str = "memory"):
        self.location = location
        self._objects: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def create(self, name: str, data: bytes) -> None:
        _check_name(name)
        with self._lock:
            if name in self._objects:
                raise ObjectExists(f"{name} already exists")
            self._objects[name] = bytes(data)

    def read(self, name: str, offset: int = 0, length: Optional[int] = None) -> bytes:
        with self._lock:
            try:
                data = self._objects[name]
            except KeyError as exc:
                raise ObjectNotFound(f"{name} does not exist") from exc
        end = len(data) if length is None else offset + length
        if end > len(data):
            raise BackendUnavailable(f"short read on {name}")
        return data[offset:end]

    def size(self, name: str) -> int:
        return len(self.read(name))

    def exists(self, name: str) -> bool:
        with self._lock:
            return name in self._objects

    def list(self, prefix: str) -> Iterator[str]:
        with self._lock:
            names = sorted(n for n in self._objects if n.startswith(prefix.rstrip("/") + "/"))
        yield from names

    def delete(self, name: str) -> None:
        with self._lock:
            if self._objects.pop(name, None) is None:
                raise ObjectNotFound(f"{name} does not exist")

    def snapshot(self) -> Dict[str, bytes]:
        with self._lock:
            return dict(self._objects)


def open_backend(location: str) -> Backend:
    """Resolve a repository location string to a backend."""
    if not location:
        raise InvalidRequest("repository location must not be empty")
    if location.startswith("local:"):
        return LocalBackend(location[len("local:") :])
    if "://" in location:
        raise InvalidRequest(f"unsupported repository location: {location}")
    return LocalBackend(location)
