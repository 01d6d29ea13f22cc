"""One-shot repository initialization.

A location is in exactly one state: absent (no config, no keys), valid
(config plus at least one key) or broken (keys without config). ``initialize``
only ever moves a location from absent to valid. The key record is written
first and the config last with an exclusive create; if the config cannot be
written the key record is removed again, so an interrupted or losing
initializer leaves the location as it found it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Optional

from .backend import Backend
from .config import RepositoryConfig, save_config
from .constants import COMPRESSION_MODES, CONFIG_NAME, DEFAULT_COMPRESSION, KEYS_DIR
from .crypto import KDFParams, seal
from .errors import (
    AlreadyInitialized,
    CairnError,
    InvalidRequest,
    ObjectExists,
    ObjectNotFound,
    RepositoryBroken,
)
from .polynomial import random_polynomial
from .repository import CancelToken, Repository, check_cancel, key_path, store_key

logger = logging.getLogger(__name__)

__all__ = ["CancelToken", "SecondarySource", "initialize", "resolve_polynomial", "validate_copy_options"]


@dataclass
class SecondarySource:
    """An existing repository to copy chunker parameters from."""

    backend: Backend
    password: str


def validate_copy_options(has_secondary: bool, copy_chunker_params: bool) -> None:
    if copy_chunker_params and not has_secondary:
        raise InvalidRequest("copying chunker parameters requires a secondary repository")
    if has_secondary and not copy_chunker_params:
        raise InvalidRequest(
            "secondary repository must only be specified when copying the chunker parameters"
        )


def _validate_request(
    secondary: Optional[SecondarySource], copy_chunker_params: bool, compression: str, password: str
) -> None:
    validate_copy_options(secondary is not None, copy_chunker_params)
    if compression not in COMPRESSION_MODES:
        raise InvalidRequest(f"unknown compression mode: {compression}")
    if not password:
        raise InvalidRequest("an empty password is not allowed")


def _check_absent(backend: Backend) -> None:
    if backend.exists(CONFIG_NAME):
        raise AlreadyInitialized(f"config file already exists at {backend.location}")
    if any(True for _ in backend.list(KEYS_DIR)):
        raise RepositoryBroken(
            f"{backend.location} holds key records but no config; remove them before initializing"
        )


def resolve_polynomial(
    secondary: Optional[SecondarySource], cancel: Optional[CancelToken] = None
) -> int:
    if secondary is None:
        return random_polynomial()
    other = Repository.open(secondary.backend, secondary.password, cancel=cancel, load_index=False)
    logger.info(
        "copying chunker polynomial from repository %s at %s", other.config.id[:10], secondary.backend.location
    )
    return other.config.chunker_polynomial


def initialize(
    backend: Backend,
    password: str,
    *,
    secondary: Optional[SecondarySource] = None,
    copy_chunker_params: bool = False,
    compression: str = DEFAULT_COMPRESSION,
    kdf_params: Optional[KDFParams] = None,
    hint: Optional[Dict[str, str]] = None,
    cancel: Optional[CancelToken] = None,
    **repo_kwargs,
) -> Repository:
    """Create a new repository at ``backend`` and return it unlocked."""
    _validate_request(secondary, copy_chunker_params, compression, password)
    _check_absent(backend)
    check_cancel(cancel)

    pol = resolve_polynomial(secondary, cancel)
    check_cancel(cancel)

    config = RepositoryConfig.new(pol, compression)
    master_key, record = seal(None, password, kdf_params, hint)
    check_cancel(cancel)

    key_name = store_key(backend, record)
    try:
        check_cancel(cancel)
        save_config(backend, master_key, config)
    except ObjectExists as exc:
        _discard_key(backend, key_name)
        raise AlreadyInitialized(f"config file already exists at {backend.location}") from exc
    except BaseException:
        _discard_key(backend, key_name)
        raise
    logger.info("created repository %s at %s", config.id[:10], backend.location)
    return Repository(backend, master_key, config, key_name=key_name, **repo_kwargs)


def _discard_key(backend: Backend, key_name: str) -> None:
    try:
        backend.delete(key_path(key_name))
    except ObjectNotFound:
        pass
    except CairnError as exc:
        # The location now holds a key without config and reads as broken.
        logger.error("failed to remove key %s after aborted initialization: %s", key_name[:10], exc)
