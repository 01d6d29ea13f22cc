"""
cairn deduplicating encrypted repository

This package stores byte streams in a content-addressed, encrypted
repository. Current implementation includes:

- Content-defined chunking (Rabin fingerprint, per-repository polynomial)
- Blobs packed into encrypted pack files with an encrypted header directory
- Encrypted, rebuildable blob index (compact TLV)
- Password-protected key records (Argon2id + XChaCha20-Poly1305 via PyCryptodomex)
- One-shot repository bootstrap, optionally copying chunker parameters
- Key management, check and index rebuild via CLI

Security note: the config, key material, pack headers and blob contents are
AEAD-protected. Key hints are stored in clear text.
"""

__version__ = "0.1"

__all__ = [
    "constants",
    "chunker",
    "crypto",
    "repository",
    "bootstrap",
    "cli",
]

# Programmatic API: cairn.bootstrap.initialize / cairn.repository.Repository,
# and the CLI functions in cairn.cli (cmd_init, cmd_store, ...).
