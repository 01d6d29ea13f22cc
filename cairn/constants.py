import os


# Magic and version
KEY_RECORD_MAGIC = "cairn-key"
REPOSITORY_VERSION = 2

KiB = 1024
MiB = 1024 * KiB

# Chunker
CHUNKER_WINDOW_SIZE = 64
CHUNKER_MIN_SIZE = 512 * KiB
CHUNKER_MAX_SIZE = 8 * MiB
CHUNKER_AVERAGE_BITS = 20  # ~1 MiB average chunk
CHUNKER_BUFFER_SIZE = 512 * KiB
POLYNOMIAL_DEGREE = 53
POLYNOMIAL_MAX_TRIES = 1_000_000

# Blob kinds as stored in pack headers (0/1 plain, 2/3 compressed)
KIND_DATA = 0
KIND_TREE = 1
KIND_DATA_COMPRESSED = 2
KIND_TREE_COMPRESSED = 3

BLOB_KIND_NAMES = {KIND_DATA: "data", KIND_TREE: "tree"}

# Pack layout
PACK_TARGET_SIZE = 16 * MiB
PACK_HEADER_LENGTH_SIZE = 4
PACK_MAX_HEADER_ENTRIES = 1 << 20

# Compression modes (repository config)
COMPRESSION_OFF = "off"
COMPRESSION_AUTO = "auto"
COMPRESSION_MAX = "max"
COMPRESSION_MODES = (COMPRESSION_OFF, COMPRESSION_AUTO, COMPRESSION_MAX)
DEFAULT_COMPRESSION = COMPRESSION_AUTO

# Backend object layout
CONFIG_NAME = "config"
KEYS_DIR = "keys"
DATA_DIR = "data"
INDEX_DIR = "index"

ID_SIZE = 32


def new_id() -> str:
    return os.urandom(ID_SIZE).hex()
