import uuid


# Object store key namespaces
MANIFEST_PREFIX = "manifests/"
CHUNK_PREFIX = "chunks/"
COMPONENT_PREFIX = "components/"

# Blob metadata keys (side-channel, never part of the address)
META_ENCODING = "encoding"
META_ENCRYPTION = "encryption"
META_ORIGINAL_SIZE = "originalSize"
META_MAC = "mac"
META_KDF_ITERATIONS = "kdfIterations"

# Codec names as recorded in blob metadata
CODEC_NONE = "none"
CODEC_DEFLATE = "deflate"
CODEC_GZIP = "gzip"
DEFAULT_CODEC = CODEC_DEFLATE
DEFAULT_COMPRESSION_LEVEL = 9

# Cipher schemes as recorded in blob metadata
CIPHER_NONE = "none"
CIPHER_AES_CBC = "aes256"
CIPHER_AES_GCM = "aes256-gcm"
DEFAULT_CIPHER = CIPHER_AES_CBC

# Key derivation (PBKDF2-HMAC-SHA256)
SALT_SIZE = 16
IV_SIZE = 16
TAG_SIZE = 16
KEY_SIZE = 32
MAC_SIZE = 32
MAC_HMAC_SHA256 = "hmac-sha256"
KDF_ITERATIONS = 100_000

# Content-defined chunking (FastCDC defaults)
DEFAULT_MIN_CHUNK = 2 * 1024
DEFAULT_AVG_CHUNK = 8 * 1024
DEFAULT_MAX_CHUNK = 64 * 1024

# Container signatures
ZIP_MAGICS = (b"PK\x03\x04", b"PK\x05\x06", b"PK\x07\x08")
GZIP_MAGIC = b"\x1f\x8b"
MTF_MAGIC = b"TAPE"     # Microsoft Tape Format header used by SQL Server .bak
LEGACY_BAK_MAGIC = b"BAK"

ARCHIVE_EXTENSIONS = (".zip", ".gz", ".gzip", ".tgz", ".bak", ".7z", ".rar")
OFFICE_EXTENSIONS = (
    ".docx", ".dotx", ".docm",
    ".xlsx", ".xltx", ".xlsm",
    ".pptx", ".potx", ".pptm",
)

MAX_CONTAINER_DEPTH = 10

# Manifest key layout: manifests/backup_<YYYYmmdd_HHMMSS>_<id>.json
MANIFEST_KEY_TIME_FORMAT = "%Y%m%d_%H%M%S"


def new_manifest_id() -> str:
    return str(uuid.uuid4())
