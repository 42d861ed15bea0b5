class CairnError(Exception):
    """Base class for cairn-specific errors."""


class IoError(CairnError):
    """Read/write/permission failure on a file or on the object store."""


class IntegrityError(CairnError):
    """Decryption/authentication failure or corrupted content."""


class RecursionLimitExceeded(CairnError):
    """Container nesting deeper than the configured limit."""

    def __init__(self, name: str, depth: int, limit: int):
        super().__init__(f"Container nesting depth {depth} exceeds limit {limit} at {name!r}")
        self.name = name
        self.depth = depth
        self.limit = limit


class NotFoundError(CairnError):
    """Referenced blob missing from the store."""

    def __init__(self, key: str):
        super().__init__(f"Blob not found: {key}")
        self.key = key


class SerializationError(CairnError):
    """Manifest could not be serialized or parsed."""


def error_kind(exc: BaseException) -> str:
    """Short name used in report entries for an exception."""
    if isinstance(exc, CairnError):
        return type(exc).__name__
    if isinstance(exc, OSError):
        return IoError.__name__
    return type(exc).__name__
