from __future__ import annotations

import gzip
import zlib
from typing import Optional

from .constants import CODEC_NONE, CODEC_DEFLATE, CODEC_GZIP, DEFAULT_COMPRESSION_LEVEL
from .errors import IntegrityError


class Codec:
    """Stateless compression transform selected by its metadata name."""

    def __init__(self, name: str = CODEC_DEFLATE, level: Optional[int] = None):
        if name not in (CODEC_NONE, CODEC_DEFLATE, CODEC_GZIP):
            raise ValueError(f"unsupported codec: {name}")
        self.name = name
        self.level = level

    @property
    def compresses(self) -> bool:
        return self.name != CODEC_NONE

    def compress(self, data: bytes) -> bytes:
        if self.name == CODEC_NONE:
            return data
        level = self.level if self.level is not None else DEFAULT_COMPRESSION_LEVEL
        if self.name == CODEC_DEFLATE:
            return zlib.compress(data, level)
        # mtime=0 keeps the gzip output a pure function of the input
        return gzip.compress(data, compresslevel=level, mtime=0)

    def decompress(self, data: bytes) -> bytes:
        if self.name == CODEC_NONE:
            return data
        try:
            if self.name == CODEC_DEFLATE:
                return zlib.decompress(data)
            return gzip.decompress(data)
        except (zlib.error, OSError, EOFError) as exc:
            raise IntegrityError(f"{self.name} decompression failed: {exc}") from exc


def compress(data: bytes) -> bytes:
    return Codec().compress(data)


def decompress(data: bytes) -> bytes:
    return Codec().decompress(data)
