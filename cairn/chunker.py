"""Content-defined chunking (FastCDC).

A gear rolling hash is fed one byte at a time; a boundary is declared when the
top bits selected by a mask are all zero. Below the average size a stricter
mask (one more bit) is used and above it a looser one (one bit fewer), which
concentrates chunk sizes around the average ("normalized chunking"). Hashing
starts only after ``min_size`` bytes and a cut is forced at ``max_size``.

The gear table is derived from BLAKE2b with a fixed seed, so boundaries depend
on nothing but the bytes being chunked.
"""

from __future__ import annotations

from typing import Iterator, List, Optional, Tuple

from .config import ChunkerConfig
from .hashutil import gear_value


_GEAR_SEED = b"cairn-fastcdc-gear"
_MASK64 = (1 << 64) - 1

GEAR = tuple(gear_value(_GEAR_SEED, i) for i in range(256))


def _top_bits_mask(bits: int) -> int:
    bits = max(1, min(bits, 63))
    return ((1 << bits) - 1) << (64 - bits)


class Chunker:
    def __init__(self, config: Optional[ChunkerConfig] = None):
        self.config = config or ChunkerConfig()
        bits = max(1, self.config.avg_size.bit_length() - 1)
        self._mask_strict = _top_bits_mask(bits + 1)
        self._mask_loose = _top_bits_mask(bits - 1)

    def _cut(self, data, start: int, end: int) -> int:
        cfg = self.config
        remaining = end - start
        if remaining <= cfg.min_size:
            return end
        limit = start + min(remaining, cfg.max_size)
        normal = start + min(cfg.avg_size, remaining)
        fp = 0
        i = start + cfg.min_size
        gear = GEAR
        mask = self._mask_strict
        while i < normal:
            fp = ((fp << 1) + gear[data[i]]) & _MASK64
            i += 1
            if not fp & mask:
                return i
        mask = self._mask_loose
        while i < limit:
            fp = ((fp << 1) + gear[data[i]]) & _MASK64
            i += 1
            if not fp & mask:
                return i
        return limit

    def chunk(self, data: bytes) -> List[int]:
        """Return the ordered end offsets of the chunks covering ``data``."""
        ends: List[int] = []
        start = 0
        n = len(data)
        while start < n:
            end = self._cut(data, start, n)
            ends.append(end)
            start = end
        return ends

    def iter_chunks(self, data: bytes) -> Iterator[Tuple[int, bytes]]:
        """Yield ``(offset, chunk_bytes)`` pairs in ascending offset order."""
        start = 0
        for end in self.chunk(data):
            yield start, bytes(data[start:end])
            start = end


def chunk(data: bytes, config: Optional[ChunkerConfig] = None) -> List[int]:
    return Chunker(config).chunk(data)
