from __future__ import annotations

import hashlib
from typing import Iterable


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def combined_hash(chunk_hashes: Iterable[str]) -> str:
    """Merkle-style summary of a component: SHA-256 over its chunk hashes.

    The hex digests are concatenated in chunk order and hashed as UTF-8 text,
    so the summary changes whenever any chunk or the chunk order changes.
    """
    return sha256_hex("".join(chunk_hashes).encode("utf-8"))


def gear_value(seed: bytes, index: int) -> int:
    """64-bit pseudo-random table entry derived from BLAKE2b."""
    material = seed + index.to_bytes(4, "little")
    return int.from_bytes(hashlib.blake2b(material, digest_size=8).digest(), "little")
