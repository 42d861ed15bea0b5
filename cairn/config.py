"""Configuration for backup and recovery runs.

Defaults live in :mod:`cairn.constants`; environment variables (``CAIRN_*``)
override them, and the CLI overrides both with explicit flags.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Mapping, Optional, Union

from .constants import (
    CIPHER_AES_CBC,
    CIPHER_AES_GCM,
    CIPHER_NONE,
    CODEC_DEFLATE,
    CODEC_GZIP,
    CODEC_NONE,
    DEFAULT_AVG_CHUNK,
    DEFAULT_CIPHER,
    DEFAULT_CODEC,
    DEFAULT_COMPRESSION_LEVEL,
    DEFAULT_MAX_CHUNK,
    DEFAULT_MIN_CHUNK,
    KDF_ITERATIONS,
    MAX_CONTAINER_DEPTH,
)


# Backup-type labelling policies
POLICY_STORE = "store"      # Incremental whenever any prior manifest exists
POLICY_REUSE = "reuse"      # Incremental only when at least one file was reused


class Secret:
    """Passphrase holder that never shows its value in reprs or logs."""

    __slots__ = ("_value",)

    def __init__(self, value: str):
        if not isinstance(value, str) or not value:
            raise ValueError("Secret value must be a non-empty string")
        self._value = value

    def reveal(self) -> str:
        return self._value

    def __repr__(self) -> str:
        return "Secret('***')"

    __str__ = __repr__

    def __eq__(self, other) -> bool:
        return isinstance(other, Secret) and other._value == self._value

    def __hash__(self) -> int:
        return hash(self._value)


SecretLike = Union[Secret, str]


def as_secret(value: SecretLike) -> Secret:
    return value if isinstance(value, Secret) else Secret(value)


@dataclass(frozen=True)
class ChunkerConfig:
    min_size: int = DEFAULT_MIN_CHUNK
    avg_size: int = DEFAULT_AVG_CHUNK
    max_size: int = DEFAULT_MAX_CHUNK

    def __post_init__(self):
        if not (0 < self.min_size <= self.avg_size <= self.max_size):
            raise ValueError(
                f"chunk sizes must satisfy 0 < min <= avg <= max "
                f"(got {self.min_size}/{self.avg_size}/{self.max_size})"
            )


@dataclass(frozen=True)
class CairnConfig:
    chunker: ChunkerConfig = field(default_factory=ChunkerConfig)
    codec: str = DEFAULT_CODEC
    compression_level: int = DEFAULT_COMPRESSION_LEVEL
    cipher: str = DEFAULT_CIPHER
    kdf_iterations: int = KDF_ITERATIONS
    max_container_depth: int = MAX_CONTAINER_DEPTH
    backup_type_policy: str = POLICY_STORE

    def __post_init__(self):
        if self.codec not in (CODEC_NONE, CODEC_DEFLATE, CODEC_GZIP):
            raise ValueError(f"unknown codec {self.codec!r}")
        if self.cipher not in (CIPHER_NONE, CIPHER_AES_CBC, CIPHER_AES_GCM):
            raise ValueError(f"unknown cipher {self.cipher!r}")
        if self.backup_type_policy not in (POLICY_STORE, POLICY_REUSE):
            raise ValueError(f"unknown backup type policy {self.backup_type_policy!r}")
        if self.kdf_iterations < KDF_ITERATIONS:
            raise ValueError(f"kdf_iterations must be at least {KDF_ITERATIONS}")
        if self.max_container_depth < 1:
            raise ValueError("max_container_depth must be positive")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "CairnConfig":
        env = os.environ if environ is None else environ
        chunker = ChunkerConfig(
            min_size=int(env.get("CAIRN_MIN_CHUNK", DEFAULT_MIN_CHUNK)),
            avg_size=int(env.get("CAIRN_AVG_CHUNK", DEFAULT_AVG_CHUNK)),
            max_size=int(env.get("CAIRN_MAX_CHUNK", DEFAULT_MAX_CHUNK)),
        )
        return cls(
            chunker=chunker,
            codec=env.get("CAIRN_CODEC", DEFAULT_CODEC),
            compression_level=int(env.get("CAIRN_COMPRESSION_LEVEL", DEFAULT_COMPRESSION_LEVEL)),
            cipher=env.get("CAIRN_CIPHER", DEFAULT_CIPHER),
            backup_type_policy=env.get("CAIRN_BACKUP_TYPE_POLICY", POLICY_STORE),
        )

    def with_overrides(self, **changes) -> "CairnConfig":
        return replace(self, **{k: v for k, v in changes.items() if v is not None})


def passphrase_from_env(environ: Optional[Mapping[str, str]] = None) -> Optional[Secret]:
    env = os.environ if environ is None else environ
    value = env.get("CAIRN_PASSPHRASE")
    return Secret(value) if value else None
