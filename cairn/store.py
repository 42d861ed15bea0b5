from __future__ import annotations

import logging
from typing import Dict, Optional, Tuple

from .backend import BlobBackend
from .codec import Codec
from .config import CairnConfig, SecretLike
from .constants import (
    CIPHER_NONE,
    CODEC_NONE,
    MAC_HMAC_SHA256,
    META_ENCODING,
    META_ENCRYPTION,
    META_KDF_ITERATIONS,
    META_MAC,
    META_ORIGINAL_SIZE,
)
from .encryption import EncryptionCodec
from .errors import CairnError, IntegrityError, IoError
from .hashutil import sha256_hex
from .models import Chunk

logger = logging.getLogger(__name__)


class ContentStore:
    """Content-addressed chunk storage over a blob backend.

    A chunk lives at ``prefix + sha256(plaintext)``. Compression and encryption
    only shape the stored bytes; the metadata written next to each blob says
    which transforms were applied, and reads always follow that metadata.
    """

    def __init__(self, backend: BlobBackend, config: Optional[CairnConfig] = None):
        self.backend = backend
        self.config = config or CairnConfig()
        self.codec = Codec(self.config.codec, self.config.compression_level)
        self.cipher = EncryptionCodec(self.config.cipher, self.config.kdf_iterations)

    def _exists(self, key: str) -> bool:
        try:
            return self.backend.exists(key)
        except (CairnError, OSError) as exc:
            # uploading again is harmless: same key, same plaintext
            logger.warning("Existence check for %s failed (%s); uploading", key, exc)
            return False

    def store(self, data: bytes, prefix: str, passphrase: SecretLike, offset: int = 0) -> Chunk:
        """Store one plaintext chunk, skipping the upload on a dedup hit."""
        digest = sha256_hex(data)
        key = f"{prefix}{digest}"
        if self._exists(key):
            props = self.backend.get_properties(key)
            return Chunk(
                hash=digest,
                offset=offset,
                stored_size=props.size,
                blob_key=key,
                is_compressed=props.metadata.get(META_ENCODING, CODEC_NONE) != CODEC_NONE,
                is_encrypted=props.metadata.get(META_ENCRYPTION, CIPHER_NONE) != CIPHER_NONE,
                uploaded=False,
            )

        payload = self.cipher.encrypt(self.codec.compress(data), passphrase)
        metadata = {
            META_ENCODING: self.codec.name,
            META_ENCRYPTION: self.cipher.scheme,
            META_ORIGINAL_SIZE: str(len(data)),
        }
        if self.cipher.encrypts:
            metadata[META_KDF_ITERATIONS] = str(self.cipher.iterations)
        if self.cipher.mac:
            metadata[META_MAC] = MAC_HMAC_SHA256
        try:
            self.backend.put(key, payload, metadata)
        except OSError as exc:
            raise IoError(f"Upload of {key} failed: {exc}") from exc
        logger.debug("Uploaded %s (%d -> %d bytes)", key, len(data), len(payload))
        return Chunk(
            hash=digest,
            offset=offset,
            stored_size=len(payload),
            blob_key=key,
            is_compressed=self.codec.compresses,
            is_encrypted=self.cipher.encrypts,
            uploaded=True,
        )

    def fetch(self, blob_key: str) -> Tuple[bytes, Dict[str, str]]:
        """Raw stored bytes and their metadata. Missing blobs raise NotFoundError."""
        props = self.backend.get_properties(blob_key)
        try:
            data = self.backend.download(blob_key)
        except OSError as exc:
            raise IoError(f"Download of {blob_key} failed: {exc}") from exc
        return data, props.metadata

    def read(self, chunk: Chunk, passphrase: SecretLike) -> bytes:
        """Plaintext of ``chunk``, verified against its content hash."""
        payload, metadata = self.fetch(chunk.blob_key)
        scheme = metadata.get(META_ENCRYPTION, CIPHER_NONE)
        encoding = metadata.get(META_ENCODING, CODEC_NONE)
        iterations = metadata.get(META_KDF_ITERATIONS, "")
        try:
            cipher = EncryptionCodec(
                scheme,
                int(iterations) if iterations.isdigit() else self.config.kdf_iterations,
                authenticate=metadata.get(META_MAC) == MAC_HMAC_SHA256,
            )
            codec = Codec(encoding)
        except ValueError as exc:
            raise IntegrityError(f"{chunk.blob_key}: {exc}") from exc
        plaintext = codec.decompress(cipher.decrypt(payload, passphrase))
        if sha256_hex(plaintext) != chunk.hash:
            raise IntegrityError(f"{chunk.blob_key}: content hash mismatch (chunk {chunk.hash})")
        expected = metadata.get(META_ORIGINAL_SIZE)
        if expected is not None and expected.isdigit() and int(expected) != len(plaintext):
            raise IntegrityError(f"{chunk.blob_key}: size mismatch after decompress")
        return plaintext
