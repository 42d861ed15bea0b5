from __future__ import annotations

from Cryptodome.Cipher import AES
from Cryptodome.Hash import HMAC, SHA256
from Cryptodome.Protocol.KDF import PBKDF2
from Cryptodome.Random import get_random_bytes
from Cryptodome.Util.Padding import pad, unpad

from .config import SecretLike, as_secret
from .constants import (
    CIPHER_AES_CBC,
    CIPHER_AES_GCM,
    CIPHER_NONE,
    IV_SIZE,
    KDF_ITERATIONS,
    KEY_SIZE,
    MAC_SIZE,
    SALT_SIZE,
    TAG_SIZE,
)
from .errors import IntegrityError


def derive_key(passphrase: SecretLike, salt: bytes, iterations: int = KDF_ITERATIONS, length: int = KEY_SIZE) -> bytes:
    """PBKDF2-HMAC-SHA256 key material for ``passphrase`` and ``salt``."""
    secret = as_secret(passphrase)
    return PBKDF2(
        secret.reveal().encode("utf-8"),
        salt,
        dkLen=length,
        count=iterations,
        hmac_hash_module=SHA256,
    )


class EncryptionCodec:
    """Password-based chunk encryption.

    Every call draws a fresh salt and IV, so encrypting the same plaintext twice
    never yields the same bytes. Layouts:

    - ``aes256``:     ``[16-byte salt][16-byte IV][AES-256-CBC ciphertext, PKCS7][32-byte HMAC-SHA256]``
    - ``aes256-gcm``: ``[16-byte salt][16-byte nonce][ciphertext][16-byte tag]``

    The CBC tag covers salt, IV and ciphertext and is checked before anything
    is decrypted; the AES key and the MAC key are the two halves of one 64-byte
    PBKDF2 output. ``authenticate=False`` reads (and writes) the untagged CBC
    layout of blobs whose metadata carries no MAC marker; those rely on the
    content store re-hashing the plaintext.
    """

    def __init__(self, scheme: str = CIPHER_AES_CBC, iterations: int = KDF_ITERATIONS, authenticate: bool = True):
        if scheme not in (CIPHER_NONE, CIPHER_AES_CBC, CIPHER_AES_GCM):
            raise ValueError(f"unsupported cipher scheme: {scheme}")
        if iterations < 1:
            raise ValueError(f"invalid KDF iteration count: {iterations}")
        self.scheme = scheme
        self.iterations = iterations
        self.authenticate = authenticate

    @property
    def encrypts(self) -> bool:
        return self.scheme != CIPHER_NONE

    @property
    def mac(self) -> bool:
        """True when the scheme appends a separate HMAC tag (CBC with authentication)."""
        return self.scheme == CIPHER_AES_CBC and self.authenticate

    def overhead(self) -> int:
        if self.scheme == CIPHER_AES_GCM:
            return SALT_SIZE + IV_SIZE + TAG_SIZE
        if self.scheme == CIPHER_AES_CBC:
            return SALT_SIZE + IV_SIZE + (MAC_SIZE if self.mac else 0)
        return 0

    def _cbc_keys(self, passphrase: SecretLike, salt: bytes):
        if not self.mac:
            return derive_key(passphrase, salt, self.iterations), None
        material = derive_key(passphrase, salt, self.iterations, 2 * KEY_SIZE)
        return material[:KEY_SIZE], material[KEY_SIZE:]

    def encrypt(self, plaintext: bytes, passphrase: SecretLike) -> bytes:
        if self.scheme == CIPHER_NONE:
            return plaintext
        salt = get_random_bytes(SALT_SIZE)
        iv = get_random_bytes(IV_SIZE)
        if self.scheme == CIPHER_AES_GCM:
            key = derive_key(passphrase, salt, self.iterations)
            cipher = AES.new(key, AES.MODE_GCM, nonce=iv, mac_len=TAG_SIZE)
            ciphertext, tag = cipher.encrypt_and_digest(plaintext)
            return salt + iv + ciphertext + tag
        key, mac_key = self._cbc_keys(passphrase, salt)
        cipher = AES.new(key, AES.MODE_CBC, iv=iv)
        body = salt + iv + cipher.encrypt(pad(plaintext, AES.block_size))
        if mac_key is None:
            return body
        return body + HMAC.new(mac_key, body, digestmod=SHA256).digest()

    def decrypt(self, payload: bytes, passphrase: SecretLike) -> bytes:
        if self.scheme == CIPHER_NONE:
            return payload
        if len(payload) < self.overhead():
            raise IntegrityError("Encrypted payload too short")
        salt = payload[:SALT_SIZE]
        iv = payload[SALT_SIZE:SALT_SIZE + IV_SIZE]
        if self.scheme == CIPHER_AES_GCM:
            key = derive_key(passphrase, salt, self.iterations)
            ciphertext = payload[SALT_SIZE + IV_SIZE:-TAG_SIZE]
            tag = payload[-TAG_SIZE:]
            cipher = AES.new(key, AES.MODE_GCM, nonce=iv, mac_len=TAG_SIZE)
            try:
                return cipher.decrypt_and_verify(ciphertext, tag)
            except ValueError as exc:
                raise IntegrityError("Authentication failed: wrong passphrase or corrupted data") from exc

        key, mac_key = self._cbc_keys(passphrase, salt)
        if mac_key is not None:
            body, tag = payload[:-MAC_SIZE], payload[-MAC_SIZE:]
            try:
                HMAC.new(mac_key, body, digestmod=SHA256).verify(tag)
            except ValueError as exc:
                raise IntegrityError("Authentication failed: wrong passphrase or corrupted data") from exc
        else:
            body = payload
        ciphertext = body[SALT_SIZE + IV_SIZE:]
        if not ciphertext or len(ciphertext) % AES.block_size:
            raise IntegrityError("Ciphertext length is not a multiple of the AES block size")
        cipher = AES.new(key, AES.MODE_CBC, iv=iv)
        try:
            return unpad(cipher.decrypt(ciphertext), AES.block_size)
        except ValueError as exc:
            raise IntegrityError("Decryption failed: wrong passphrase or corrupted data") from exc


def encrypt(plaintext: bytes, passphrase: SecretLike) -> bytes:
    return EncryptionCodec().encrypt(plaintext, passphrase)


def decrypt(payload: bytes, passphrase: SecretLike) -> bytes:
    return EncryptionCodec().decrypt(payload, passphrase)
