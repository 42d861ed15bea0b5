from __future__ import annotations

import logging
import os
import unittest

from cairn.codec import Codec, compress, decompress
from cairn.config import CairnConfig, ChunkerConfig, Secret, as_secret, passphrase_from_env
from cairn.constants import CIPHER_AES_CBC, CIPHER_AES_GCM, CIPHER_NONE, CODEC_GZIP, CODEC_NONE, IV_SIZE, MAC_SIZE, SALT_SIZE
from cairn.encryption import EncryptionCodec, decrypt, derive_key, encrypt
from cairn.errors import IntegrityError
from cairn.logging_config import MASK, SensitiveDataFilter


SAMPLES = [b"", b"a", b"hello world\n" * 200, os.urandom(3000)]


class CompressionTests(unittest.TestCase):
    def test_roundtrip_all_codecs(self):
        for name in ("deflate", "gzip", "none"):
            codec = Codec(name)
            for data in SAMPLES:
                self.assertEqual(codec.decompress(codec.compress(data)), data, name)

    def test_module_helpers_use_deflate(self):
        data = b"abc" * 1000
        packed = compress(data)
        self.assertLess(len(packed), len(data))
        self.assertEqual(decompress(packed), data)

    def test_gzip_output_is_stable(self):
        codec = Codec(CODEC_GZIP)
        self.assertEqual(codec.compress(b"same input"), codec.compress(b"same input"))

    def test_none_is_identity(self):
        self.assertFalse(Codec(CODEC_NONE).compresses)
        self.assertEqual(Codec(CODEC_NONE).compress(b"xyz"), b"xyz")

    def test_corrupt_input_is_integrity_error(self):
        with self.assertRaises(IntegrityError):
            Codec().decompress(b"definitely not deflate")
        with self.assertRaises(IntegrityError):
            Codec(CODEC_GZIP).decompress(b"\x1f\x8b broken")

    def test_unknown_codec(self):
        with self.assertRaises(ValueError):
            Codec("lz4")


class EncryptionTests(unittest.TestCase):
    def test_cbc_roundtrip_and_layout(self):
        for data in (b"", b"x" * 15, b"y" * 16, os.urandom(1000)):
            payload = encrypt(data, "pass")
            # salt + iv + PKCS7-padded ciphertext + HMAC-SHA256
            self.assertEqual(len(payload), SALT_SIZE + IV_SIZE + (len(data) // 16 + 1) * 16 + MAC_SIZE)
            self.assertEqual(decrypt(payload, "pass"), data)

    def test_cbc_rejects_corrupted_ciphertext(self):
        payload = encrypt(b"A" * 64, "pw")
        for index in (0, SALT_SIZE, SALT_SIZE + IV_SIZE, len(payload) - MAC_SIZE - 1, len(payload) - 1):
            corrupted = bytearray(payload)
            corrupted[index] ^= 0x01
            with self.assertRaises(IntegrityError):
                decrypt(bytes(corrupted), "pw")
        with self.assertRaises(IntegrityError):
            decrypt(payload[:-1], "pw")

    def test_cbc_rejects_wrong_passphrase(self):
        for i in range(4):
            payload = encrypt(b"block" * 7, f"right-{i}")
            with self.assertRaises(IntegrityError):
                decrypt(payload, f"wrong-{i}")

    def test_untagged_cbc_layout(self):
        codec = EncryptionCodec(CIPHER_AES_CBC, authenticate=False)
        self.assertFalse(codec.mac)
        payload = codec.encrypt(b"y" * 16, "pass")
        self.assertEqual(len(payload), SALT_SIZE + IV_SIZE + 32)
        self.assertEqual(codec.decrypt(payload, "pass"), b"y" * 16)
        with self.assertRaises(IntegrityError):
            decrypt(payload, "pass")

    def test_fresh_salt_and_iv(self):
        a = encrypt(b"same", "pass")
        b = encrypt(b"same", "pass")
        self.assertNotEqual(a, b)
        self.assertNotEqual(a[:SALT_SIZE], b[:SALT_SIZE])

    def test_gcm_roundtrip(self):
        codec = EncryptionCodec(CIPHER_AES_GCM)
        for data in (b"", os.urandom(777)):
            payload = codec.encrypt(data, Secret("pass"))
            self.assertEqual(len(payload), len(data) + codec.overhead())
            self.assertEqual(codec.decrypt(payload, "pass"), data)

    def test_gcm_rejects_wrong_passphrase_and_tampering(self):
        codec = EncryptionCodec(CIPHER_AES_GCM)
        payload = codec.encrypt(b"secret data", "right")
        with self.assertRaises(IntegrityError):
            codec.decrypt(payload, "wrong")
        tampered = bytearray(payload)
        tampered[SALT_SIZE + IV_SIZE] ^= 0x01
        with self.assertRaises(IntegrityError):
            codec.decrypt(bytes(tampered), "right")

    def test_short_or_misaligned_payload(self):
        codec = EncryptionCodec(CIPHER_AES_CBC)
        with self.assertRaises(IntegrityError):
            codec.decrypt(b"\x00" * 20, "pass")
        with self.assertRaises(IntegrityError):
            codec.decrypt(b"\x00" * (SALT_SIZE + IV_SIZE + 7), "pass")
        with self.assertRaises(IntegrityError):
            EncryptionCodec(CIPHER_AES_CBC, authenticate=False).decrypt(b"\x00" * (SALT_SIZE + IV_SIZE + 7), "pass")
        with self.assertRaises(IntegrityError):
            EncryptionCodec(CIPHER_AES_GCM).decrypt(b"\x00" * 40, "pass")

    def test_none_scheme_passes_through(self):
        codec = EncryptionCodec(CIPHER_NONE)
        self.assertFalse(codec.encrypts)
        self.assertEqual(codec.encrypt(b"plain", "pass"), b"plain")

    def test_key_derivation_is_deterministic(self):
        salt = b"\x01" * SALT_SIZE
        self.assertEqual(derive_key("pw", salt), derive_key(Secret("pw"), salt))
        self.assertEqual(len(derive_key("pw", salt)), 32)
        self.assertNotEqual(derive_key("pw", salt), derive_key("pw2", salt))


class ConfigTests(unittest.TestCase):
    def test_secret_is_masked(self):
        s = Secret("hunter2")
        self.assertNotIn("hunter2", repr(s))
        self.assertNotIn("hunter2", str(s))
        self.assertEqual(s.reveal(), "hunter2")
        self.assertIs(as_secret(s), s)
        self.assertEqual(as_secret("hunter2"), s)
        with self.assertRaises(ValueError):
            Secret("")

    def test_from_env(self):
        cfg = CairnConfig.from_env({
            "CAIRN_MIN_CHUNK": "1024",
            "CAIRN_AVG_CHUNK": "4096",
            "CAIRN_MAX_CHUNK": "16384",
            "CAIRN_CIPHER": CIPHER_AES_GCM,
            "CAIRN_CODEC": CODEC_GZIP,
            "CAIRN_BACKUP_TYPE_POLICY": "reuse",
        })
        self.assertEqual(cfg.chunker, ChunkerConfig(1024, 4096, 16384))
        self.assertEqual(cfg.cipher, CIPHER_AES_GCM)
        self.assertEqual(cfg.codec, CODEC_GZIP)
        self.assertEqual(cfg.backup_type_policy, "reuse")
        self.assertEqual(CairnConfig.from_env({}), CairnConfig())

    def test_overrides_and_validation(self):
        cfg = CairnConfig().with_overrides(cipher=CIPHER_NONE, codec=None)
        self.assertEqual(cfg.cipher, CIPHER_NONE)
        self.assertEqual(cfg.codec, CairnConfig().codec)
        with self.assertRaises(ValueError):
            CairnConfig(cipher="rot13")
        with self.assertRaises(ValueError):
            CairnConfig(kdf_iterations=1000)
        with self.assertRaises(ValueError):
            CairnConfig(backup_type_policy="sometimes")

    def test_passphrase_from_env(self):
        self.assertIsNone(passphrase_from_env({}))
        self.assertEqual(passphrase_from_env({"CAIRN_PASSPHRASE": "pw"}).reveal(), "pw")


class SensitiveDataFilterTests(unittest.TestCase):
    def _record(self, msg, *args):
        return logging.LogRecord("cairn.test", logging.INFO, __file__, 1, msg, args, None)

    def test_known_secret_is_masked(self):
        f = SensitiveDataFilter(["hunter2"])
        record = self._record("using %s for %s", "hunter2", "store")
        f.filter(record)
        self.assertNotIn("hunter2", record.getMessage())
        self.assertIn(MASK, record.getMessage())

    def test_assignment_style_is_masked(self):
        f = SensitiveDataFilter()
        record = self._record("connect passphrase=topsecret store=/tmp/x")
        f.filter(record)
        self.assertNotIn("topsecret", record.getMessage())
        self.assertIn("/tmp/x", record.getMessage())


if __name__ == "__main__":
    unittest.main()
