from __future__ import annotations

import json
import os
import tempfile
import unittest
from pathlib import Path

from cairn.backend import LocalBackend, MemoryBackend
from cairn.config import CairnConfig
from cairn.constants import (
    CHUNK_PREFIX,
    CIPHER_AES_GCM,
    CIPHER_NONE,
    CODEC_GZIP,
    CODEC_NONE,
    COMPONENT_PREFIX,
    KDF_ITERATIONS,
    MAC_HMAC_SHA256,
    META_ENCODING,
    META_ENCRYPTION,
    META_KDF_ITERATIONS,
    META_MAC,
    META_ORIGINAL_SIZE,
)
from cairn.encryption import EncryptionCodec
from cairn.errors import IntegrityError, IoError, NotFoundError
from cairn.hashutil import sha256_hex
from cairn.store import ContentStore


PASS = "correct horse"


class _FlakyExistsBackend(MemoryBackend):
    def exists(self, key: str) -> bool:
        raise IoError("store unreachable")


class ContentStoreTests(unittest.TestCase):
    def test_store_and_read(self):
        backend = MemoryBackend()
        store = ContentStore(backend)
        data = b"hello world\n" * 100
        chunk = store.store(data, CHUNK_PREFIX, PASS, offset=42)
        self.assertEqual(chunk.hash, sha256_hex(data))
        self.assertEqual(chunk.blob_key, CHUNK_PREFIX + chunk.hash)
        self.assertEqual(chunk.offset, 42)
        self.assertTrue(chunk.uploaded)
        self.assertTrue(chunk.is_compressed)
        self.assertTrue(chunk.is_encrypted)
        self.assertEqual(chunk.stored_size, len(backend.download(chunk.blob_key)))
        meta = backend.get_properties(chunk.blob_key).metadata
        self.assertEqual(meta[META_ENCODING], "deflate")
        self.assertEqual(meta[META_ENCRYPTION], "aes256")
        self.assertEqual(meta[META_ORIGINAL_SIZE], str(len(data)))
        self.assertEqual(meta[META_MAC], MAC_HMAC_SHA256)
        self.assertEqual(meta[META_KDF_ITERATIONS], str(KDF_ITERATIONS))
        self.assertEqual(store.read(chunk, PASS), data)

    def test_dedup_is_idempotent(self):
        backend = MemoryBackend()
        store = ContentStore(backend)
        first = store.store(b"repeated payload", CHUNK_PREFIX, PASS)
        second = store.store(b"repeated payload", CHUNK_PREFIX, PASS, offset=100)
        self.assertEqual(backend.put_count, 1)
        self.assertTrue(first.uploaded)
        self.assertFalse(second.uploaded)
        self.assertEqual(first.blob_key, second.blob_key)
        self.assertEqual(first.stored_size, second.stored_size)
        self.assertEqual(second.offset, 100)

    def test_prefixes_are_separate_namespaces(self):
        backend = MemoryBackend()
        store = ContentStore(backend)
        a = store.store(b"shared", CHUNK_PREFIX, PASS)
        b = store.store(b"shared", COMPONENT_PREFIX, PASS)
        self.assertNotEqual(a.blob_key, b.blob_key)
        self.assertEqual(a.hash, b.hash)
        self.assertEqual(backend.put_count, 2)

    def test_address_ignores_transforms(self):
        data = b"address me"
        keys = set()
        for cfg in (CairnConfig(), CairnConfig(cipher=CIPHER_NONE, codec=CODEC_NONE), CairnConfig(cipher=CIPHER_AES_GCM, codec=CODEC_GZIP)):
            keys.add(ContentStore(MemoryBackend(), cfg).store(data, CHUNK_PREFIX, PASS).blob_key)
        self.assertEqual(len(keys), 1)

    def test_dedup_hit_takes_flags_from_stored_metadata(self):
        backend = MemoryBackend()
        ContentStore(backend, CairnConfig(cipher=CIPHER_NONE, codec=CODEC_NONE)).store(b"plain blob", CHUNK_PREFIX, PASS)
        hit = ContentStore(backend).store(b"plain blob", CHUNK_PREFIX, PASS)
        self.assertFalse(hit.uploaded)
        self.assertFalse(hit.is_compressed)
        self.assertFalse(hit.is_encrypted)
        self.assertEqual(hit.stored_size, len(b"plain blob"))

    def test_read_follows_metadata_not_config(self):
        backend = MemoryBackend()
        chunk = ContentStore(backend, CairnConfig(cipher=CIPHER_AES_GCM, codec=CODEC_GZIP)).store(b"gcm+gzip", CHUNK_PREFIX, PASS)
        reader = ContentStore(backend, CairnConfig(cipher=CIPHER_NONE, codec=CODEC_NONE))
        self.assertEqual(reader.read(chunk, PASS), b"gcm+gzip")

    def test_wrong_passphrase_is_integrity_error(self):
        backend = MemoryBackend()
        store = ContentStore(backend)
        chunk = store.store(os.urandom(500), CHUNK_PREFIX, PASS)
        with self.assertRaises(IntegrityError):
            store.read(chunk, "not the passphrase")

    def test_tampered_blob_is_detected(self):
        backend = MemoryBackend()
        store = ContentStore(backend, CairnConfig(cipher=CIPHER_NONE, codec=CODEC_NONE))
        chunk = store.store(b"original bytes", CHUNK_PREFIX, PASS)
        backend.put(chunk.blob_key, b"modified bytes", backend.get_properties(chunk.blob_key).metadata)
        with self.assertRaises(IntegrityError):
            store.read(chunk, PASS)

    def test_read_uses_recorded_kdf_iterations(self):
        backend = MemoryBackend()
        writer = ContentStore(backend, CairnConfig(kdf_iterations=KDF_ITERATIONS + 20_000))
        chunk = writer.store(b"slow key", CHUNK_PREFIX, PASS)
        meta = backend.get_properties(chunk.blob_key).metadata
        self.assertEqual(meta[META_KDF_ITERATIONS], str(KDF_ITERATIONS + 20_000))
        self.assertEqual(ContentStore(backend).read(chunk, PASS), b"slow key")

    def test_untagged_cbc_blobs_remain_readable(self):
        backend = MemoryBackend()
        data = b"written without a mac"
        chunk = ContentStore(backend, CairnConfig(codec=CODEC_NONE)).store(data, CHUNK_PREFIX, PASS)
        legacy = EncryptionCodec(authenticate=False).encrypt(data, PASS)
        backend.put(chunk.blob_key, legacy, {META_ENCODING: CODEC_NONE, META_ENCRYPTION: "aes256"})
        self.assertEqual(ContentStore(backend).read(chunk, PASS), data)

    def test_missing_blob(self):
        backend = MemoryBackend()
        store = ContentStore(backend)
        chunk = store.store(b"soon gone", CHUNK_PREFIX, PASS)
        backend.delete(chunk.blob_key)
        with self.assertRaises(NotFoundError):
            store.read(chunk, PASS)

    def test_failed_existence_check_uploads(self):
        backend = _FlakyExistsBackend()
        store = ContentStore(backend)
        with self.assertLogs("cairn.store", level="WARNING"):
            chunk = store.store(b"upload anyway", CHUNK_PREFIX, PASS)
        self.assertTrue(chunk.uploaded)
        self.assertEqual(backend.put_count, 1)
        self.assertEqual(store.read(chunk, PASS), b"upload anyway")


class LocalBackendTests(unittest.TestCase):
    def run_with_tmpdir(self, func):
        with tempfile.TemporaryDirectory() as tmp:
            func(Path(tmp))

    def test_put_get_list(self):
        def scenario(tmp_path: Path):
            backend = LocalBackend(str(tmp_path / "store"))
            backend.put("chunks/abc", b"payload", {"encoding": "deflate"})
            backend.put("manifests/backup_x.json", b"{}", {})
            self.assertTrue(backend.exists("chunks/abc"))
            self.assertFalse(backend.exists("chunks/missing"))
            props = backend.get_properties("chunks/abc")
            self.assertEqual(props.size, 7)
            self.assertEqual(props.metadata, {"encoding": "deflate"})
            self.assertGreater(props.created_at, 0)
            self.assertEqual(backend.download("chunks/abc"), b"payload")
            self.assertEqual([b.key for b in backend.list_keys("chunks/")], ["chunks/abc"])
            self.assertEqual(
                sorted(b.key for b in backend.list_keys()), ["chunks/abc", "manifests/backup_x.json"]
            )
            sidecar = json.loads((tmp_path / "store" / "chunks" / "abc.meta.json").read_text())
            self.assertEqual(sidecar["metadata"], {"encoding": "deflate"})

        self.run_with_tmpdir(scenario)

    def test_missing_and_invalid_keys(self):
        def scenario(tmp_path: Path):
            backend = LocalBackend(str(tmp_path))
            with self.assertRaises(NotFoundError):
                backend.download("chunks/none")
            with self.assertRaises(NotFoundError):
                backend.get_properties("chunks/none")
            for bad in ("../escape", "/abs", "a//b", "chunks/x.meta.json"):
                with self.assertRaises(ValueError):
                    backend.put(bad, b"", {})

        self.run_with_tmpdir(scenario)

    def test_blob_without_sidecar_is_invisible(self):
        def scenario(tmp_path: Path):
            backend = LocalBackend(str(tmp_path))
            (tmp_path / "chunks").mkdir()
            (tmp_path / "chunks" / "partial").write_bytes(b"half written")
            self.assertFalse(backend.exists("chunks/partial"))
            self.assertEqual(list(backend.list_keys("chunks/")), [])

        self.run_with_tmpdir(scenario)

    def test_content_store_over_local_backend(self):
        def scenario(tmp_path: Path):
            backend = LocalBackend(str(tmp_path))
            store = ContentStore(backend)
            chunk = store.store(b"on disk", CHUNK_PREFIX, PASS)
            again = ContentStore(LocalBackend(str(tmp_path))).store(b"on disk", CHUNK_PREFIX, PASS)
            self.assertFalse(again.uploaded)
            self.assertEqual(store.read(chunk, PASS), b"on disk")

        self.run_with_tmpdir(scenario)


if __name__ == "__main__":
    unittest.main()
