from __future__ import annotations

import json
import unittest
from datetime import datetime, timedelta, timezone

from cairn.backend import MemoryBackend
from cairn.errors import NotFoundError, SerializationError
from cairn.manifest import ManifestStore, dumps_manifest, loads_manifest, manifest_key
from cairn.models import (
    BackupType,
    Chunk,
    Component,
    FileRecord,
    Manifest,
    StructureKind,
    TargetType,
)


def sample_manifest(**kw) -> Manifest:
    chunk_a = Chunk("a" * 64, 0, 40, "chunks/" + "a" * 64, uploaded=True)
    chunk_b = Chunk("b" * 64, 0, 30, "components/" + "b" * 64, is_compressed=False, is_encrypted=True)
    files = [
        FileRecord(
            path="/data/docs/a.txt",
            relative_path="docs/a.txt",
            size=100,
            last_modified_utc=datetime(2024, 5, 1, 12, 0, 0, 123456, tzinfo=timezone.utc),
            attributes=0o644,
            acl="base64acl==",
            hash="c" * 64,
            chunks=[chunk_a],
            last_backup_utc=datetime(2024, 5, 2, tzinfo=timezone.utc),
        ),
        FileRecord(
            path="/data/docs/book.zip",
            relative_path="docs/book.zip",
            size=200,
            hash="d" * 64,
            structure_kind=StructureKind.STRUCTURE_BASED,
            components=[
                Component("ch1.txt.gz/ch1.txt", "e" * 64, 500, [chunk_b], ["ch1.txt.gz", "ch1.txt"], ["zip", "gzip"])
            ],
            container_layouts=[
                {"entryPath": [], "format": "zip", "comment": None, "members": [{"name": "ch1.txt.gz", "dateTime": [2001, 2, 3, 4, 5, 6]}]},
                {"entryPath": ["ch1.txt.gz"], "format": "gzip", "flags": 0, "mtime": 42, "xfl": 0, "os": 3, "compressLevel": 6},
            ],
        ),
        FileRecord(path="/data/docs/empty", relative_path="docs/empty", structure_kind=StructureKind.FOLDER_ONLY),
    ]
    m = Manifest(type=BackupType.FULL, target=TargetType.FOLDER, files=files, folder_acls={"docs": None, "docs/empty": "x"})
    for k, v in kw.items():
        setattr(m, k, v)
    m.aggregate()
    return m


class ModelTests(unittest.TestCase):
    def test_json_roundtrip_is_lossless(self):
        m = sample_manifest()
        again = loads_manifest(dumps_manifest(m))
        self.assertEqual(again, m)
        self.assertEqual(again.to_dict(), m.to_dict())

    def test_wire_field_names(self):
        doc = json.loads(dumps_manifest(sample_manifest()))
        self.assertEqual(
            set(doc),
            {"id", "timestamp", "type", "target", "files", "totalSize", "compressedSize", "backupSize", "folderAcls"},
        )
        self.assertEqual(doc["type"], "Full")
        self.assertEqual(doc["files"][0]["structureKind"], "ChunkBased")
        self.assertEqual(doc["files"][0]["chunks"][0]["blobKey"], "chunks/" + "a" * 64)
        self.assertEqual(doc["files"][1]["components"][0]["containerFormats"], ["zip", "gzip"])
        self.assertEqual([l["entryPath"] for l in doc["files"][1]["containerLayouts"]], [[], ["ch1.txt.gz"]])
        self.assertEqual(doc["files"][0]["containerLayouts"], [])

    def test_aggregate(self):
        m = sample_manifest()
        self.assertEqual(m.total_size, 300)
        self.assertEqual(m.compressed_size, 70)
        self.assertEqual(m.backup_size, 40)

    def test_reused_copies_are_not_uploaded(self):
        chunk = Chunk("a" * 64, 5, 10, "chunks/x", uploaded=True)
        copy = chunk.reused()
        self.assertFalse(copy.uploaded)
        self.assertEqual((copy.hash, copy.offset, copy.blob_key), (chunk.hash, chunk.offset, chunk.blob_key))
        comp = Component("n", "h", 1, [chunk], ["n"], ["zip"]).reused()
        self.assertFalse(comp.chunks[0].uploaded)

    def test_record_kind_is_validated(self):
        bad = FileRecord(path="/x", structure_kind=StructureKind.FOLDER_ONLY, chunks=[Chunk("a", 0, 1, "chunks/a")])
        with self.assertRaises(SerializationError):
            FileRecord.from_dict(bad.to_dict())

    def test_container_layouts_are_validated(self):
        layout = {"entryPath": [], "format": "gzip", "flags": 0, "mtime": 0, "xfl": 0, "os": 255}
        flat = FileRecord(path="/x.gz", hash="h", chunks=[Chunk("a", 0, 1, "chunks/a")], container_layouts=[layout])
        with self.assertRaises(SerializationError):
            FileRecord.from_dict(flat.to_dict())
        pathless = FileRecord(
            path="/x.gz",
            structure_kind=StructureKind.STRUCTURE_BASED,
            components=[Component("x", "h", 1, [], ["x"], ["gzip"])],
            container_layouts=[{"format": "gzip"}],
        )
        with self.assertRaises(SerializationError):
            FileRecord.from_dict(pathless.to_dict())
        self.assertEqual(FileRecord.from_dict({"path": "/legacy.txt"}).container_layouts, [])

    def test_malformed_documents(self):
        for raw in (b"not json", b"[]", b'{"id": "x"}', b'{"id": "x", "timestamp": "yesterday", "type": "Full", "target": "File", "files": []}'):
            with self.assertRaises(SerializationError):
                loads_manifest(raw)

    def test_legacy_component_defaults(self):
        comp = Component.from_dict({"name": "a.txt", "hash": "h", "size": 3, "chunks": []})
        self.assertEqual(comp.entry_path, ["a.txt"])
        self.assertEqual(comp.container_formats, ["zip"])


class ManifestStoreTests(unittest.TestCase):
    def test_key_layout(self):
        m = sample_manifest(timestamp=datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc))
        self.assertEqual(manifest_key(m), f"manifests/backup_20240102_030405_{m.id}.json")

    def test_save_and_load(self):
        backend = MemoryBackend()
        store = ManifestStore(backend)
        m = sample_manifest()
        key = store.save(m)
        self.assertEqual(store.load(key), m)
        self.assertEqual(backend.get_properties(key).metadata["manifestId"], m.id)
        with self.assertRaises(SerializationError):
            store.save(m)

    def test_empty_store(self):
        store = ManifestStore(MemoryBackend())
        self.assertIsNone(store.load_latest())
        self.assertEqual(store.load_all(), [])

    def test_latest_uses_creation_time_not_key(self):
        store = ManifestStore(MemoryBackend())
        now = datetime.now(timezone.utc)
        # the second save has the earlier key timestamp
        first = sample_manifest(timestamp=now + timedelta(days=1))
        second = sample_manifest(timestamp=now - timedelta(days=1))
        store.save(first)
        store.save(second)
        self.assertEqual(store.load_latest().id, second.id)

    def test_load_all_orders_by_timestamp(self):
        store = ManifestStore(MemoryBackend())
        base = datetime(2024, 1, 1, tzinfo=timezone.utc)
        ids = []
        for days in (2, 0, 1):
            m = sample_manifest(timestamp=base + timedelta(days=days))
            store.save(m)
            ids.append((days, m.id))
        expected = [mid for _, mid in sorted(ids, reverse=True)]
        self.assertEqual([m.id for m in store.load_all()], expected)

    def test_unreadable_manifests_are_skipped(self):
        backend = MemoryBackend()
        store = ManifestStore(backend)
        good = sample_manifest()
        store.save(good)
        backend.put("manifests/backup_20991231_000000_broken.json", b"{ nope", {})
        with self.assertLogs("cairn.manifest", level="WARNING"):
            self.assertEqual([m.id for m in store.load_all()], [good.id])
        with self.assertLogs("cairn.manifest", level="WARNING"):
            self.assertEqual(store.load_latest().id, good.id)

    def test_find_by_id_or_prefix(self):
        store = ManifestStore(MemoryBackend())
        a = sample_manifest(id="aaaa1111-0000")
        b = sample_manifest(id="aaaa2222-0000")
        store.save(a)
        store.save(b)
        self.assertEqual(store.find("aaaa1111-0000").id, a.id)
        self.assertEqual(store.find("aaaa2").id, b.id)
        with self.assertRaises(SerializationError):
            store.find("aaaa")
        with self.assertRaises(NotFoundError):
            store.find("zzzz")


if __name__ == "__main__":
    unittest.main()
