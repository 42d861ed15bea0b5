"""Backup orchestration: enumerate targets, detect changes, store, persist.

Files are handled one at a time with whole-file buffering. A failure on one
file is recorded in the report and the file is left out of the manifest; the
manifest itself is written exactly once, after every file has been handled,
so an interrupted run leaves the store's history untouched.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Union

from .backend import BlobBackend
from .chunker import Chunker
from .config import CairnConfig, POLICY_REUSE, SecretLike, as_secret
from .constants import CHUNK_PREFIX, COMPONENT_PREFIX
from .containers import Decomposer, is_container
from .errors import CairnError, IoError, error_kind
from .hashutil import combined_hash, sha256_hex
from .manifest import ManifestStore
from .models import (
    BackupType,
    Chunk,
    Component,
    FileRecord,
    Manifest,
    StructureKind,
    TargetType,
    datetime_from_ns,
    utcnow,
)
from .pathutil import norm_path
from .snapshot import SnapshotProvider
from .store import ContentStore
from .walker import AclProvider, WalkEntry, file_attributes, read_acl, walk_tree

logger = logging.getLogger(__name__)


@dataclass
class FileFailure:
    path: str
    kind: str
    message: str
    chunk_hash: Optional[str] = None

    @classmethod
    def from_exception(cls, path: str, exc: BaseException) -> "FileFailure":
        return cls(path=path, kind=error_kind(exc), message=str(exc), chunk_hash=getattr(exc, "chunk_hash", None))


@dataclass
class BackupReport:
    manifest: Manifest
    manifest_key: str
    failures: List[FileFailure] = field(default_factory=list)
    processed: int = 0
    reused: int = 0

    @property
    def ok(self) -> bool:
        return not self.failures


@dataclass
class _Candidate:
    path: str            # recorded (original) absolute path
    read_path: str       # where the bytes are read from (differs under a snapshot)
    relative_path: str
    stat: os.stat_result = field(repr=False)
    folder_only: bool = False


class BackupOrchestrator:
    def __init__(
        self,
        backend: BlobBackend,
        config: Optional[CairnConfig] = None,
        *,
        acl_provider: Optional[AclProvider] = None,
        snapshot_provider: Optional[SnapshotProvider] = None,
    ):
        self.config = config or CairnConfig()
        self.content = ContentStore(backend, self.config)
        self.manifests = ManifestStore(backend)
        self.chunker = Chunker(self.config.chunker)
        self.decomposer = Decomposer(self.config.max_container_depth, self.config.chunker)
        self.acl_provider = acl_provider or AclProvider()
        self.snapshot_provider = snapshot_provider or SnapshotProvider()

    def list_manifests(self) -> List[Manifest]:
        return self.manifests.load_all()

    # ---- entry operations ----

    def run_backup(
        self,
        targets: Iterable[str],
        target_type: Union[TargetType, str],
        *,
        passphrase: SecretLike,
    ) -> BackupReport:
        target_type = TargetType(target_type)
        manifest = Manifest(target=target_type)
        failures: List[FileFailure] = []
        candidates = self._enumerate_targets(targets, manifest, failures)
        return self._run(candidates, manifest, failures, as_secret(passphrase))

    def run_volume_backup(self, volume_root: str, *, passphrase: SecretLike) -> BackupReport:
        volume_root = os.path.abspath(volume_root)
        manifest = Manifest(target=TargetType.VOLUME)
        failures: List[FileFailure] = []
        with self.snapshot_provider.snapshot(volume_root) as snap:
            logger.info("Backing up volume %s (reading from %s)", volume_root, snap.path)
            walked = walk_tree(snap.path, "", self.acl_provider)
            manifest.folder_acls.update(walked.folder_acls)
            failures.extend(FileFailure(p, IoError.__name__, msg) for p, msg in walked.errors)
            candidates = [self._candidate(e, volume_root, snap.path) for e in walked.files + walked.empty_dirs]
            return self._run(candidates, manifest, failures, as_secret(passphrase))

    # ---- enumeration ----

    @staticmethod
    def _candidate(entry: WalkEntry, recorded_root: str, read_root: str) -> _Candidate:
        rel_to_read_root = os.path.relpath(entry.path, read_root)
        return _Candidate(
            path=os.path.normpath(os.path.join(recorded_root, rel_to_read_root)),
            read_path=entry.path,
            relative_path=entry.relative_path,
            stat=entry.stat,
            folder_only=entry.is_dir,
        )

    def _enumerate_targets(
        self, targets: Iterable[str], manifest: Manifest, failures: List[FileFailure]
    ) -> List[_Candidate]:
        seen = set()
        out: List[_Candidate] = []
        for target in targets:
            path = os.path.abspath(target)
            try:
                if os.path.isfile(path):
                    found = [_Candidate(path, path, norm_path(os.path.basename(path)), os.stat(path))]
                elif os.path.isdir(path):
                    walked = walk_tree(path, os.path.basename(path.rstrip(os.sep)), self.acl_provider)
                    manifest.folder_acls.update(walked.folder_acls)
                    failures.extend(FileFailure(p, IoError.__name__, msg) for p, msg in walked.errors)
                    found = [self._candidate(e, path, path) for e in walked.files + walked.empty_dirs]
                else:
                    raise IoError(f"No such file or directory: {path}")
            except (CairnError, OSError) as exc:
                logger.warning("Cannot enumerate %s: %s", path, exc)
                failures.append(FileFailure.from_exception(path, exc))
                continue
            for cand in found:
                if cand.path not in seen:
                    seen.add(cand.path)
                    out.append(cand)
        return out

    # ---- processing ----

    def _run(
        self,
        candidates: List[_Candidate],
        manifest: Manifest,
        failures: List[FileFailure],
        passphrase,
    ) -> BackupReport:
        previous = self.manifests.load_latest()
        previous_records: Dict[str, FileRecord] = {r.path: r for r in previous.files} if previous else {}
        logger.info(
            "Backing up %d entries (prior manifest: %s)", len(candidates), previous.id if previous else "none"
        )

        processed = reused = 0
        for cand in candidates:
            try:
                record, was_reused = self._backup_entry(cand, previous_records.get(cand.path), passphrase)
            except (CairnError, OSError) as exc:
                logger.warning("Backup of %s failed: %s", cand.path, exc)
                failures.append(FileFailure.from_exception(cand.path, exc))
                continue
            manifest.files.append(record)
            if was_reused:
                reused += 1
            else:
                processed += 1

        if previous is None:
            manifest.type = BackupType.FULL
        elif self.config.backup_type_policy == POLICY_REUSE and reused == 0:
            manifest.type = BackupType.FULL
        else:
            manifest.type = BackupType.INCREMENTAL

        manifest.aggregate()
        key = self.manifests.save(manifest)
        logger.info(
            "%s backup %s: %d processed, %d reused, %d failed; %d bytes logical, %d bytes uploaded",
            manifest.type.value, manifest.id, processed, reused, len(failures),
            manifest.total_size, manifest.backup_size,
        )
        return BackupReport(manifest, key, failures, processed, reused)

    def _backup_entry(self, cand: _Candidate, previous: Optional[FileRecord], passphrase):
        st = cand.stat
        record = FileRecord(
            path=cand.path,
            relative_path=cand.relative_path,
            size=0 if cand.folder_only else st.st_size,
            last_modified_utc=datetime_from_ns(st.st_mtime_ns),
            attributes=file_attributes(st),
        )
        if cand.folder_only:
            record.structure_kind = StructureKind.FOLDER_ONLY
            record.last_backup_utc = utcnow()
            return record, previous is not None and previous.structure_kind == StructureKind.FOLDER_ONLY

        record.acl = read_acl(self.acl_provider, cand.read_path)
        data: Optional[bytes] = None
        if (
            previous is not None
            and previous.structure_kind != StructureKind.FOLDER_ONLY
            and previous.size == record.size
            and previous.last_modified_utc == record.last_modified_utc
        ):
            if previous.hash:
                data = self._read(cand.read_path)
                record.hash = sha256_hex(data)
            if not previous.hash or record.hash == previous.hash:
                record.hash = record.hash or previous.hash
                record.structure_kind = previous.structure_kind
                record.chunks = [c.reused() for c in previous.chunks]
                record.components = [c.reused() for c in previous.components]
                record.container_layouts = list(previous.container_layouts)
                record.last_backup_utc = utcnow()
                logger.debug("Unchanged: %s", cand.path)
                return record, True

        if data is None:
            data = self._read(cand.read_path)
            record.hash = sha256_hex(data)
        record.size = len(data)

        parts = self.decomposer.split(os.path.basename(cand.path), data) if is_container(cand.path) else None
        if parts is not None and parts.leaves and not parts.reproduces(data):
            logger.info("%s cannot be rebuilt byte-for-byte from its entries; storing it whole", cand.path)
            parts = None
        if parts is not None and parts.leaves:
            record.structure_kind = StructureKind.STRUCTURE_BASED
            record.container_layouts = parts.layouts
            for leaf in parts.leaves:
                chunks = self._store_stream(leaf.data, COMPONENT_PREFIX, passphrase)
                record.components.append(
                    Component(
                        name=leaf.name,
                        hash=combined_hash(c.hash for c in chunks),
                        size=len(leaf.data),
                        chunks=chunks,
                        entry_path=list(leaf.entry_path),
                        container_formats=list(leaf.container_formats),
                    )
                )
        else:
            record.structure_kind = StructureKind.CHUNK_BASED
            record.chunks = self._store_stream(data, CHUNK_PREFIX, passphrase)
        record.last_backup_utc = utcnow()
        logger.debug(
            "Stored %s as %s (%d chunks)", cand.path, record.structure_kind.value, len(record.all_chunks())
        )
        return record, False

    def _store_stream(self, data: bytes, prefix: str, passphrase) -> List[Chunk]:
        return [
            self.content.store(piece, prefix, passphrase, offset)
            for offset, piece in self.chunker.iter_chunks(data)
        ]

    @staticmethod
    def _read(path: str) -> bytes:
        try:
            with open(path, "rb") as fh:
                return fh.read()
        except OSError as exc:
            raise IoError(f"Cannot read {path}: {exc}") from exc
