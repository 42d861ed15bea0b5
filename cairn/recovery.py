"""Recovery: rebuild files from a manifest under a destination directory."""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Sequence, Union

from .backend import BlobBackend
from .backup import FileFailure
from .config import CairnConfig, SecretLike, as_secret
from .containers import rebuild
from .errors import CairnError, IntegrityError, IoError
from .hashutil import combined_hash, sha256_hex
from .models import Chunk, ConflictPolicy, FileRecord, Manifest, StructureKind, utcnow
from .pathutil import join_recorded, norm_path
from .store import ContentStore
from .walker import AclProvider

logger = logging.getLogger(__name__)

FileFilter = Union[Callable[[FileRecord], bool], Iterable[str], None]


@dataclass
class RecoveryReport:
    destination: str
    restored: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failures: List[FileFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


def coerce_policy(policy: Union[ConflictPolicy, str]) -> ConflictPolicy:
    if isinstance(policy, ConflictPolicy):
        return policy
    for member in ConflictPolicy:
        if policy.lower() in (member.value.lower(), member.name.lower()):
            return member
    raise ValueError(f"unknown conflict policy {policy!r}")


def _selector(file_filter: FileFilter) -> Callable[[FileRecord], bool]:
    if file_filter is None:
        return lambda record: True
    if callable(file_filter):
        return file_filter
    wanted = [norm_path(p) for p in file_filter]

    def match(record: FileRecord) -> bool:
        for ep in (norm_path(record.relative_path), norm_path(record.path)):
            if ep and any(ep == rp or ep.startswith(rp + "/") for rp in wanted):
                return True
        return False

    return match


def _record_name(record: FileRecord) -> str:
    return record.relative_path or record.path.replace("\\", "/").rstrip("/").rsplit("/", 1)[-1]


def _next_free_path(path: str) -> str:
    """Timestamped sibling of ``path``, numbered when that is taken too."""
    base_dir = os.path.dirname(path)
    root, ext = os.path.splitext(os.path.basename(path))
    stamped = f"{root}_{utcnow().strftime('%Y%m%d_%H%M%S')}"
    candidate = os.path.join(base_dir, f"{stamped}{ext}")
    i = 1
    while os.path.lexists(candidate):
        candidate = os.path.join(base_dir, f"{stamped} ({i}){ext}")
        i += 1
    return candidate


def _write_atomic(path: str, data: bytes) -> None:
    parent = os.path.dirname(path) or "."
    os.makedirs(parent, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=".cairn-", dir=parent)
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


def _safe_chmod(path: str, mode: int) -> None:
    if not mode or os.name == "nt":
        return
    try:
        os.chmod(path, mode)
    except OSError as exc:
        logger.warning("Failed to set mode on %s: %s", path, exc)


def _safe_utime(path: str, mtime: Optional[float]) -> None:
    if mtime is None:
        return
    try:
        os.utime(path, (mtime, mtime))
    except OSError as exc:
        logger.warning("Failed to set timestamps on %s: %s", path, exc)


class RecoveryOrchestrator:
    def __init__(
        self,
        backend: BlobBackend,
        config: Optional[CairnConfig] = None,
        *,
        acl_provider: Optional[AclProvider] = None,
    ):
        self.config = config or CairnConfig()
        self.content = ContentStore(backend, self.config)
        self.acl_provider = acl_provider or AclProvider()

    def recover(
        self,
        manifest: Manifest,
        destination: str,
        file_filter: FileFilter = None,
        policy: Union[ConflictPolicy, str] = ConflictPolicy.OVERWRITE,
        *,
        passphrase: SecretLike,
    ) -> RecoveryReport:
        """Restore the selected records of ``manifest`` below ``destination``.

        A failing file is reported and left alone; the run moves on to the next
        one. Existing files are only touched once the replacement content has
        been fully reassembled and verified.
        """
        secret = as_secret(passphrase)
        policy = coerce_policy(policy)
        destination = os.path.abspath(destination)
        report = RecoveryReport(destination)
        try:
            os.makedirs(destination, exist_ok=True)
        except OSError as exc:
            raise IoError(f"Cannot create destination {destination}: {exc}") from exc

        selected = [r for r in manifest.files if _selector(file_filter)(r)]
        logger.info(
            "Recovering %d of %d records from manifest %s into %s (%s)",
            len(selected), len(manifest.files), manifest.id, destination, policy.value,
        )
        self._restore_folders(manifest, destination, selected if file_filter is not None else None)

        for record in selected:
            try:
                target = self._restore_record(record, destination, policy, secret)
            except (CairnError, OSError, ValueError) as exc:
                logger.warning("Recovery of %s failed: %s", record.path, exc)
                report.failures.append(FileFailure.from_exception(record.path, exc))
                continue
            if target is None:
                report.skipped.append(record.path)
            else:
                report.restored.append(target)

        logger.info(
            "Recovered %d, skipped %d, failed %d",
            len(report.restored), len(report.skipped), len(report.failures),
        )
        return report

    # ---- folders ----

    def _restore_folders(self, manifest: Manifest, destination: str, selected: Optional[Sequence[FileRecord]]) -> None:
        if selected is not None:
            prefixes = {norm_path(_record_name(r)) for r in selected}
        for rel, acl in sorted(manifest.folder_acls.items()):
            rel = "" if rel == "." else norm_path(rel)
            if selected is not None and rel and not any(p == rel or p.startswith(rel + "/") for p in prefixes):
                continue
            folder = join_recorded(destination, rel)
            try:
                os.makedirs(folder, exist_ok=True)
            except OSError as exc:
                logger.warning("Cannot create folder %s: %s", folder, exc)
                continue
            self._apply_acl(folder, acl)

    def _apply_acl(self, path: str, acl: Optional[str]) -> None:
        if not acl:
            return
        try:
            self.acl_provider.apply(path, acl)
        except (OSError, ValueError) as exc:
            logger.warning("Failed to apply ACL on %s: %s", path, exc)

    # ---- files ----

    def _restore_record(
        self, record: FileRecord, destination: str, policy: ConflictPolicy, passphrase
    ) -> Optional[str]:
        target = join_recorded(destination, _record_name(record))
        mtime = record.last_modified_utc.timestamp() if record.last_modified_utc else None

        if record.structure_kind == StructureKind.FOLDER_ONLY:
            if os.path.lexists(target) and not os.path.isdir(target):
                raise IoError(f"Cannot create folder over existing file: {target}")
            os.makedirs(target, exist_ok=True)
            _safe_chmod(target, record.attributes)
            _safe_utime(target, mtime)
            self._apply_acl(target, record.acl)
            return target

        if os.path.lexists(target):
            if policy == ConflictPolicy.SKIP:
                logger.info("Skipping %s (exists)", target)
                return None
            if policy == ConflictPolicy.RENAME:
                target = _next_free_path(target)
            elif os.path.isdir(target) and not os.path.islink(target):
                raise IoError(f"Cannot overwrite directory with file: {target}")

        data = self._reassemble_record(record, passphrase)
        if policy == ConflictPolicy.OVERWRITE and os.path.lexists(target):
            os.remove(target)
        _write_atomic(target, data)
        _safe_chmod(target, record.attributes)
        _safe_utime(target, mtime)
        self._apply_acl(target, record.acl)
        logger.debug("Restored %s (%d bytes)", target, len(data))
        return target

    def _reassemble_record(self, record: FileRecord, passphrase) -> bytes:
        if record.structure_kind == StructureKind.STRUCTURE_BASED:
            leaves = []
            for comp in record.components:
                payload = self._reassemble(comp.chunks, passphrase)
                if comp.chunks and combined_hash(c.hash for c in comp.chunks) != comp.hash:
                    raise IntegrityError(f"Component {comp.name!r} of {record.path}: chunk list does not match its hash")
                if len(payload) != comp.size:
                    raise IntegrityError(
                        f"Component {comp.name!r} of {record.path}: {len(payload)} bytes, expected {comp.size}"
                    )
                leaves.append((comp.entry_path, comp.container_formats, payload))
            data = rebuild(leaves, record.container_layouts)
        else:
            data = self._reassemble(record.chunks, passphrase)
        if len(data) != record.size:
            raise IntegrityError(f"{record.path}: reassembled {len(data)} bytes, expected {record.size}")
        if record.hash and sha256_hex(data) != record.hash:
            raise IntegrityError(f"{record.path}: whole-file hash mismatch")
        return data

    def _reassemble(self, chunks: Sequence[Chunk], passphrase) -> bytes:
        parts = []
        expected = 0
        for chunk in sorted(chunks, key=lambda c: c.offset):
            if chunk.offset != expected:
                raise IntegrityError(f"Chunk {chunk.hash} at offset {chunk.offset}, expected {expected}")
            try:
                piece = self.content.read(chunk, passphrase)
            except CairnError as exc:
                exc.chunk_hash = chunk.hash
                raise
            parts.append(piece)
            expected += len(piece)
        return b"".join(parts)
