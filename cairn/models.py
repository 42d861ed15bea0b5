"""Backup records and their JSON form.

Field names on the wire are camelCase and stable; every record round-trips
through ``to_dict``/``from_dict`` without loss.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from .constants import new_manifest_id
from .errors import SerializationError


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class BackupType(str, Enum):
    FULL = "Full"
    INCREMENTAL = "Incremental"


class TargetType(str, Enum):
    FILE = "File"
    FOLDER = "Folder"
    VOLUME = "Volume"


class StructureKind(str, Enum):
    CHUNK_BASED = "ChunkBased"
    STRUCTURE_BASED = "StructureBased"
    FOLDER_ONLY = "FolderOnly"


class ConflictPolicy(str, Enum):
    OVERWRITE = "Overwrite"
    SKIP = "Skip"
    RENAME = "Rename"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def datetime_from_ns(ns: int) -> datetime:
    """UTC datetime from a stat ``*_ns`` value, truncated to microseconds."""
    return _EPOCH + timedelta(microseconds=ns // 1000)


def format_time(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_time(value: Optional[str]) -> Optional[datetime]:
    if value is None or value == "":
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (TypeError, ValueError) as exc:
        raise SerializationError(f"Bad timestamp {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _require(d: Dict[str, Any], key: str) -> Any:
    try:
        return d[key]
    except KeyError:
        raise SerializationError(f"Missing field {key!r}") from None
    except TypeError:
        raise SerializationError(f"Expected an object, got {type(d).__name__}") from None


@dataclass
class Chunk:
    hash: str
    offset: int
    stored_size: int
    blob_key: str
    is_compressed: bool = True
    is_encrypted: bool = True
    # True only in the manifest of the run that uploaded the blob
    uploaded: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hash": self.hash,
            "offset": self.offset,
            "storedSize": self.stored_size,
            "blobKey": self.blob_key,
            "isCompressed": self.is_compressed,
            "isEncrypted": self.is_encrypted,
            "uploaded": self.uploaded,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Chunk":
        return cls(
            hash=str(_require(d, "hash")),
            offset=int(_require(d, "offset")),
            stored_size=int(_require(d, "storedSize")),
            blob_key=str(_require(d, "blobKey")),
            is_compressed=bool(d.get("isCompressed", True)),
            is_encrypted=bool(d.get("isEncrypted", True)),
            uploaded=bool(d.get("uploaded", False)),
        )

    def reused(self) -> "Chunk":
        """Copy referencing the same blob, not counted as uploaded."""
        return Chunk(
            hash=self.hash,
            offset=self.offset,
            stored_size=self.stored_size,
            blob_key=self.blob_key,
            is_compressed=self.is_compressed,
            is_encrypted=self.is_encrypted,
            uploaded=False,
        )


@dataclass
class Component:
    name: str
    hash: str
    size: int
    chunks: List[Chunk] = field(default_factory=list)
    # entry name at each nesting level and the format of the container holding it
    entry_path: List[str] = field(default_factory=list)
    container_formats: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "hash": self.hash,
            "size": self.size,
            "entryPath": list(self.entry_path),
            "containerFormats": list(self.container_formats),
            "chunks": [c.to_dict() for c in self.chunks],
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Component":
        name = str(_require(d, "name"))
        entry_path = [str(p) for p in d.get("entryPath") or [name]]
        formats = [str(f) for f in d.get("containerFormats") or ["zip"] * len(entry_path)]
        if len(formats) != len(entry_path):
            raise SerializationError(f"Component {name!r}: entryPath/containerFormats length mismatch")
        return cls(
            name=name,
            hash=str(_require(d, "hash")),
            size=int(_require(d, "size")),
            chunks=[Chunk.from_dict(c) for c in d.get("chunks") or []],
            entry_path=entry_path,
            container_formats=formats,
        )

    def reused(self) -> "Component":
        return Component(
            name=self.name,
            hash=self.hash,
            size=self.size,
            chunks=[c.reused() for c in self.chunks],
            entry_path=list(self.entry_path),
            container_formats=list(self.container_formats),
        )


@dataclass
class FileRecord:
    path: str
    relative_path: str = ""
    size: int = 0
    last_modified_utc: Optional[datetime] = None
    attributes: int = 0
    acl: Optional[str] = None
    hash: str = ""
    structure_kind: StructureKind = StructureKind.CHUNK_BASED
    chunks: List[Chunk] = field(default_factory=list)
    components: List[Component] = field(default_factory=list)
    last_backup_utc: Optional[datetime] = None
    # header layouts of split zip/gzip containers, see containers.Decomposer.split
    container_layouts: List[Dict[str, Any]] = field(default_factory=list)

    def all_chunks(self) -> List[Chunk]:
        out = list(self.chunks)
        for comp in self.components:
            out.extend(comp.chunks)
        return out

    def validate(self) -> None:
        kind = self.structure_kind
        if kind == StructureKind.FOLDER_ONLY and (self.chunks or self.components):
            raise SerializationError(f"{self.path}: FolderOnly record carries content")
        if kind == StructureKind.CHUNK_BASED and self.components:
            raise SerializationError(f"{self.path}: ChunkBased record carries components")
        if kind == StructureKind.STRUCTURE_BASED and (self.chunks or not self.components):
            raise SerializationError(f"{self.path}: StructureBased record must hold only components")
        if self.container_layouts and kind != StructureKind.STRUCTURE_BASED:
            raise SerializationError(f"{self.path}: only StructureBased records carry container layouts")
        for layout in self.container_layouts:
            if not isinstance(layout, dict) or not isinstance(layout.get("entryPath"), list):
                raise SerializationError(f"{self.path}: container layout without an entryPath")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "relativePath": self.relative_path,
            "size": self.size,
            "lastModifiedUtc": format_time(self.last_modified_utc),
            "attributes": self.attributes,
            "acl": self.acl,
            "hash": self.hash,
            "structureKind": self.structure_kind.value,
            "chunks": [c.to_dict() for c in self.chunks],
            "components": [c.to_dict() for c in self.components],
            "lastBackupUtc": format_time(self.last_backup_utc),
            "containerLayouts": list(self.container_layouts),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "FileRecord":
        try:
            kind = StructureKind(d.get("structureKind", StructureKind.CHUNK_BASED.value))
        except ValueError as exc:
            raise SerializationError(str(exc)) from exc
        acl = d.get("acl")
        record = cls(
            path=str(_require(d, "path")),
            relative_path=str(d.get("relativePath") or ""),
            size=int(d.get("size", 0)),
            last_modified_utc=parse_time(d.get("lastModifiedUtc")),
            attributes=int(d.get("attributes", 0)),
            acl=str(acl) if acl is not None else None,
            hash=str(d.get("hash") or ""),
            structure_kind=kind,
            chunks=[Chunk.from_dict(c) for c in d.get("chunks") or []],
            components=[Component.from_dict(c) for c in d.get("components") or []],
            last_backup_utc=parse_time(d.get("lastBackupUtc")),
            container_layouts=list(d.get("containerLayouts") or []),
        )
        record.validate()
        return record


@dataclass
class Manifest:
    id: str = field(default_factory=new_manifest_id)
    timestamp: datetime = field(default_factory=utcnow)
    type: BackupType = BackupType.FULL
    target: TargetType = TargetType.FILE
    files: List[FileRecord] = field(default_factory=list)
    total_size: int = 0
    compressed_size: int = 0
    backup_size: int = 0
    folder_acls: Dict[str, Optional[str]] = field(default_factory=dict)

    def aggregate(self) -> None:
        """Derive the size totals from the file records."""
        self.total_size = sum(f.size for f in self.files)
        chunks = [c for f in self.files for c in f.all_chunks()]
        self.compressed_size = sum(c.stored_size for c in chunks)
        self.backup_size = sum(c.stored_size for c in chunks if c.uploaded)

    def find(self, path: str) -> Optional[FileRecord]:
        for record in self.files:
            if record.path == path:
                return record
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "timestamp": format_time(self.timestamp),
            "type": self.type.value,
            "target": self.target.value,
            "files": [f.to_dict() for f in self.files],
            "totalSize": self.total_size,
            "compressedSize": self.compressed_size,
            "backupSize": self.backup_size,
            "folderAcls": dict(self.folder_acls),
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Manifest":
        try:
            backup_type = BackupType(_require(d, "type"))
            target = TargetType(_require(d, "target"))
            timestamp = parse_time(_require(d, "timestamp"))
            acls = d.get("folderAcls") or {}
            return cls(
                id=str(_require(d, "id")),
                timestamp=timestamp,
                type=backup_type,
                target=target,
                files=[FileRecord.from_dict(f) for f in _require(d, "files")],
                total_size=int(d.get("totalSize", 0)),
                compressed_size=int(d.get("compressedSize", 0)),
                backup_size=int(d.get("backupSize", 0)),
                folder_acls={str(k): (str(v) if v is not None else None) for k, v in acls.items()},
            )
        except SerializationError:
            raise
        except (TypeError, ValueError, AttributeError) as exc:
            raise SerializationError(f"Malformed manifest: {exc}") from exc
