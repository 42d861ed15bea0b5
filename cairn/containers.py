"""Container detection, decomposition and repacking.

Structured files are split into leaf streams before chunking, so that a small
edit inside an archive only changes the chunks of the entry that changed.
Formats form a closed set:

- ``zip``: zip archives and Office Open XML documents; one entry per file member.
- ``gzip``: a single member; the entry is named from the header (FNAME) or the
  container name without its ``.gz`` suffix.
- ``database-backup``: Microsoft Tape Format (SQL Server ``.bak``) streams, split
  into content-defined segments that concatenate back to the original.
- ``opaque``: a file flagged as a container by extension whose bytes match no
  known signature (``.7z``, ``.rar``, corrupted archives); kept as one leaf.

Nesting is walked with an explicit work stack. Each level records the entry
name and the format of the container holding it, which is what ``rebuild``
needs to put the original container hierarchy back together. Every zip or
gzip container that is split also yields a layout: the member headers,
comments, timestamps and deflate level needed to write the same bytes again.
A split is only worth keeping when ``Decomposition.reproduces`` confirms that
the rebuild matches the original exactly.
"""

from __future__ import annotations

import base64
import gzip
import io
import logging
import os
import struct
import zipfile
import zlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .chunker import Chunker
from .config import ChunkerConfig
from .constants import (
    ARCHIVE_EXTENSIONS,
    GZIP_MAGIC,
    LEGACY_BAK_MAGIC,
    MAX_CONTAINER_DEPTH,
    MTF_MAGIC,
    OFFICE_EXTENSIONS,
    ZIP_MAGICS,
)
from .errors import IntegrityError, RecursionLimitExceeded

logger = logging.getLogger(__name__)

_CONTAINER_EXTENSIONS = frozenset(ARCHIVE_EXTENSIONS + OFFICE_EXTENSIONS)
_GZIP_SUFFIXES = {".gz": "", ".gzip": "", ".tgz": ".tar"}

# gzip header flag bits (RFC 1952)
_FHCRC = 0x02
_FEXTRA = 0x04
_FNAME = 0x08
_FCOMMENT = 0x10

# tried in this order when looking for the level an entry was deflated with
_DEFLATE_LEVELS = (6, 9, 1, 5, 4, 3, 2, 7, 8, 0)

Layout = Dict[str, Any]


class ContainerFormat(str, Enum):
    ZIP = "zip"
    GZIP = "gzip"
    DATABASE_BACKUP = "database-backup"
    OPAQUE = "opaque"
    UNKNOWN = "unknown"


@dataclass
class Leaf:
    entry_path: List[str]
    container_formats: List[str]
    data: bytes = field(repr=False)

    @property
    def name(self) -> str:
        return "/".join(self.entry_path)


def _extension(name: str) -> str:
    base = name.replace("\\", "/").rsplit("/", 1)[-1]
    return os.path.splitext(base)[1].lower()


def _basename(name: str) -> str:
    return name.replace("\\", "/").rstrip("/").rsplit("/", 1)[-1]


def is_container(name: str) -> bool:
    return _extension(name) in _CONTAINER_EXTENSIONS


def detect_type(data: bytes) -> ContainerFormat:
    header = bytes(data[:8])
    if any(header.startswith(m) for m in ZIP_MAGICS):
        return ContainerFormat.ZIP
    if header.startswith(GZIP_MAGIC):
        return ContainerFormat.GZIP
    if header.startswith(MTF_MAGIC) or header.startswith(LEGACY_BAK_MAGIC):
        return ContainerFormat.DATABASE_BACKUP
    return ContainerFormat.UNKNOWN


def probe(name: str, data: bytes) -> Optional[ContainerFormat]:
    """Container format of a named stream, or None for a plain leaf.

    The extension decides first; header sniffing is only used when the name
    has no extension at all.
    """
    if _extension(name):
        if not is_container(name):
            return None
        fmt = detect_type(data)
        return ContainerFormat.OPAQUE if fmt == ContainerFormat.UNKNOWN else fmt
    fmt = detect_type(data)
    return None if fmt == ContainerFormat.UNKNOWN else fmt


def _gzip_member_name(data: bytes) -> Optional[str]:
    if len(data) < 10 or not data.startswith(GZIP_MAGIC):
        return None
    flags = data[3]
    pos = 10
    if flags & _FEXTRA:
        if len(data) < pos + 2:
            return None
        pos += 2 + int.from_bytes(data[pos:pos + 2], "little")
    if not flags & _FNAME:
        return None
    end = data.find(b"\x00", pos)
    if end < 0:
        return None
    name = _basename(data[pos:end].decode("latin-1"))
    return name or None


def _gzip_inner_name(container_name: str) -> str:
    base = _basename(container_name)
    root, ext = os.path.splitext(base)
    if ext.lower() in _GZIP_SUFFIXES:
        return (root + _GZIP_SUFFIXES[ext.lower()]) or "data"
    return base or "data"


def _b64(raw: Optional[bytes]) -> Optional[str]:
    return None if raw is None else base64.b64encode(raw).decode("ascii")


def _unb64(text: Optional[str]) -> bytes:
    return base64.b64decode(text) if text else b""


def _deflate_raw(payload: bytes, level: Optional[int]) -> bytes:
    compressor = zlib.compressobj(zlib.Z_DEFAULT_COMPRESSION if level is None else level, zlib.DEFLATED, -15)
    return compressor.compress(payload) + compressor.flush()


def _find_deflate_level(raw: bytes, payload: bytes, preferred: Sequence[int] = ()) -> Optional[int]:
    """Level whose raw deflate output of ``payload`` equals ``raw``, if any."""
    for level in list(preferred) + [lv for lv in _DEFLATE_LEVELS if lv not in preferred]:
        if _deflate_raw(payload, level) == raw:
            return level
    return None


def _zip_member_raw(data: bytes, info: zipfile.ZipInfo) -> bytes:
    """Compressed bytes of one member, located through its local file header."""
    start = info.header_offset
    header = data[start:start + 30]
    if len(header) < 30 or not header.startswith(b"PK\x03\x04"):
        return b""
    name_len = int.from_bytes(header[26:28], "little")
    extra_len = int.from_bytes(header[28:30], "little")
    begin = start + 30 + name_len + extra_len
    return data[begin:begin + info.compress_size]


def _zip_member_layout(data: bytes, info: zipfile.ZipInfo, payload: bytes) -> Layout:
    level = None
    if info.compress_type == zipfile.ZIP_DEFLATED and not info.is_dir():
        # general purpose bit 1 is set by writers that used maximum compression
        preferred = (9,) if info.flag_bits & 0x02 else ()
        level = _find_deflate_level(_zip_member_raw(data, info), payload, preferred)
    return {
        "name": info.filename,
        "dateTime": list(info.date_time),
        "compressType": info.compress_type,
        "compressLevel": level,
        "compressSize": info.compress_size,
        "createSystem": info.create_system,
        "createVersion": info.create_version,
        "extractVersion": info.extract_version,
        "reserved": info.reserved,
        "flagBits": info.flag_bits,
        "internalAttr": info.internal_attr,
        "externalAttr": info.external_attr,
        "comment": _b64(info.comment),
        "extra": _b64(info.extra),
    }


def _zipinfo(member: Layout) -> zipfile.ZipInfo:
    info = zipfile.ZipInfo(member["name"], tuple(member["dateTime"]))
    info.compress_type = int(member["compressType"])
    info.create_system = int(member["createSystem"])
    info.create_version = int(member["createVersion"])
    info.extract_version = int(member["extractVersion"])
    info.reserved = int(member.get("reserved", 0))
    info.flag_bits = int(member.get("flagBits", 0))
    info.internal_attr = int(member.get("internalAttr", 0))
    info.external_attr = int(member["externalAttr"])
    info.comment = _unb64(member.get("comment"))
    info.extra = _unb64(member.get("extra"))
    return info


def _gzip_header(data: bytes) -> Optional[Tuple[Layout, int]]:
    """Header fields of a gzip member and the offset of its deflate body."""
    if len(data) < 18 or not data.startswith(GZIP_MAGIC) or data[2] != 8:
        return None
    flags = data[3]
    layout: Layout = {
        "flags": flags,
        "mtime": int.from_bytes(data[4:8], "little"),
        "xfl": data[8],
        "os": data[9],
        "extra": None,
        "fname": None,
        "comment": None,
    }
    pos = 10
    if flags & _FEXTRA:
        xlen = int.from_bytes(data[pos:pos + 2], "little")
        layout["extra"] = _b64(data[pos + 2:pos + 2 + xlen])
        pos += 2 + xlen
    for flag, key in ((_FNAME, "fname"), (_FCOMMENT, "comment")):
        if flags & flag:
            end = data.find(b"\x00", pos)
            if end < 0:
                return None
            layout[key] = _b64(data[pos:end])
            pos = end + 1
    if flags & _FHCRC:
        pos += 2
    if pos > len(data) - 8:
        return None
    return layout, pos


def _gzip_layout(data: bytes, payload: bytes) -> Optional[Layout]:
    parsed = _gzip_header(data)
    if parsed is None:
        return None
    layout, body_start = parsed
    # XFL 2 is written for level 9, XFL 4 for the fastest levels
    preferred = {2: (9,), 4: (1, 0)}.get(layout["xfl"], ())
    layout["compressLevel"] = _find_deflate_level(data[body_start:-8], payload, preferred)
    return layout


def _gzip_with_layout(payload: bytes, layout: Layout) -> bytes:
    flags = int(layout["flags"])
    header = bytearray(GZIP_MAGIC + b"\x08")
    header.append(flags)
    header += int(layout["mtime"]).to_bytes(4, "little")
    header.append(int(layout["xfl"]))
    header.append(int(layout["os"]))
    if flags & _FEXTRA:
        extra = _unb64(layout.get("extra"))
        header += len(extra).to_bytes(2, "little") + extra
    if flags & _FNAME:
        header += _unb64(layout.get("fname")) + b"\x00"
    if flags & _FCOMMENT:
        header += _unb64(layout.get("comment")) + b"\x00"
    if flags & _FHCRC:
        header += (zlib.crc32(header) & 0xFFFF).to_bytes(2, "little")
    trailer = (zlib.crc32(payload) & 0xFFFFFFFF).to_bytes(4, "little") + (len(payload) & 0xFFFFFFFF).to_bytes(4, "little")
    return bytes(header) + _deflate_raw(payload, layout.get("compressLevel")) + trailer


def _zip_with_layout(entries: Sequence[Tuple[str, bytes]], layout: Layout) -> bytes:
    pending = list(entries)
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for member in layout["members"]:
            info = _zipinfo(member)
            if info.is_dir():
                if not member.get("compressSize") and hasattr(zf, "mkdir"):
                    info.CRC = 0
                    zf.mkdir(info)
                else:
                    zf.writestr(info, b"", compresslevel=member.get("compressLevel"))
                continue
            if not pending:
                raise ValueError(f"zip layout lists {info.filename!r} but no entry is left for it")
            entry_name, payload = pending.pop(0)
            if entry_name != info.filename:
                raise ValueError(f"zip layout expects {info.filename!r}, got entry {entry_name!r}")
            zf.writestr(info, payload, compresslevel=member.get("compressLevel"))
        if pending:
            raise ValueError(f"{len(pending)} zip entries are missing from the layout")
        zf.comment = _unb64(layout.get("comment"))
    return buf.getvalue()


def _split(
    data: bytes,
    fmt: ContainerFormat,
    name: str,
    chunker: Optional[Chunker],
) -> Tuple[List[Tuple[str, bytes]], Optional[Layout]]:
    if fmt == ContainerFormat.ZIP:
        entries: List[Tuple[str, bytes]] = []
        members: List[Layout] = []
        try:
            with zipfile.ZipFile(io.BytesIO(data)) as zf:
                for info in zf.infolist():
                    payload = b"" if info.is_dir() else zf.read(info)
                    members.append(_zip_member_layout(data, info, payload))
                    if not info.is_dir():
                        entries.append((info.filename, payload))
                comment = zf.comment
        except (zipfile.BadZipFile, zlib.error, EOFError, OSError, RuntimeError,
                NotImplementedError, ValueError) as exc:
            raise IntegrityError(f"Corrupted zip container {name!r}: {exc}") from exc
        return entries, {"format": fmt.value, "comment": _b64(comment), "members": members}
    if fmt == ContainerFormat.GZIP:
        try:
            inner = gzip.decompress(data)
        except (OSError, EOFError, zlib.error) as exc:
            raise IntegrityError(f"Corrupted gzip container {name!r}: {exc}") from exc
        layout = _gzip_layout(data, inner)
        if layout is not None:
            layout["format"] = fmt.value
        return [(_gzip_member_name(data) or _gzip_inner_name(name), inner)], layout
    if fmt == ContainerFormat.DATABASE_BACKUP:
        chunker = chunker or Chunker()
        return [
            (f"part-{i:05d}.seg", segment)
            for i, (_, segment) in enumerate(chunker.iter_chunks(data))
        ], None
    if fmt == ContainerFormat.OPAQUE:
        return [(_basename(name) or "data", bytes(data))], None
    raise IntegrityError(f"Not a recognized container: {name!r}")


def decompose(
    data: bytes,
    fmt: Optional[ContainerFormat] = None,
    name: str = "",
    chunker: Optional[Chunker] = None,
) -> List[Tuple[str, bytes]]:
    """One level of decomposition: the ordered ``(inner_name, inner_bytes)`` entries."""
    return _split(data, fmt or detect_type(data), name, chunker)[0]


def repack(fmt: str, entries: Sequence[Tuple[str, bytes]], layout: Optional[Layout] = None) -> bytes:
    """Inverse of ``decompose`` for one level.

    With the ``layout`` recorded at decomposition time zip and gzip containers
    are written member for member as they were; without it they get fresh
    headers and maximum compression.
    """
    fmt = ContainerFormat(fmt)
    if fmt == ContainerFormat.ZIP:
        if layout is not None:
            return _zip_with_layout(entries, layout)
        buf = io.BytesIO()
        with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as zf:
            for entry_name, payload in entries:
                zf.writestr(entry_name, payload)
        return buf.getvalue()
    if fmt == ContainerFormat.GZIP:
        if len(entries) != 1:
            raise ValueError(f"gzip holds exactly one entry, got {len(entries)}")
        entry_name, payload = entries[0]
        if layout is not None:
            return _gzip_with_layout(payload, layout)
        try:
            entry_name.encode("latin-1")
        except UnicodeEncodeError:
            entry_name = ""
        buf = io.BytesIO()
        with gzip.GzipFile(filename=entry_name, mode="wb", fileobj=buf, compresslevel=9, mtime=0) as gz:
            gz.write(payload)
        return buf.getvalue()
    if fmt == ContainerFormat.DATABASE_BACKUP:
        return b"".join(payload for _, payload in entries)
    if fmt == ContainerFormat.OPAQUE:
        if len(entries) != 1:
            raise ValueError(f"opaque container holds exactly one entry, got {len(entries)}")
        return entries[0][1]
    raise ValueError(f"cannot repack format {fmt.value}")


@dataclass
class Decomposition:
    leaves: List[Leaf] = field(default_factory=list)
    # one layout per split zip/gzip container, keyed by "entryPath" ([] for the file itself)
    layouts: List[Layout] = field(default_factory=list)

    def rebuild(self) -> bytes:
        return rebuild([(l.entry_path, l.container_formats, l.data) for l in self.leaves], self.layouts)

    def reproduces(self, original: bytes) -> bool:
        """True when rebuilding from the leaves yields exactly ``original``."""
        try:
            return self.rebuild() == original
        except IntegrityError as exc:
            logger.debug("Rebuild check failed: %s", exc)
            return False


@dataclass
class _Work:
    data: bytes = field(repr=False)
    fmt: Optional[ContainerFormat]
    path: List[str]
    formats: List[str]
    depth: int


class Decomposer:
    def __init__(self, max_depth: int = MAX_CONTAINER_DEPTH, chunker_config: Optional[ChunkerConfig] = None):
        self.max_depth = max_depth
        self.chunker = Chunker(chunker_config)

    def leaves(self, name: str, data: bytes) -> List[Leaf]:
        """Recursively decompose ``data`` into leaf streams in entry order.

        Returns an empty list when ``name``/``data`` is not a container or the
        top-level container has no entries.
        """
        return self.split(name, data).leaves

    def split(self, name: str, data: bytes) -> Decomposition:
        """Leaves plus the layouts of the zip/gzip containers they came out of."""
        top = probe(name, data)
        if top is None:
            return Decomposition()
        base = _basename(name) or "data"
        if top == ContainerFormat.OPAQUE:
            return Decomposition([Leaf([base], [ContainerFormat.OPAQUE.value], bytes(data))])

        out = Decomposition()
        stack = [_Work(data, top, [], [], 1)]
        while stack:
            work = stack.pop()
            if work.fmt is None:
                out.leaves.append(Leaf(work.path, work.formats, work.data))
                continue
            if work.depth > self.max_depth:
                raise RecursionLimitExceeded("/".join(work.path) or base, work.depth, self.max_depth)
            label = "/".join(work.path) or base
            try:
                entries, layout = _split(work.data, work.fmt, label if work.path else base, self.chunker)
            except IntegrityError as exc:
                logger.warning("Treating %s as an opaque stream: %s", label, exc)
                if not work.path:
                    return Decomposition([Leaf([base], [ContainerFormat.OPAQUE.value], bytes(data))])
                out.leaves.append(Leaf(work.path, work.formats, work.data))
                continue
            if not entries:
                if not work.path:
                    return Decomposition()
                out.leaves.append(Leaf(work.path, work.formats, work.data))
                continue
            if layout is not None:
                layout["entryPath"] = list(work.path)
                out.layouts.append(layout)
            children = []
            for entry_name, payload in entries:
                child_fmt = probe(entry_name, payload)
                if child_fmt == ContainerFormat.OPAQUE:
                    child_fmt = None
                children.append(
                    _Work(
                        payload,
                        child_fmt,
                        work.path + [entry_name],
                        work.formats + [work.fmt.value],
                        work.depth + 1,
                    )
                )
            stack.extend(reversed(children))
        return out


def rebuild(
    leaves: Sequence[Tuple[Sequence[str], Sequence[str], bytes]],
    layouts: Sequence[Layout] = (),
) -> bytes:
    """Reassemble a container from ``(entry_path, container_formats, data)`` leaves.

    Leaves must be in decomposition order: entries of a nested container are
    contiguous. ``layouts`` are the ones ``Decomposer.split`` recorded; nested
    containers without one are repacked with fresh headers.
    """
    if not leaves:
        raise ValueError("no leaves to rebuild")
    by_path = {tuple(layout.get("entryPath") or ()): layout for layout in layouts}
    try:
        return _assemble(leaves[0][1][0], list(leaves), 0, by_path)
    except (KeyError, TypeError, ValueError, OverflowError, NotImplementedError, struct.error,
            zipfile.LargeZipFile, zlib.error) as exc:
        raise IntegrityError(f"Cannot rebuild container: {exc!r}") from exc


def _assemble(fmt: str, items, level: int, layouts: Dict[Tuple[str, ...], Layout]) -> bytes:
    entries: List[list] = []
    for path, formats, payload in items:
        if len(path) <= level or len(formats) <= level:
            raise ValueError(f"leaf {'/'.join(path)!r} too shallow for level {level}")
        name = path[level]
        if len(path) == level + 1:
            entries.append([name, None, payload])
            continue
        last = entries[-1] if entries else None
        if last is not None and last[1] is not None and last[0] == name:
            last[1].append((path, formats, payload))
        else:
            entries.append([name, [(path, formats, payload)], None])
    packed = []
    for name, group, payload in entries:
        if group is not None:
            payload = _assemble(group[0][1][level + 1], group, level + 1, layouts)
        packed.append((name, payload))
    prefix = tuple(items[0][0][:level])
    return repack(fmt, packed, layouts.get(prefix))
