"""Filesystem side of a backup: tree enumeration, attributes and opaque ACLs."""

from __future__ import annotations

import base64
import errno
import logging
import os
import stat
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .errors import IoError
from .pathutil import norm_path

logger = logging.getLogger(__name__)

_POSIX_ACL_XATTR = "system.posix_acl_access"
_SKIP_DIR_ATTRIBUTES = stat.FILE_ATTRIBUTE_REPARSE_POINT | stat.FILE_ATTRIBUTE_HIDDEN | stat.FILE_ATTRIBUTE_SYSTEM


class AclProvider:
    """Reads and reapplies a platform ACL as an opaque string. Default: none."""

    def read(self, path: str) -> Optional[str]:
        return None

    def apply(self, path: str, acl: str) -> None:
        return None


class XattrAclProvider(AclProvider):
    """POSIX access ACLs carried as base64 of the raw extended attribute."""

    def read(self, path: str) -> Optional[str]:
        try:
            raw = os.getxattr(path, _POSIX_ACL_XATTR, follow_symlinks=False)
        except OSError as exc:
            if exc.errno not in (errno.ENODATA, errno.ENOTSUP, getattr(errno, "ENOATTR", errno.ENODATA)):
                logger.debug("ACL read failed for %s: %s", path, exc)
            return None
        return base64.b64encode(raw).decode("ascii")

    def apply(self, path: str, acl: str) -> None:
        os.setxattr(path, _POSIX_ACL_XATTR, base64.b64decode(acl), follow_symlinks=False)


def default_acl_provider() -> AclProvider:
    if hasattr(os, "getxattr") and hasattr(os, "setxattr"):
        return XattrAclProvider()
    return AclProvider()


def read_acl(provider: AclProvider, path: str) -> Optional[str]:
    """ACL capture never fails a backup; errors leave the ACL empty."""
    try:
        return provider.read(path)
    except (OSError, ValueError) as exc:
        logger.debug("ACL capture failed for %s: %s", path, exc)
        return None


def file_attributes(st: os.stat_result) -> int:
    win_attrs = getattr(st, "st_file_attributes", None)
    if win_attrs is not None:
        return int(win_attrs)
    return stat.S_IMODE(st.st_mode)


def _skip_directory(entry: os.DirEntry) -> bool:
    """Link, hidden, or system directories are not descended into."""
    if entry.is_symlink():
        return True
    if entry.name.startswith("."):
        return True
    try:
        st = entry.stat(follow_symlinks=False)
    except OSError:
        return True
    return bool(getattr(st, "st_file_attributes", 0) & _SKIP_DIR_ATTRIBUTES)


@dataclass
class WalkEntry:
    path: str
    relative_path: str
    stat: os.stat_result = field(repr=False)
    is_dir: bool = False


@dataclass
class WalkResult:
    files: List[WalkEntry] = field(default_factory=list)
    empty_dirs: List[WalkEntry] = field(default_factory=list)
    folder_acls: Dict[str, Optional[str]] = field(default_factory=dict)
    errors: List[Tuple[str, str]] = field(default_factory=list)


def _join_rel(base: str, name: str) -> str:
    return norm_path(f"{base}/{name}") if base else norm_path(name)


def walk_tree(root: str, rel_base: str = "", acl_provider: Optional[AclProvider] = None) -> WalkResult:
    """Enumerate regular files under ``root`` depth-first in name order.

    Relative paths are ``rel_base``-prefixed forward-slash paths; the root
    directory itself is recorded as ``rel_base`` (or ``'.'`` when empty).
    The root is always walked even if it would be skipped as a subdirectory.
    """
    acl_provider = acl_provider or AclProvider()
    result = WalkResult()
    root = os.path.abspath(root)
    if not os.path.isdir(root):
        raise IoError(f"Not a directory: {root}")

    stack: List[Tuple[str, str, bool]] = [(root, norm_path(rel_base), True)]
    while stack:
        current, rel, is_root = stack.pop()
        result.folder_acls[rel or "."] = read_acl(acl_provider, current)
        try:
            with os.scandir(current) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError as exc:
            if is_root:
                raise IoError(f"Cannot list {current}: {exc}") from exc
            logger.warning("Skipping unreadable directory %s: %s", current, exc)
            result.errors.append((current, str(exc)))
            continue

        subdirs = []
        has_content = False
        for entry in entries:
            try:
                if entry.is_dir(follow_symlinks=False):
                    if _skip_directory(entry):
                        logger.debug("Skipping directory %s", entry.path)
                        continue
                    subdirs.append((entry.path, _join_rel(rel, entry.name), False))
                    has_content = True
                elif entry.is_file(follow_symlinks=False):
                    result.files.append(
                        WalkEntry(entry.path, _join_rel(rel, entry.name), entry.stat(follow_symlinks=False))
                    )
                    has_content = True
                elif entry.is_symlink():
                    logger.debug("Skipping symlink %s", entry.path)
            except OSError as exc:
                logger.warning("Skipping %s: %s", entry.path, exc)
                result.errors.append((entry.path, str(exc)))

        if not has_content and not is_root:
            try:
                result.empty_dirs.append(WalkEntry(current, rel, os.stat(current), is_dir=True))
            except OSError as exc:
                result.errors.append((current, str(exc)))
        stack.extend(reversed(subdirs))
    return result
