from __future__ import annotations

import os


def norm_path(p: str) -> str:
    """Canonical form of a recorded relative path: forward slashes, no empty or
    '.' segments, no leading or trailing slash. '..' is rejected with ValueError.
    """
    parts = []
    for segment in p.replace("\\", "/").split("/"):
        if segment in ("", "."):
            continue
        if segment == "..":
            raise ValueError(f"Path may not contain '..': {p!r}")
        parts.append(segment)
    return "/".join(parts)


def join_recorded(dest_root: str, rel: str) -> str:
    """Map a recorded relative path below ``dest_root`` on this platform."""
    rel = norm_path(rel)
    if not rel:
        return dest_root
    return os.path.join(dest_root, *rel.split("/"))
