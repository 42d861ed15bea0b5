from __future__ import annotations

import json
import logging
from typing import List, Optional

from .backend import BlobBackend, BlobListing
from .constants import MANIFEST_KEY_TIME_FORMAT, MANIFEST_PREFIX
from .errors import CairnError, NotFoundError, SerializationError
from .models import Manifest, format_time

logger = logging.getLogger(__name__)


def manifest_key(manifest: Manifest) -> str:
    # the timestamp is for humans browsing the store; ordering never parses it
    stamp = manifest.timestamp.strftime(MANIFEST_KEY_TIME_FORMAT)
    return f"{MANIFEST_PREFIX}backup_{stamp}_{manifest.id}.json"


def _key_id(key: str) -> str:
    stem = key[len(MANIFEST_PREFIX):]
    if stem.endswith(".json"):
        stem = stem[: -len(".json")]
    parts = stem.split("_", 3)
    return parts[3] if len(parts) == 4 else stem


def dumps_manifest(manifest: Manifest) -> bytes:
    try:
        return json.dumps(manifest.to_dict(), indent=2, ensure_ascii=False).encode("utf-8")
    except (TypeError, ValueError) as exc:
        raise SerializationError(f"Cannot serialize manifest {manifest.id}: {exc}") from exc


def loads_manifest(data: bytes) -> Manifest:
    try:
        doc = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise SerializationError(f"Manifest is not valid JSON: {exc}") from exc
    if not isinstance(doc, dict):
        raise SerializationError("Manifest root must be an object")
    return Manifest.from_dict(doc)


class ManifestStore:
    """Persists manifests as immutable JSON objects under ``manifests/``."""

    def __init__(self, backend: BlobBackend):
        self.backend = backend

    def save(self, manifest: Manifest) -> str:
        key = manifest_key(manifest)
        if self.backend.exists(key):
            raise SerializationError(f"Manifest {manifest.id} already persisted at {key}")
        self.backend.put(
            key,
            dumps_manifest(manifest),
            {"contentType": "application/json", "manifestId": manifest.id,
             "timestamp": format_time(manifest.timestamp) or ""},
        )
        logger.info("Saved manifest %s (%d files) as %s", manifest.id, len(manifest.files), key)
        return key

    def _listing(self) -> List[BlobListing]:
        return [b for b in self.backend.list_keys(MANIFEST_PREFIX) if b.key.endswith(".json")]

    def load(self, key: str) -> Manifest:
        return loads_manifest(self.backend.download(key))

    def load_latest(self) -> Optional[Manifest]:
        """Newest readable manifest by backend creation time, or None."""
        for blob in sorted(self._listing(), key=lambda b: b.created_at, reverse=True):
            try:
                return self.load(blob.key)
            except (CairnError, OSError) as exc:
                logger.warning("Skipping unreadable manifest %s: %s", blob.key, exc)
        return None

    def load_all(self) -> List[Manifest]:
        """All readable manifests, most recent first."""
        loaded = []
        for blob in self._listing():
            try:
                loaded.append((self.load(blob.key), blob.created_at))
            except (CairnError, OSError) as exc:
                logger.warning("Skipping unreadable manifest %s: %s", blob.key, exc)
        loaded.sort(key=lambda pair: (pair[0].timestamp, pair[1]), reverse=True)
        return [m for m, _ in loaded]

    def find(self, manifest_id: str) -> Manifest:
        """Manifest by id (or unique id prefix)."""
        matches = [b for b in self._listing() if _key_id(b.key).startswith(manifest_id)]
        exact = [b for b in matches if _key_id(b.key) == manifest_id]
        matches = exact or matches
        if not matches:
            raise NotFoundError(f"{MANIFEST_PREFIX}*_{manifest_id}*.json")
        if len(matches) > 1:
            raise SerializationError(f"Manifest id {manifest_id!r} is ambiguous")
        return self.load(matches[0].key)
