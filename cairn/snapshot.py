from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

logger = logging.getLogger(__name__)


@dataclass
class Snapshot:
    path: str
    snapshot_id: Optional[str] = None


class SnapshotProvider:
    """Point-in-time read-only view of a volume.

    The default reads the live volume directly. Platform providers (VSS, LVM,
    ZFS, btrfs) override ``create``/``delete``; the backup only ever reads from
    ``Snapshot.path`` and records paths relative to the real volume root.
    """

    def create(self, volume_root: str) -> Snapshot:
        return Snapshot(path=os.path.abspath(volume_root))

    def delete(self, snapshot: Snapshot) -> None:
        return None

    @contextmanager
    def snapshot(self, volume_root: str) -> Iterator[Snapshot]:
        snap = self.create(volume_root)
        try:
            yield snap
        finally:
            try:
                self.delete(snap)
            except OSError as exc:
                logger.warning("Could not release snapshot %s: %s", snap.snapshot_id or snap.path, exc)
