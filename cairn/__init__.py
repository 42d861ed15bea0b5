"""
Cairn: deduplicating, encrypted, incremental backups over a blob store.

Features:

- Content-defined chunking (FastCDC-style gear hash) with content addresses
  derived from the SHA-256 of each chunk's plaintext, so identical data is
  stored once across files and runs.
- Every stored chunk compressed (deflate) and encrypted (AES-256 with a
  PBKDF2-derived key, fresh salt and IV per blob); the transforms applied are
  recorded next to each blob and honoured on read.
- Archives, Office documents and database backups are decomposed into their
  entries (recursively, up to ten container levels) before chunking, so a
  small change inside a container only stores the entry that changed.
- Immutable JSON manifests per run; unchanged files reuse the prior run's
  chunks.
- Recovery with overwrite/skip/rename conflict policies, verified against the
  recorded content hashes.
"""

__version__ = "0.1"

__all__ = [
    "backup",
    "recovery",
    "backend",
    "manifest",
    "containers",
    "chunker",
]

# Programmatic API: cairn.backup.BackupOrchestrator and
# cairn.recovery.RecoveryOrchestrator over a cairn.backend.BlobBackend; the
# CLI functions in cairn.cli (cmd_backup/cmd_recover) take normal parameters.
