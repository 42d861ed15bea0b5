from __future__ import annotations

import argparse
import getpass as _getpass
import json as _json
import os
import sys
import time
from typing import List, Optional

from cairn.backend import LocalBackend
from cairn.backup import BackupOrchestrator, BackupReport
from cairn.config import CairnConfig, POLICY_REUSE, POLICY_STORE, Secret, passphrase_from_env
from cairn.constants import CIPHER_AES_CBC, CIPHER_AES_GCM, CIPHER_NONE, CODEC_DEFLATE, CODEC_GZIP, CODEC_NONE
from cairn.errors import CairnError
from cairn.logging_config import register_secret, setup_logging
from cairn.manifest import ManifestStore
from cairn.models import ConflictPolicy, Manifest, TargetType, format_time
from cairn.recovery import RecoveryOrchestrator
from cairn.walker import default_acl_provider


def _human(n: int) -> str:
    """Format a byte count for report lines (bytes below 1 MiB, MiB above)."""
    mib = n / (1024.0 * 1024.0)
    return f"{n} B" if n < 1024 * 1024 else f"{mib:.2f} MiB"


def _resolve_passphrase(given: Optional[str]) -> Secret:
    """Passphrase from the command line, then CAIRN_PASSPHRASE, then a prompt.

    Args:
        given: Value of --passphrase, or None when the flag was not passed.
    """
    if given:
        return Secret(given)
    from_env = passphrase_from_env()
    if from_env is not None:
        return from_env
    value = _getpass.getpass("Passphrase: ")
    if not value:
        raise ValueError("A passphrase is required")
    return Secret(value)


def _open_store(store: Optional[str]) -> LocalBackend:
    """Open the local blob store.

    Args:
        store: Store directory from --store. If None, CAIRN_STORE is used.
    """
    store = store or os.environ.get("CAIRN_STORE")
    if not store:
        raise ValueError("No store given: pass --store or set CAIRN_STORE")
    return LocalBackend(store)


def _config(args) -> CairnConfig:
    """Environment configuration with the subcommand's flags applied on top.

    Args:
        args: Parsed argparse namespace; flags a subcommand lacks are ignored.
    """
    return CairnConfig.from_env().with_overrides(
        cipher=getattr(args, "cipher", None),
        codec=getattr(args, "codec", None),
        backup_type_policy=getattr(args, "type_policy", None),
    )


def _resolve_manifest(store: ManifestStore, manifest_id: str) -> Manifest:
    """Look up a manifest for a subcommand.

    Args:
        store: Manifest store of the opened backend.
        manifest_id: "latest", a full manifest id, or a unique id prefix.
    """
    if manifest_id == "latest":
        latest = store.load_latest()
        if latest is None:
            raise RuntimeError("The store holds no backups")
        return latest
    return store.find(manifest_id)


def _print_backup_report(report: BackupReport, elapsed: float, quiet: bool) -> None:
    m = report.manifest
    if not quiet:
        for record in m.files:
            print(f"  {record.structure_kind.value:<14} {record.relative_path}")
    for failure in report.failures:
        print(f"Warning: {failure.path}: {failure.kind}: {failure.message}", file=sys.stderr)
    print(
        f"Done: {m.type.value} backup {m.id} - {len(m.files)} entries "
        f"({report.processed} stored, {report.reused} unchanged, {len(report.failures)} failed); "
        f"{_human(m.total_size)} logical, {_human(m.backup_size)} uploaded in {elapsed:.1f}s"
    )


def cmd_backup(store: Optional[str], inputs: List[str], *, target_type: Optional[str], passphrase: Optional[str],
               config: CairnConfig, quiet: bool = False) -> bool:
    """Back up files or folders into the store. Returns False if any file failed."""
    backend = _open_store(store)
    if target_type is None:
        target_type = TargetType.FILE if all(os.path.isfile(p) for p in inputs) else TargetType.FOLDER
    secret = _resolve_passphrase(passphrase)
    register_secret(secret.reveal())
    orch = BackupOrchestrator(backend, config, acl_provider=default_acl_provider())
    t0 = time.time()
    report = orch.run_backup(inputs, target_type, passphrase=secret)
    _print_backup_report(report, max(0.000001, time.time() - t0), quiet)
    return report.ok


def cmd_backup_volume(store: Optional[str], volume_root: str, *, passphrase: Optional[str],
                      config: CairnConfig, quiet: bool = False) -> bool:
    backend = _open_store(store)
    secret = _resolve_passphrase(passphrase)
    register_secret(secret.reveal())
    orch = BackupOrchestrator(backend, config, acl_provider=default_acl_provider())
    t0 = time.time()
    report = orch.run_volume_backup(volume_root, passphrase=secret)
    _print_backup_report(report, max(0.000001, time.time() - t0), quiet)
    return report.ok


def cmd_list(store: Optional[str], *, as_json: bool = False) -> bool:
    """List backups, most recent first."""
    manifests = ManifestStore(_open_store(store)).load_all()
    if as_json:
        print(_json.dumps([
            {
                "id": m.id,
                "timestamp": format_time(m.timestamp),
                "type": m.type.value,
                "target": m.target.value,
                "files": len(m.files),
                "totalSize": m.total_size,
                "compressedSize": m.compressed_size,
                "backupSize": m.backup_size,
            }
            for m in manifests
        ], indent=2))
        return True
    for m in manifests:
        print(
            f"{m.id}\t{format_time(m.timestamp)}\t{m.type.value}\t{m.target.value}\t"
            f"{len(m.files)}\t{m.total_size}\t{m.backup_size}"
        )
    return True


def cmd_show(store: Optional[str], manifest_id: str, *, as_json: bool = False) -> bool:
    """Show one backup and its file records."""
    m = _resolve_manifest(ManifestStore(_open_store(store)), manifest_id)
    if as_json:
        print(_json.dumps(m.to_dict(), indent=2, ensure_ascii=False))
        return True
    print(f"Backup: {m.id}")
    print(f"  Timestamp: {format_time(m.timestamp)}")
    print(f"  Type: {m.type.value}")
    print(f"  Target: {m.target.value}")
    print(f"  Total size: {m.total_size}")
    print(f"  Compressed size: {m.compressed_size}")
    print(f"  Backup size: {m.backup_size}")
    print(f"  Entries: {len(m.files)}")
    for r in m.files:
        parts = len(r.components) if r.components else len(r.chunks)
        print(f"{r.structure_kind.value}\t{r.size}\t{parts}\t{r.relative_path or r.path}")
    return True


def cmd_recover(store: Optional[str], manifest_id: str, *, outdir: str, paths: Optional[List[str]],
                exists: str, passphrase: Optional[str], config: CairnConfig, quiet: bool = False) -> bool:
    """Recover a backup (or selected paths of it) into ``outdir``."""
    backend = _open_store(store)
    manifest = _resolve_manifest(ManifestStore(backend), manifest_id)
    secret = _resolve_passphrase(passphrase)
    register_secret(secret.reveal())
    orch = RecoveryOrchestrator(backend, config, acl_provider=default_acl_provider())
    t0 = time.time()
    report = orch.recover(manifest, outdir, paths or None, exists, passphrase=secret)
    dt = max(0.000001, time.time() - t0)
    if not quiet:
        for path in report.restored:
            print(f" recovered: {path}")
        for path in report.skipped:
            print(f"  skipping: {path} (exists)")
    for failure in report.failures:
        detail = f" (chunk {failure.chunk_hash})" if failure.chunk_hash else ""
        print(f"Warning: {failure.path}: {failure.kind}: {failure.message}{detail}", file=sys.stderr)
    print(
        f"Done: recovered {len(report.restored)} entries from {manifest.id} into {report.destination} "
        f"({len(report.skipped)} skipped, {len(report.failures)} failed) in {dt:.1f}s"
    )
    return report.ok


def main(argv: List[str] | None = None):
    ap = argparse.ArgumentParser(
        prog="cairn",
        description="Cairn deduplicating, encrypted backup tool",
        epilog="Chunks are content-addressed by the SHA-256 of their plaintext; every stored blob is encrypted.",
    )
    ap.add_argument("--store", help="Backup store directory (default: $CAIRN_STORE)")
    ap.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
        help="Logging level (default: $CAIRN_LOG_LEVEL or WARNING)",
    )
    sub = ap.add_subparsers(dest="cmd", required=True)

    def _add_pipeline_options(p):
        p.add_argument("--passphrase", help="Encryption passphrase (default: $CAIRN_PASSPHRASE, else prompt)")
        p.add_argument("--cipher", choices=[CIPHER_AES_CBC, CIPHER_AES_GCM, CIPHER_NONE], help="Chunk cipher")
        p.add_argument("--quiet", help="limit outputs to summaries only", action="store_true")

    ap_backup = sub.add_parser("backup", help="Back up files and folders")
    ap_backup.add_argument("inputs", nargs="+", help="Input files/directories")
    ap_backup.add_argument(
        "--target-type",
        choices=[t.value for t in (TargetType.FILE, TargetType.FOLDER)],
        help="Recorded target type (default: File when every input is a file, else Folder)",
    )
    ap_backup.add_argument("--codec", choices=[CODEC_DEFLATE, CODEC_GZIP, CODEC_NONE], help="Chunk compression")
    ap_backup.add_argument(
        "--type-policy",
        choices=[POLICY_STORE, POLICY_REUSE],
        help=(
            "How to label runs after the first: store (Incremental whenever a prior backup exists) or "
            "reuse (Incremental only if some file was unchanged)"
        ),
    )
    _add_pipeline_options(ap_backup)

    ap_volume = sub.add_parser("backup-volume", help="Back up a whole volume through a snapshot")
    ap_volume.add_argument("volume", help="Volume root")
    ap_volume.add_argument("--codec", choices=[CODEC_DEFLATE, CODEC_GZIP, CODEC_NONE], help="Chunk compression")
    ap_volume.add_argument("--type-policy", choices=[POLICY_STORE, POLICY_REUSE], help="Backup type labelling")
    _add_pipeline_options(ap_volume)

    ap_list = sub.add_parser("list", help="List backups, most recent first")
    ap_list.add_argument("--json", action="store_true", help="Emit JSON")

    ap_show = sub.add_parser("show", help="Show one backup")
    ap_show.add_argument("manifest", help="Backup id, unique id prefix, or 'latest'")
    ap_show.add_argument("--json", action="store_true", help="Emit the manifest as JSON")

    ap_recover = sub.add_parser("recover", help="Recover files from a backup")
    ap_recover.add_argument("manifest", help="Backup id, unique id prefix, or 'latest'")
    ap_recover.add_argument("paths", nargs="*", help="Specific recorded paths to recover (files or directories)")
    ap_recover.add_argument("--outdir", default=".", help="Output directory")
    ap_recover.add_argument(
        "--exists",
        choices=[p.value.lower() for p in ConflictPolicy],
        default=ConflictPolicy.OVERWRITE.value.lower(),
        help=(
            "What to do if a destination file exists: overwrite (replace), skip (leave it), "
            "or rename (write a timestamped sibling). Default: overwrite"
        ),
    )
    _add_pipeline_options(ap_recover)

    args = ap.parse_args(argv)
    setup_logging(args.log_level)
    try:
        if args.cmd == "backup":
            success = cmd_backup(args.store, args.inputs, target_type=args.target_type, passphrase=args.passphrase,
                                 config=_config(args), quiet=args.quiet)
        elif args.cmd == "backup-volume":
            success = cmd_backup_volume(args.store, args.volume, passphrase=args.passphrase,
                                        config=_config(args), quiet=args.quiet)
        elif args.cmd == "list":
            success = cmd_list(args.store, as_json=args.json)
        elif args.cmd == "show":
            success = cmd_show(args.store, args.manifest, as_json=args.json)
        elif args.cmd == "recover":
            success = cmd_recover(args.store, args.manifest, outdir=args.outdir, paths=args.paths,
                                  exists=args.exists, passphrase=args.passphrase, config=_config(args),
                                  quiet=args.quiet)
        else:
            raise RuntimeError("Unknown command")
        sys.exit(0 if success else 1)
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except (ValueError, RuntimeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)
    except (CairnError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
