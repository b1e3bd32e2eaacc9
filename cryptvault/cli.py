from __future__ import annotations

import argparse
import json
import os
import signal
import sys
import time
import traceback
from typing import Any, Callable, Dict, Optional

from . import console, partitioning, prompts, safety, volumes
from .backup import BackupOrchestrator, InsufficientSpace, select_drives
from .config import DRIVES_SCHEMA, RESTORE_SCHEMA, SYSTEM_SCHEMA, TARGET_DISK_REQUIRED, ConfigError, load
from .executil import append_jsonl, configure_log, log, resolve_log_path
from .lock import LockBusy, RunLock
from .model import FULL_DISK, PARTITIONS, BackupFlags, PreconditionError
from .paths import LOCK_FILE, backup_lock_file, default_drives_config, default_system_config, find_restore_config
from .prompts import Cancelled
from .restore import RestorePipeline, StageError, plan_lines
from .root_sync import CopyFailed
from .system_backup import SystemBackup
from .volumes import DriveNotPresent, VolumeError, VolumeRegistry

CLI_START = time.perf_counter()

RESULT_CODES = {
    "OK": 0,
    "CANCELLED": 0,
    "PLAN_OK": 0,
    "FAIL_SPACE": 1,
    "FAIL_CONFIG": 2,
    "FAIL_PRECONDITION": 3,
    "FAIL_LOCKED": 4,
    "FAIL_VOLUME": 5,
    "FAIL_STAGE": 6,
    "FAIL_COPY": 7,
    "FAIL_UNHANDLED": 12,
    "FAIL_INTERRUPTED": 130,
}

BACKUP_TOOLS = ("rsync", "findmnt", "du")
VOLUME_TOOLS = ("cryptsetup", "mount", "umount")
SYSTEM_BACKUP_TOOLS = ("rsync", "btrfs", "findmnt", "lsattr", "blkid")
RESTORE_TOOLS = (
    "cryptsetup", "mkfs.ext4", "mkfs.btrfs", "btrfs", "chattr", "mount", "umount",
    "rsync", "blkid", "findmnt", "lsblk", "chroot",
)
FULL_DISK_TOOLS = ("wipefs", "parted", "partprobe", "mkfs.vfat")

# delivered while volumes are released; ignored until cleanup is done
CLEANUP_SIGNALS = (signal.SIGINT, signal.SIGTERM, signal.SIGHUP)

# first match wins; DriveNotPresent is a precondition at this level
FAILURE_KINDS = (
    (ConfigError, "FAIL_CONFIG"),
    (Cancelled, "CANCELLED"),
    (InsufficientSpace, "FAIL_SPACE"),
    (LockBusy, "FAIL_LOCKED"),
    (DriveNotPresent, "FAIL_PRECONDITION"),
    (PreconditionError, "FAIL_PRECONDITION"),
    (StageError, "FAIL_STAGE"),
    (VolumeError, "FAIL_VOLUME"),
    (CopyFailed, "FAIL_COPY"),
)


def _emit_result(
        kind: str,
        extra: Optional[Dict[str, Any]] = None,
        exit_code: Optional[int] = None,
) -> None:
    payload: Dict[str, Any] = {"result": kind, "ts": int(time.time())}
    if extra:
        payload.update(extra)
    log_path = resolve_log_path()
    if log_path:
        payload.setdefault("log_path", log_path)
        append_jsonl(log_path, payload)
    why_text = str(payload.get("why") or "")
    total_ms = int(max(0.0, (time.perf_counter() - CLI_START) * 1000))
    print(f"result={kind} why={why_text} timing_total_ms={total_ms} log_path={log_path or ''}")
    code = RESULT_CODES.get(kind, 1) if exit_code is None else exit_code
    raise SystemExit(code)


def _classify(exc: BaseException) -> str:
    for cls, kind in FAILURE_KINDS:
        if isinstance(exc, cls):
            return kind
    return "FAIL_UNHANDLED"


def _report_failure(kind: str, exc: BaseException):
    if isinstance(exc, ConfigError):
        console.error("Configuration validation failed" + (f" ({exc.path})" if exc.path else "") + ":")
        for err in exc.errors:
            console.plain(f"  ✗ {err}")
    elif kind == "CANCELLED":
        console.warn(str(exc) or "Cancelled by user")
    elif kind == "FAIL_UNHANDLED":
        console.error(f"Unexpected error: {exc}")
        log("ERROR", "cli.unhandled", error=str(exc), tb=traceback.format_exc())
    else:
        console.error(str(exc))


def _require_root(what: str):
    if os.geteuid() != 0:
        raise PreconditionError(f"{what} must be run as root (use sudo)")


def _load(path: str, schema, require=None):
    cfg = load(path, schema, require=require)
    configure_log(
        cfg.get("logging.file"),
        cfg.get("logging.max_size_mb", 50),
        cfg.get("logging.retention", 5),
    )
    for warning in cfg.warnings:
        console.warn(warning)
    console.success(f"Configuration loaded: {path}")
    return cfg


# -- subcommands --------------------------------------------------------------

def cmd_backup(args: argparse.Namespace, registry: VolumeRegistry):
    path = args.config or default_drives_config()
    cfg = _load(path, DRIVES_SCHEMA)
    if args.mount:
        _require_root("backup --mount")
    tools = BACKUP_TOOLS + (VOLUME_TOOLS if args.mount else ())
    if args.scrub or args.stats or args.snapshot:
        tools += ("btrfs",)
    safety.require_tools("backup", tools)
    flags = BackupFlags(
        drive=args.drive,
        dry_run=args.dry_run,
        assume_yes=args.yes,
        snapshot=args.snapshot,
        scrub=args.scrub,
        stats=args.stats,
        mount=args.mount,
        no_delete=args.no_delete,
        no_progress=args.no_progress,
    )
    # held until every volume this run mounted is locked again
    registry.hold(RunLock(backup_lock_file(path)).acquire())
    orchestrator = BackupOrchestrator(cfg, flags, registry)
    results = orchestrator.run()
    return "OK", {"drives": [r.label for r in results], "dry_run": orchestrator.dry_run}


def cmd_mount(args: argparse.Namespace, registry: VolumeRegistry):
    cfg = _load(args.config or default_drives_config(), DRIVES_SCHEMA)
    _require_root("mount")
    safety.require_tools("mount", VOLUME_TOOLS)
    mounted = []
    for drive in select_drives(cfg, args.drive):
        if not drive.luks_device:
            raise PreconditionError(f"backup_drive_{drive.number}.luks_device is not configured")
        try:
            handle = registry.acquire(
                drive.luks_device, drive.mapper_name, drive.path, drive.label, drive.compression,
                key_file=args.passphrase_file,
            )
        except DriveNotPresent as exc:
            if args.drive != "both":
                raise
            console.warn(f"{exc} (skipping)")
            continue
        mounted.append(handle)
    if not mounted:
        raise PreconditionError("No backup drive could be mounted")
    for handle in mounted:
        # left open on purpose; `unmount` closes them
        registry.detach(handle)
    return "OK", {"mounted": [h.mount_point for h in mounted]}


def cmd_unmount(args: argparse.Namespace, registry: VolumeRegistry):
    cfg = _load(args.config or default_drives_config(), DRIVES_SCHEMA)
    _require_root("unmount")
    safety.require_tools("unmount", VOLUME_TOOLS)
    failed = []
    for drive in select_drives(cfg, args.drive):
        if not volumes.teardown(drive.mapper_name, drive.path, drive.label):
            failed.append(drive.label)
    if failed:
        raise VolumeError("could not unmount/lock: " + ", ".join(failed))
    return "OK", {}


def cmd_system_backup(args: argparse.Namespace, registry: VolumeRegistry):
    _require_root("system-backup")
    cfg = _load(args.config or default_system_config(), SYSTEM_SCHEMA)
    safety.require_tools("system-backup", SYSTEM_BACKUP_TOOLS)
    registry.hold(RunLock(LOCK_FILE).acquire())
    report = SystemBackup(cfg, dry_run=args.dry_run, scrub=args.scrub, stats=args.stats).run()
    return "OK", report


def _restore_plan(args: argparse.Namespace, cfg, mode: str, ask: Callable[[str], str]):
    if mode == FULL_DISK:
        return partitioning.full_disk_plan(cfg["restore.target_disk"])
    picked = (args.efi, args.boot, args.root)
    if all(picked):
        return partitioning.partitions_plan(*picked)
    if any(picked):
        raise PreconditionError("--efi, --boot and --root must be given together")
    return prompts.select_partitions(ask)


def cmd_restore(args: argparse.Namespace, registry: VolumeRegistry, ask: Optional[Callable[[str], str]] = None):
    ask = ask or input
    mode = PARTITIONS if args.partitions else FULL_DISK
    path = args.config or find_restore_config()
    if not path:
        raise ConfigError(["Configuration file not found (config.yml)"])
    cfg = _load(path, RESTORE_SCHEMA, require=TARGET_DISK_REQUIRED if mode == FULL_DISK else None)
    if not args.plan:
        _require_root("restore")
        safety.require_tools("restore", RESTORE_TOOLS + (FULL_DISK_TOOLS if mode == FULL_DISK else ()))
        target = cfg.get("restore.target_disk") if mode == FULL_DISK else "selected partitions"
        if not prompts.confirm_start(mode, target, ask):
            raise Cancelled("restore cancelled by user")

    plan = _restore_plan(args, cfg, mode, ask)
    problems = plan.problems()
    if problems:
        raise PreconditionError("; ".join(problems))
    console.section("RESTORE PLAN")
    for line in prompts.describe_plan(plan) + plan_lines(plan):
        console.plain(line)
    if args.plan:
        return "PLAN_OK", {"mode": mode, "devices": plan.devices_to_format()}

    if args.passphrase_file and not os.path.isfile(args.passphrase_file):
        raise PreconditionError(f"Passphrase file not found: {args.passphrase_file}")
    if not prompts.confirm_destruction(plan, ask):
        raise Cancelled("restore cancelled by user")
    report = RestorePipeline(plan, cfg, key_file=args.passphrase_file).run()
    console.section("RESTORE COMPLETED SUCCESSFULLY")
    console.info("Remove the live USB and reboot.")
    return "OK", report


# -- parser ---------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="cryptvault",
        description="Encrypted BTRFS backup, mount and bare-metal restore",
    )
    sub = p.add_subparsers(dest="command", required=True)

    def with_config(sp):
        sp.add_argument("-c", "--config", help="Path to the YAML configuration file")
        return sp

    def with_drive(sp):
        sp.add_argument("--drive", choices=["1", "2", "both"], default="both",
                        help="Which backup drive(s) to use (default: both)")
        return sp

    b = with_drive(with_config(sub.add_parser("backup", help="Back up configured folders to the backup drives")))
    b.add_argument("--dry-run", action="store_true", help="Simulate without writing anything")
    b.add_argument("-y", "--yes", action="store_true", help="Skip the start confirmation")
    snap = b.add_mutually_exclusive_group()
    snap.add_argument("--snapshot", dest="snapshot", action="store_const", const=True, default=None,
                      help="Take a drive snapshot even if disabled in config")
    snap.add_argument("--no-snapshot", dest="snapshot", action="store_const", const=False,
                      help="Do not take drive snapshots")
    b.add_argument("--scrub", action="store_true", help="Run btrfs scrub after backup")
    b.add_argument("--stats", action="store_true", help="Show compression statistics after backup")
    b.add_argument("--mount", action="store_true", help="Unlock and mount the drives first, lock them afterwards")
    b.add_argument("--no-delete", action="store_true", help="Keep files that no longer exist in the source")
    b.add_argument("--no-progress", action="store_true", help="Hide rsync progress")
    b.set_defaults(func=cmd_backup)

    m = with_drive(with_config(sub.add_parser("mount", help="Unlock and mount the backup drives")))
    m.add_argument("--passphrase-file", help="Key file for cryptsetup instead of a terminal prompt")
    m.set_defaults(func=cmd_mount)

    u = with_drive(with_config(sub.add_parser("unmount", help="Unmount and lock the backup drives")))
    u.set_defaults(func=cmd_unmount)

    s = with_config(sub.add_parser("system-backup", help="Back up /, /home and /code (root only)"))
    s.add_argument("--dry-run", action="store_true", help="Simulate without writing anything")
    s.add_argument("--scrub", action="store_true", help="Run btrfs scrub after backup")
    s.add_argument("--stats", action="store_true", help="Show compression statistics after backup")
    s.set_defaults(func=cmd_system_backup)

    r = with_config(sub.add_parser("restore", help="Rebuild an encrypted BTRFS system from a backup"))
    mode = r.add_mutually_exclusive_group()
    mode.add_argument("--full-disk", action="store_true", help="Erase the whole target disk (default)")
    mode.add_argument("--partitions", action="store_true",
                      help="Format only the selected boot/root partitions, keep EFI")
    r.add_argument("--efi", help="Existing EFI partition (partitions mode)")
    r.add_argument("--boot", help="Partition to format as /boot (partitions mode)")
    r.add_argument("--root", help="Partition to encrypt as / (partitions mode)")
    r.add_argument("--plan", action="store_true", help="Print the plan and stages, change nothing")
    r.add_argument("--passphrase-file", help="Key file for cryptsetup instead of a terminal prompt")
    r.set_defaults(func=cmd_restore)
    return p


# -- entry point ----------------------------------------------------------------

def _raise_interrupt(signum, frame):
    raise KeyboardInterrupt(f"signal {signum}")


def _main_impl(argv=None) -> int:
    args = build_parser().parse_args(argv)
    registry = VolumeRegistry()
    previous = {sig: signal.getsignal(sig) for sig in CLEANUP_SIGNALS}
    for sig in (signal.SIGTERM, signal.SIGHUP):
        signal.signal(sig, _raise_interrupt)
    kind, extra = "FAIL_UNHANDLED", {}
    log("INFO", "cli.start", command=args.command, argv=sys.argv[1:] if argv is None else list(argv))
    try:
        kind, extra = args.func(args, registry)
    except KeyboardInterrupt:
        kind, extra = "FAIL_INTERRUPTED", {"why": "interrupted"}
        console.error("Interrupted")
    except Exception as exc:
        kind = _classify(exc)
        extra = {"why": str(exc) or type(exc).__name__}
        if isinstance(exc, ConfigError):
            extra["errors"] = list(exc.errors)
        if isinstance(exc, StageError):
            extra["stage"] = exc.stage
        _report_failure(kind, exc)
    finally:
        for sig in CLEANUP_SIGNALS:
            signal.signal(sig, signal.SIG_IGN)
        try:
            leftovers = registry.release_all()
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)
    if leftovers:
        extra = dict(extra, leftovers=leftovers)
        if kind == "OK":
            kind, extra["why"] = "FAIL_VOLUME", "cleanup failed"
    try:
        json.dumps(extra)
    except (TypeError, ValueError):
        extra = {k: str(v) for k, v in extra.items()}
    _emit_result(kind, extra)
    return 0


def main(argv=None) -> int:
    try:
        return _main_impl(argv)
    except SystemExit:
        raise
    except Exception as exc:  # pragma: no cover
        _emit_result("FAIL_UNHANDLED", extra={"error": str(exc)})
    return 0


if __name__ == "__main__":
    sys.exit(main())
