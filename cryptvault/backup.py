"""Dual-drive folder backup onto (optionally LUKS-mounted) BTRFS drives."""

from __future__ import annotations

import os
import threading
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from subprocess import CalledProcessError
from typing import Callable

from . import btrfs, console, fsinfo, root_sync
from .config import Folder, ValidatedConfig
from .executil import failure_text, log, run
from .model import BackupFlags, PreconditionError, VolumeHandle
from .prompts import Cancelled, confirm_short
from .root_sync import CopyFailed
from .volumes import DriveNotPresent, VolumeRegistry

SNAPSHOT_STAMP = "%Y%m%d_%H%M%S"


class InsufficientSpace(Exception):
    pass


@dataclass
class DriveSpec:
    number: int
    path: str
    label: str
    luks_device: str | None = None
    compression_level: int = 9
    folders: tuple = ()
    snapshots_enabled: bool = False
    snapshot_dir: str | None = None
    snapshot_retention: int = 3
    snapshot_prefix: str = "backup"

    @property
    def mapper_name(self) -> str:
        return f"backup{self.number}_crypt"

    @property
    def compression(self) -> str:
        return f"zstd:{self.compression_level}"


@dataclass
class DriveResult:
    label: str
    synced: list = field(default_factory=list)
    skipped: list = field(default_factory=list)
    failed: list = field(default_factory=list)
    warnings: list = field(default_factory=list)
    snapshot: str | None = None
    stats: dict = field(default_factory=dict)


def drive_spec(config: ValidatedConfig, number: int) -> DriveSpec | None:
    s = config.section(f"backup_drive_{number}")
    if "path" not in s:
        return None
    return DriveSpec(
        number=number,
        path=s["path"],
        label=s.get("label", f"Backup{number}"),
        luks_device=s.get("luks_device"),
        compression_level=s.get("compression_level", 9),
        folders=s.get("folders", ()),
        snapshots_enabled=s.get("snapshots.enabled", False),
        snapshot_dir=s.get("snapshots.directory"),
        snapshot_retention=s.get("snapshots.retention", 3),
        snapshot_prefix=s.get("snapshots.prefix", "backup"),
    )


def folder_items(folders) -> list[str]:
    """Flatten folder entries: a folder with subfolders yields only those."""

    items = []
    for f in folders:
        if not isinstance(f, Folder):
            continue
        if f.subfolders:
            items.extend(f"{f.path}/{sub.strip('/')}" for sub in f.subfolders)
        else:
            items.append(f.path)
    return items


def select_drives(config: ValidatedConfig, which: str) -> list[DriveSpec]:
    """Configured drives for ``1``, ``2`` or ``both``.

    An explicitly named drive must be configured; ``both`` takes what exists.
    """

    numbers = (1, 2) if which == "both" else (int(which),)
    drives = []
    for n in numbers:
        spec = drive_spec(config, n)
        if spec is None:
            if which != "both":
                raise PreconditionError(f"backup_drive_{n} is not configured")
            continue
        drives.append(spec)
    return drives


def stop_copies():
    """Ask running rsync processes to stop (interrupt path)."""

    run(["pkill", "-TERM", "rsync"], check=False)


class BackupOrchestrator:
    def __init__(
        self,
        config: ValidatedConfig,
        flags: BackupFlags,
        registry: VolumeRegistry,
        ask: Callable[[str], str] = input,
    ):
        self.config = config
        self.flags = flags
        self.registry = registry
        self.ask = ask
        self.source = config["source.path"]
        self.handles: list[VolumeHandle] = []
        self.dry_run = flags.dry_run or config.get("safety.dry_run", False)
        # set once the run is interrupted; no copy starts after that
        self.stopping = threading.Event()

    # -- selection ------------------------------------------------------------

    def selected(self) -> list[DriveSpec]:
        return select_drives(self.config, self.flags.drive)

    def _unavailable(self, drive: DriveSpec, reason: str):
        if self.flags.drive == "both":
            console.warn(f"{drive.label}: {reason} (skipping)")
            log("WARN", "backup.drive_skipped", drive=drive.number, reason=reason)
            return
        raise PreconditionError(f"{drive.label}: {reason}")

    def prepare(self) -> list[DriveSpec]:
        """Mount (when asked) and check every selected drive; drop absent ones."""

        if not os.path.isdir(self.source):
            raise PreconditionError(f"Source directory not found: {self.source}")
        ready = []
        for drive in self.selected():
            if self.flags.mount:
                if not drive.luks_device:
                    raise PreconditionError(f"backup_drive_{drive.number}.luks_device is required with --mount")
                try:
                    handle = self.registry.acquire(
                        drive.luks_device, drive.mapper_name, drive.path, drive.label, drive.compression
                    )
                except DriveNotPresent as exc:
                    self._unavailable(drive, str(exc))
                    continue
                self.handles.append(handle)
            elif not os.path.isdir(drive.path):
                self._unavailable(drive, f"not mounted or directory missing: {drive.path}")
                continue
            self.verify_compression(drive)
            ready.append(drive)
        if not ready:
            raise PreconditionError("No backup drive available")
        return ready

    def verify_compression(self, drive: DriveSpec) -> bool:
        if not fsinfo.is_btrfs(drive.path):
            return True
        actual = fsinfo.compression_option(drive.path)
        if actual == drive.compression:
            console.info(f"{drive.label}: BTRFS compression {actual} active")
            return True
        console.warn(
            f"{drive.label}: expected compress={drive.compression}, "
            f"mounted with {('compress=' + actual) if actual else 'no compression'}"
        )
        return False

    # -- checks -------------------------------------------------------------

    def items_for(self, drive: DriveSpec) -> tuple[list[str], list[str]]:
        present, missing = [], []
        for item in folder_items(drive.folders):
            (present if os.path.isdir(os.path.join(self.source, item)) else missing).append(item)
        return present, missing

    def delete_mode(self) -> bool:
        return self.config.get("rsync.delete", True) and not self.flags.no_delete

    def check_space(self, drives: list[DriveSpec]):
        if not self.config.get("safety.check_disk_space", True):
            return
        for drive in drives:
            present, _ = self.items_for(drive)
            check = fsinfo.check_space(
                drive.label, drive.path, [os.path.join(self.source, i) for i in present], self.delete_mode()
            )
            log("INFO", "backup.space", drive=drive.number, required=check.required,
                available=check.available, total=check.total, delete_mode=check.delete_mode, ok=check.ok)
            if check.ok:
                console.info(f"{drive.label}: space OK (~{fsinfo.human_size(check.required)} needed)")
                continue
            console.error(f"{drive.label}: insufficient space")
            for line in fsinfo.describe_space(check):
                console.plain(f"    {line}")
            if self.flags.assume_yes or not confirm_short("Continue anyway?", self.ask):
                raise InsufficientSpace(
                    f"{drive.label}: needs ~{fsinfo.human_size(check.required)}, "
                    f"has {fsinfo.human_size(check.total if check.delete_mode else check.available)}"
                )
            console.warn(f"{drive.label}: continuing despite the space estimate")

    def summary(self, drives: list[DriveSpec]):
        console.section("BACKUP CONFIGURATION SUMMARY")
        console.plain(f"Source: {self.source} ({fsinfo.filesystem_type(self.source) or 'unknown'})")
        for drive in drives:
            console.plain(f"{drive.label}: {drive.path}")
            for item in folder_items(drive.folders):
                console.plain(f"    - {item}")
        if self.delete_mode():
            console.warn("Files in destination that don't exist in source will be DELETED")
        if self.dry_run:
            console.info("Dry run: nothing will be written")

    def confirm(self):
        if self.flags.assume_yes or not self.config.get("safety.confirm_before_start", True):
            return
        if not confirm_short("Do you want to proceed?", self.ask):
            raise Cancelled("backup cancelled by operator")

    # -- work ---------------------------------------------------------------

    def snapshot(self, drive: DriveSpec, result: DriveResult) -> bool:
        wanted = self.flags.snapshot if self.flags.snapshot is not None else drive.snapshots_enabled
        if not wanted:
            return True
        if not drive.snapshot_dir:
            result.warnings.append("no snapshots.directory configured, snapshot skipped")
            console.warn(f"{drive.label}: no snapshots.directory configured, snapshot skipped")
            return True
        if not fsinfo.is_btrfs(drive.path):
            result.warnings.append("not a BTRFS filesystem, snapshot skipped")
            console.warn(f"{drive.label}: not a BTRFS filesystem, skipping snapshot")
            return True
        snap_dir = os.path.join(drive.path, drive.snapshot_dir)
        prefix = f"{drive.snapshot_prefix}_"
        name = btrfs.timestamped_name(prefix, SNAPSHOT_STAMP)
        try:
            run(["mkdir", "-p", snap_dir], check=True, dry_run=self.dry_run)
            console.step(f"Creating snapshot: {name}")
            btrfs.snapshot_readonly(drive.path, os.path.join(snap_dir, name), dry_run=self.dry_run)
        except CalledProcessError as exc:
            result.failed.append(f"snapshot: {failure_text(exc)}")
            console.error(f"{drive.label}: snapshot failed, drive skipped")
            return False
        result.snapshot = name
        for gone in btrfs.rotate_snapshots(snap_dir, prefix, drive.snapshot_retention, dry_run=self.dry_run):
            console.step(f"Deleted old snapshot: {os.path.basename(gone)}")
        return True

    def show_progress(self) -> bool:
        return self.config.get("rsync.progress", True) and not self.flags.no_progress

    def options(self) -> list[str]:
        opts = root_sync.build_backup_options(
            archive=self.config.get("rsync.archive", True),
            delete=self.delete_mode(),
            progress=self.show_progress(),
            compress=self.config.get("rsync.compress", False),
            dry_run=self.dry_run,
        )
        return opts + root_sync.exclude_args(self.config.get("exclude", ()))

    def backup_drive(self, drive: DriveSpec, interactive: bool) -> DriveResult:
        result = DriveResult(drive.label)
        if self.stopping.is_set():
            return result
        console.section(f"BACKUP TO DRIVE {drive.number}: {drive.label}")
        if not self.snapshot(drive, result):
            return result
        present, missing = self.items_for(drive)
        for item in missing:
            console.warn(f"Source folder not found, skipping: {os.path.join(self.source, item)}")
            result.skipped.append(item)
        if not present and not missing:
            console.warn(f"No folders configured for drive {drive.number}, skipping")
        opts = self.options()
        for item in present:
            if self.stopping.is_set():
                result.failed.append(f"{item}: not started, run interrupted")
                continue
            dst = os.path.join(drive.path, item)
            console.step(f"Syncing: {item}")
            try:
                run(["mkdir", "-p", dst], check=True, dry_run=self.dry_run)
                res = root_sync.rsync(os.path.join(self.source, item), dst, opts,
                                      interactive=interactive)
            except CalledProcessError as exc:
                result.failed.append(f"{item}: {failure_text(exc)}")
                console.error(f"{drive.label}: sync of {item} failed")
                continue
            if isinstance(res, CalledProcessError):
                result.warnings.append(f"{item}: rsync exit {res.returncode}")
            else:
                for key, value in root_sync.parse_rsync_stats(res.out).items():
                    result.stats[key] = result.stats.get(key, 0) + value
            result.synced.append(item)
        log("INFO", "backup.drive_done", drive=drive.number, synced=len(result.synced),
            failed=len(result.failed), skipped=len(result.skipped))
        return result

    def maintenance(self, drives: list[DriveSpec]):
        do_scrub = (self.flags.scrub or self.config.get("btrfs.scrub_after_backup", False)) and not self.dry_run
        do_stats = self.flags.stats or self.config.get("btrfs.show_compression_stats", False)
        for drive in drives:
            if not (do_scrub or do_stats) or not fsinfo.is_btrfs(drive.path):
                continue
            if do_scrub:
                console.section(f"BTRFS SCRUB: {drive.label}")
                ok, status = btrfs.scrub(drive.path)
                console.plain(status)
                if ok:
                    console.success(f"{drive.label}: scrub completed")
                else:
                    console.warn(f"{drive.label}: scrub reported problems")
            if do_stats:
                console.section(f"COMPRESSION STATS: {drive.label}")
                console.plain(btrfs.compression_stats(drive.path))

    def release(self):
        for handle in reversed(self.handles):
            self.registry.release(handle)
        self.handles = []

    def _copy_all(self, drives: list[DriveSpec]) -> list[DriveResult]:
        pool = None
        try:
            if len(drives) == 1:
                return [self.backup_drive(drives[0], self.show_progress())]
            # separate drives share only the registry and the stop event
            pool = ThreadPoolExecutor(max_workers=len(drives))
            futures = [pool.submit(self.backup_drive, d, False) for d in drives]
            pending = set(futures)
            while pending:
                # short waits keep the main thread responsive to Ctrl-C
                _, pending = wait(pending, timeout=0.5, return_when=FIRST_EXCEPTION)
            return [f.result() for f in futures]
        except KeyboardInterrupt:
            self.stopping.set()
            console.warn("Interrupted: stopping running copies")
            stop_copies()
            raise
        finally:
            if pool is not None:
                pool.shutdown(wait=True, cancel_futures=True)

    def run(self) -> list[DriveResult]:
        drives = self.prepare()
        self.summary(drives)
        self.check_space(drives)
        self.confirm()
        results = self._copy_all(drives)
        self.maintenance(drives)
        if self.flags.mount:
            console.section("Unmounting Encrypted Backup Drives")
            self.release()
        failed = [f"{r.label}: {msg}" for r in results for msg in r.failed]
        for r in results:
            console.info(f"{r.label}: {len(r.synced)} synced, {len(r.skipped)} skipped, {len(r.failed)} failed")
        if failed:
            raise CopyFailed("; ".join(failed))
        console.success("Backup complete" + (" (dry run)" if self.dry_run else ""))
        return results
