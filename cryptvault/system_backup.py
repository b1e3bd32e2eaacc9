"""Whole-system backup of /, /home and /code onto a mounted BTRFS drive."""

from __future__ import annotations

import os
import platform
import shlex
import socket
import time
from datetime import datetime
from subprocess import CalledProcessError

from . import btrfs, console, fsinfo, root_sync
from .config import ValidatedConfig
from .executil import failure_text, log, run
from .model import PreconditionError
from .root_sync import CopyFailed

LOW_SPACE_BYTES = 50 * 1024 ** 3
STRUCTURE_DIR = "btrfs-structure"
VERSION_PREFIX = "backup-"
VERSION_STAMP = "%Y-%m-%d_%H-%M-%S"
ATTRIBUTE_PATHS = ("/", "/home", "/code", "/vm", "/ai", "/data")


def _attr_file(path: str) -> str:
    return path.strip("/").replace("/", "-") + "-attributes.txt"


def _capture(cmd: list[str]) -> str:
    r = run(cmd, check=False)
    return (r.out or "") if r.rc == 0 else (r.out or "") + (r.err or "")


def data_disk_info(mount_point: str = "/data") -> str:
    lines = ["========================================", f"{mount_point} DISK", "========================================"]
    if fsinfo.is_mounted(mount_point):
        source = fsinfo.mount_source(mount_point)
        uuid = _capture(["findmnt", "-n", "-o", "UUID", mount_point]).strip()
        lines += [
            "Status  : mounted",
            f"Device  : {source}",
            f"UUID    : {uuid}",
            f"Size    : {fsinfo.human_size(fsinfo.total_bytes(mount_point))}",
            f"Used    : {fsinfo.human_size(fsinfo.used_bytes(mount_point))}",
            "",
            f"Restore: connect the same disk (UUID: {uuid}) before or after restoring.",
        ]
    else:
        lines += ["Status  : not mounted at backup time"]
    return "\n".join(lines) + "\n"


def system_info() -> str:
    return (
        "========================================\n"
        "SYSTEM INFORMATION\n"
        "========================================\n"
        f"Date     : {datetime.now():%Y-%m-%d %H:%M:%S}\n"
        f"Hostname : {socket.gethostname()}\n"
        f"Kernel   : {platform.release()}\n\n"
        "DISKS:\n"
        f"{_capture(['lsblk', '-o', 'NAME,SIZE,TYPE,MOUNTPOINT,FSTYPE'])}\n"
        "BTRFS SUBVOLUMES:\n"
        f"{btrfs.list_subvolumes('/')}"
    )


def _write(path: str, text: str):
    with open(path, "w", encoding="utf-8") as f:
        f.write(text)


class SystemBackup:
    def __init__(self, config: ValidatedConfig, dry_run: bool = False, scrub: bool = False, stats: bool = False,
                 root: str = "/"):
        self.config = config
        self.dry_run = dry_run
        self.scrub = scrub
        self.stats = stats
        self.root = root
        self.hdd = config["backup.hdd_mount"]
        self.backup_root = config["backup.backup_root"]
        self.failures: list[str] = []

    def check_destination(self):
        if not fsinfo.is_mounted(self.hdd):
            raise PreconditionError(f"External HDD not mounted on {self.hdd}")
        console.success("External HDD detected and mounted")
        free = fsinfo.free_bytes(self.hdd)
        console.info(f"Available space: {fsinfo.human_size(free)}")
        if free < LOW_SPACE_BYTES:
            console.warn(f"Low available space: {fsinfo.human_size(free)}")

    def save_structure(self) -> str:
        """Record what a restore needs to rebuild the layout."""

        dest = os.path.join(self.backup_root, STRUCTURE_DIR)
        console.section("SAVE BTRFS STRUCTURE")
        if self.dry_run:
            console.info(f"Dry run: structure metadata not written to {dest}")
            return dest
        os.makedirs(dest, exist_ok=True)
        _write(os.path.join(dest, "subvolumes-list.txt"), btrfs.list_subvolumes("/"))
        try:
            with open("/etc/fstab", "r", encoding="utf-8") as fh:
                _write(os.path.join(dest, "fstab.backup"), fh.read())
        except OSError as exc:
            console.warn(f"Cannot copy /etc/fstab: {exc}")
        for path in ATTRIBUTE_PATHS:
            if os.path.isdir(path):
                _write(os.path.join(dest, _attr_file(path)), _capture(["lsattr", "-d", path]))
        _write(os.path.join(dest, "blkid.txt"), _capture(["blkid"]))
        mounts_text = _capture(["findmnt", "-t", "btrfs", "-o", "SOURCE,TARGET,OPTIONS"])
        _write(os.path.join(dest, "current-mounts.txt"), mounts_text)
        _write(os.path.join(dest, "additional-disks-info.txt"), data_disk_info())
        _write(os.path.join(dest, "system-info.txt"), system_info())
        console.success("BTRFS structure saved")
        return dest

    def options(self, section: str) -> list[str]:
        opts = shlex.split(self.config.get("advanced.rsync_options", "-aAXHh --info=progress2 --stats"))
        if self.dry_run:
            opts.append("--dry-run")
        excludes = list(self.config.get(f"exclusions.{section}", ()))
        if section in ("home", "system"):
            excludes.append(".snapshots")
        return opts + ["--delete"] + root_sync.exclude_args(excludes)

    def _sync(self, label: str, src: str, dst: str, section: str):
        console.section(f"BACKUP {label}")
        console.info(f"Source      : {src}")
        console.info(f"Destination : {dst}")
        try:
            if not self.dry_run:
                os.makedirs(dst, exist_ok=True)
            root_sync.rsync(src, dst, self.options(section), interactive=True)
        except CalledProcessError as exc:
            self.failures.append(f"{label}: {failure_text(exc)}")
            console.error(f"Backup {label} failed")
            return
        console.success(f"Backup {label} completed")

    def sync_root(self):
        dst = os.path.join(self.backup_root, "root")
        source = self.root
        temp = None
        if not self.dry_run:
            temp = os.path.join(self.root, f".backup-snapshot-{os.getpid()}")
            try:
                btrfs.snapshot_readonly(self.root, temp)
                source = temp
                console.info(f"Temporary snapshot created for consistency: {temp}")
            except CalledProcessError:
                console.warn("Cannot create temporary snapshot, backup without consistency guarantee")
                temp = None
        try:
            self._sync("/ (SYSTEM)", source, dst, "system")
        finally:
            if temp:
                r = btrfs.delete_subvolume(temp, check=False)
                if r.rc != 0:
                    console.warn(f"Failed to delete temporary snapshot {temp}")

    def version(self) -> str | None:
        console.section("BTRFS SNAPSHOT (VERSIONING)")
        if not self.config.get("snapshots.enabled", False):
            console.info("Backup snapshots disabled in configuration (snapshots.enabled = false)")
            return None
        if not btrfs.is_subvolume(self.backup_root):
            console.warn(f"{self.backup_root} is not a BTRFS subvolume - cannot create snapshots")
            return None
        snap_dir = self.config["snapshots.directory"]
        name = btrfs.timestamped_name(VERSION_PREFIX, VERSION_STAMP)
        try:
            run(["mkdir", "-p", snap_dir], check=True, dry_run=self.dry_run)
            btrfs.snapshot_readonly(self.backup_root, os.path.join(snap_dir, name), dry_run=self.dry_run)
        except CalledProcessError as exc:
            console.warn(f"Failed to create snapshot: {failure_text(exc)}")
            return None
        console.success(f"Snapshot created: {name}")
        retention = max(1, self.config.get("snapshots.retention", 4))
        for gone in btrfs.rotate_snapshots(snap_dir, VERSION_PREFIX, retention, dry_run=self.dry_run):
            console.step(f"Deleted: {os.path.basename(gone)}")
        return name

    def run(self) -> dict:
        started = time.time()
        console.section("DRY-RUN MODE - BACKUP SIMULATION" if self.dry_run else "SYSTEM BACKUP START")
        self.check_destination()
        self.save_structure()
        self._sync("/home (USER DATA)", os.path.join(self.root, "home"),
                   os.path.join(self.backup_root, "home"), "home")
        self.sync_root()
        code = os.path.join(self.root, "code")
        if os.path.isdir(code) and os.listdir(code):
            self._sync("/code (PROJECTS)", code, os.path.join(self.backup_root, "code"), "code")
        else:
            console.info("/code empty or doesn't exist, skipping")
        console.info("/vm and /ai are not backed up")
        snapshot = self.version()
        if self.scrub and not self.dry_run:
            console.section("BTRFS SCRUB (INTEGRITY CHECK)")
            ok, status = btrfs.scrub(self.hdd)
            console.plain(status)
            if ok:
                console.success("Scrub completed")
            else:
                console.warn("Scrub reported problems")
        if self.stats:
            console.section("COMPRESSION STATISTICS")
            console.plain(btrfs.compression_stats(self.backup_root))
        duration = int(time.time() - started)
        report = {"snapshot": snapshot, "failures": list(self.failures), "duration": duration}
        log("INFO", "system_backup.done", **report)
        if self.failures:
            raise CopyFailed("; ".join(self.failures))
        console.section("BACKUP COMPLETED SUCCESSFULLY")
        console.success(f"Total duration: {duration // 60}m {duration % 60}s")
        return report
