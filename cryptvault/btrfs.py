"""BTRFS subvolume, snapshot and maintenance primitives."""

from __future__ import annotations

import os
import shutil
from datetime import datetime
from subprocess import CalledProcessError

from .executil import run, trace


def make_filesystem(device: str, label: str, dry_run: bool = False):
    run(["mkfs.btrfs", "-f", "-L", label, device], check=True, dry_run=dry_run, timeout=600.0)


def create_subvolume(path: str, dry_run: bool = False):
    run(["btrfs", "subvolume", "create", path], check=True, dry_run=dry_run)


def disable_cow(path: str, dry_run: bool = False):
    run(["chattr", "+C", path], check=True, dry_run=dry_run)


def list_subvolumes(path: str) -> str:
    return run(["btrfs", "subvolume", "list", path], check=False).out or ""


def is_subvolume(path: str) -> bool:
    return run(["btrfs", "subvolume", "show", path], check=False).rc == 0


def snapshot_readonly(source: str, dest: str, dry_run: bool = False):
    run(["btrfs", "subvolume", "snapshot", "-r", source, dest], check=True, dry_run=dry_run, timeout=600.0)


def delete_subvolume(path: str, dry_run: bool = False, check: bool = True):
    return run(["btrfs", "subvolume", "delete", path], check=check, dry_run=dry_run, timeout=600.0)


def timestamped_name(prefix: str, fmt: str, now: datetime | None = None) -> str:
    return f"{prefix}{(now or datetime.now()).strftime(fmt)}"


def rotate_snapshots(directory: str, prefix: str, retention: int, dry_run: bool = False) -> list[str]:
    """Delete the oldest ``prefix*`` snapshots beyond ``retention``.

    Names embed a sortable timestamp, so name order is age order.
    Returns the deleted paths.
    """

    try:
        names = sorted(n for n in os.listdir(directory) if n.startswith(prefix))
    except FileNotFoundError:
        return []
    keep = max(0, retention)
    doomed = names[:-keep] if keep else names
    deleted = []
    for name in doomed:
        path = os.path.join(directory, name)
        try:
            delete_subvolume(path, dry_run=dry_run)
        except CalledProcessError as exc:
            trace("btrfs.rotate_failed", path=path, rc=exc.returncode, err=(exc.stderr or "").strip())
            continue
        deleted.append(path)
    return deleted


def scrub(path: str) -> tuple[bool, str]:
    """Run a blocking scrub; returns ``(ok, status_text)``."""

    started = run(["btrfs", "scrub", "start", "-B", path], check=False, timeout=None)
    status = run(["btrfs", "scrub", "status", path], check=False)
    return started.rc == 0, (status.out or started.out or "").strip()


def compression_stats(path: str) -> str:
    if shutil.which("compsize"):
        r = run(["compsize", path], check=False, timeout=None)
        if r.rc == 0:
            return (r.out or "").strip()
    r = run(["btrfs", "filesystem", "usage", path], check=False)
    return (r.out or "").strip()
