"""Preflight guards: required tools, and never formatting the disk the live system or the backup runs from."""

from __future__ import annotations

import os
import shutil

from .devices import parent_disk
from .executil import log, run
from .model import PreconditionError


def _source_of(mountpoint: str) -> str:
    r = run(["findmnt", "-no", "SOURCE", mountpoint], check=False)
    return (r.out or "").strip().splitlines()[0] if (r.out or "").strip() else ""


def top_disk(device: str) -> str:
    """Walk PKNAME links (mapper -> partition -> disk) up to the whole disk."""

    # btrfs sources look like /dev/sda2[/root]
    device = device.split("[", 1)[0]
    if not device.startswith("/dev/"):
        return ""
    name = os.path.basename(device)
    path = device
    for _ in range(4):
        parent = parent_disk(path)
        if not parent or parent == name:
            break
        name = parent
        path = f"/dev/{name}"
    return name


def guard_not_live_disk(devices: list[str], backup_mount: str | None = None) -> tuple[bool, str]:
    """Refuse targets sharing a disk with ``/`` or the backup mount.

    Returns ``(ok, reason)``.
    """

    live = {"live root": top_disk(_source_of("/"))}
    if backup_mount:
        live["backup drive"] = top_disk(_source_of(backup_mount))
    for device in devices:
        target = top_disk(device)
        for what, disk in live.items():
            if disk and disk == target:
                return False, f"Target {device} is on the same disk as the {what} ({disk})."
    return True, ""


def missing_tools(tools) -> list[str]:
    return [t for t in tools if shutil.which(t) is None]


def require_tools(what: str, tools) -> None:
    """Fail before any side effect when a command-line tool is not installed.

    Every missing tool is named at once so one install round is enough.
    """

    missing = missing_tools(tools)
    if missing:
        log("ERROR", "preflight.missing_tools", command=what, missing=missing)
        raise PreconditionError(f"Missing required tools for {what}: {', '.join(missing)}")
