"""Read-only filesystem queries used to gate backup and restore steps."""

from __future__ import annotations

import contextlib
import os

from .executil import run, trace
from .model import SpaceCheck

SAFETY_MARGIN = 0.10

MOUNTINFO = "/proc/self/mountinfo"


def _unescape(field: str) -> str:
    return field.replace("\\040", " ").replace("\\011", "\t").replace("\\134", "\\")


def _mount_entries() -> list[dict]:
    entries: list[dict] = []
    try:
        with open(MOUNTINFO, "r", encoding="utf-8") as fh:
            for line in fh:
                parts = line.strip().split()
                if not parts:
                    continue
                with contextlib.suppress(ValueError, IndexError):
                    dash = parts.index("-")
                    entries.append({
                        "mount_point": _unescape(parts[4]),
                        "mount_options": parts[5],
                        "fstype": parts[dash + 1],
                        "source": parts[dash + 2],
                        "super_options": parts[dash + 3] if len(parts) > dash + 3 else "",
                    })
    except FileNotFoundError:
        return []
    except OSError as exc:
        trace("fsinfo.mountinfo_error", error=str(exc))
    return entries


def _entry_for(path: str) -> dict | None:
    target = os.path.realpath(path)
    found = None
    # the last entry wins when mounts are stacked on one directory
    for entry in _mount_entries():
        if entry["mount_point"] == target:
            found = entry
    return found


def is_mounted(path: str) -> bool:
    return _entry_for(path) is not None


def mount_source(path: str) -> str:
    entry = _entry_for(path)
    return entry["source"] if entry else ""


def mount_options(path: str) -> list[str]:
    entry = _entry_for(path)
    if not entry:
        return []
    opts = entry["mount_options"].split(",") + entry["super_options"].split(",")
    return [o for o in opts if o]


def compression_option(path: str) -> str:
    """Return the active ``compress=`` value (e.g. ``zstd:9``), or ``""``."""

    for opt in mount_options(path):
        if opt.startswith("compress=") or opt.startswith("compress-force="):
            return opt.split("=", 1)[1]
    return ""


def filesystem_type(path: str) -> str:
    r = run(["findmnt", "-n", "-o", "FSTYPE", "--target", path], check=False)
    return (r.out or "").strip().splitlines()[0] if (r.out or "").strip() else ""


def is_btrfs(path: str) -> bool:
    return filesystem_type(path) == "btrfs"


def total_bytes(path: str) -> int:
    st = os.statvfs(path)
    return st.f_blocks * st.f_frsize


def free_bytes(path: str) -> int:
    st = os.statvfs(path)
    return st.f_bavail * st.f_frsize


def used_bytes(path: str) -> int:
    st = os.statvfs(path)
    return (st.f_blocks - st.f_bfree) * st.f_frsize


def tree_bytes(path: str) -> int:
    """Disk usage of ``path`` as reported by ``du``; 0 when unreadable."""

    r = run(["du", "-sk", path], check=False, timeout=None)
    first = (r.out or "").split()
    if r.rc not in (0, 1) or not first:
        return 0
    try:
        return int(first[0]) * 1024
    except ValueError:
        return 0


_IEC = ["B", "KiB", "MiB", "GiB", "TiB", "PiB"]


def human_size(n: int) -> str:
    value = float(n)
    for unit in _IEC:
        if abs(value) < 1024 or unit == _IEC[-1]:
            if unit == "B":
                return f"{int(value)}B"
            return f"{value:.1f}{unit}"
        value /= 1024
    return f"{n}B"


def check_space(label: str, dest: str, items: list[str], delete_mode: bool) -> SpaceCheck:
    """Compare what ``items`` need on ``dest`` against its capacity.

    In delete (mirror) mode the destination converges to the source
    footprint, so total capacity is the bound; otherwise free space is.
    """

    source = sum(tree_bytes(item) for item in items)
    required = source + int(source * SAFETY_MARGIN)
    return SpaceCheck(
        label=label,
        required=required,
        available=free_bytes(dest),
        total=total_bytes(dest),
        delete_mode=delete_mode,
        source_bytes=source,
    )


def describe_space(check: SpaceCheck) -> list[str]:
    lines = [f"Source size: ~{human_size(check.source_bytes)} (required with margin: ~{human_size(check.required)})"]
    if check.delete_mode:
        lines.append(f"Destination total: {human_size(check.total)}")
    lines.append(f"Destination available: {human_size(check.available)}")
    return lines
