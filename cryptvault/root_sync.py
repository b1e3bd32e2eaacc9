from __future__ import annotations

import re
import subprocess
from typing import Dict, Iterable

from . import console
from .executil import run

# rsync: partial transfer due to error / source files vanished
SOFT_EXIT_CODES = {
    23: "partial transfer (some files could not be read)",
    24: "some source files vanished during transfer",
}

RESTORE_OPTIONS = ["-aAXHv", "--info=progress2"]


class CopyFailed(RuntimeError):
    """One or more copies failed outright."""

_SIZE_UNITS = {"": 1, "b": 1, "bytes": 1, "k": 1024, "m": 1024 ** 2, "g": 1024 ** 3, "t": 1024 ** 4}

_NUMBER_RE = re.compile(r"([0-9][0-9,]*(?:\.[0-9]+)?)\s*([KMGT]?)", re.IGNORECASE)


def _parse_size(fragment: str):
    match = _NUMBER_RE.search(fragment)
    if not match:
        return None
    try:
        value = float(match.group(1).replace(",", ""))
    except ValueError:
        return None
    return int(round(value * _SIZE_UNITS.get(match.group(2).lower(), 1)))


def parse_rsync_stats(text: str) -> dict:
    """Pick the headline numbers out of ``rsync --stats`` output."""

    if not isinstance(text, str):
        return {}
    stats: Dict[str, int] = {}
    wanted = {
        "number of regular files transferred:": "files_transferred",
        "number of files transferred:": "files_transferred",
        "number of deleted files:": "files_deleted",
        "total file size:": "total_file_size_bytes",
        "total transferred file size:": "transferred_size_bytes",
    }
    for raw_line in text.splitlines():
        lower = raw_line.strip().lower()
        for prefix, key in wanted.items():
            if lower.startswith(prefix) and key not in stats:
                value = _parse_size(lower.split(":", 1)[1])
                if value is not None:
                    stats[key] = value
    return stats


def build_backup_options(
    archive: bool = True,
    delete: bool = True,
    progress: bool = True,
    compress: bool = False,
    dry_run: bool = False,
) -> list[str]:
    opts = []
    if archive:
        opts.append("-a")
    if delete:
        opts.append("--delete")
    if progress:
        opts.append("--info=progress2")
    if compress:
        opts.append("-z")
    if dry_run:
        opts.append("--dry-run")
    return opts + ["-h", "--stats"]


def exclude_args(patterns: Iterable[str]) -> list[str]:
    return [f"--exclude={p}" for p in patterns if p]


def _dir(path: str) -> str:
    return path.rstrip("/") + "/"


def rsync(src: str, dst: str, options: Iterable[str], dry_run: bool = False, interactive: bool = False):
    """Copy the contents of ``src`` into ``dst``.

    Exit codes 23 and 24 are reported as warnings and returned as the
    ``CalledProcessError`` itself; every other failure propagates. With
    ``interactive`` the progress display goes straight to the terminal while
    stderr is still kept for the failure message and the run log.
    """

    cmd = ["rsync", *options, _dir(src), _dir(dst)]
    try:
        return run(cmd, check=True, dry_run=dry_run, timeout=None, interactive=interactive, capture_err=True)
    except subprocess.CalledProcessError as e:
        if e.returncode in SOFT_EXIT_CODES:
            console.warn(
                f"rsync finished with code {e.returncode} ({SOFT_EXIT_CODES[e.returncode]}) "
                f"for {src}. Continuing."
            )
            return e
        raise
