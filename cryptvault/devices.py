"""Block-device probing (read-only)."""
from __future__ import annotations

import json
import os
import stat

from .executil import run, trace


def is_block_device(path: str) -> bool:
    try:
        st = os.stat(path)
    except FileNotFoundError:
        return False
    except OSError as exc:
        trace("devices.stat_error", path=path, error=str(exc))
        return False
    return stat.S_ISBLK(st.st_mode)


def uuid_of(path: str) -> str:
    r = run(["blkid", "-s", "UUID", "-o", "value", path], check=False)
    return (r.out or "").strip()


def fs_type(path: str) -> str:
    r = run(["blkid", "-s", "TYPE", "-o", "value", path], check=False)
    return (r.out or "").strip()


def uuid_present(uuid: str) -> bool:
    """True when a connected block device carries filesystem ``uuid``."""

    if not uuid:
        return False
    r = run(["blkid", "-U", uuid], check=False)
    return r.rc == 0 and bool((r.out or "").strip())


def parent_disk(path: str) -> str:
    r = run(["lsblk", "-no", "PKNAME", path], check=False)
    lines = [line.strip() for line in (r.out or "").splitlines() if line.strip()]
    return lines[0] if lines else ""


def _flatten(nodes: list, out: list) -> None:
    for node in nodes:
        out.append(node)
        _flatten(node.get("children") or [], out)


def list_partitions() -> list[dict]:
    """Every partition lsblk reports, flattened out of the device tree."""

    result = run([
        "lsblk",
        "-J",
        "-o",
        "NAME,PATH,SIZE,TYPE,FSTYPE,LABEL,MOUNTPOINT,UUID",
    ], check=True)
    try:
        payload = json.loads(result.out or "{}")
    except json.JSONDecodeError as exc:
        raise RuntimeError(f"failed to parse lsblk output: {exc}") from exc
    flat: list[dict] = []
    _flatten(payload.get("blockdevices") or [], flat)
    return [node for node in flat if node.get("type") == "part"]
