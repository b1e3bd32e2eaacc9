"""LUKS format/open/close primitives."""

from __future__ import annotations

import os

from .executil import run, udev_settle


def mapper_path(name: str) -> str:
    return f"/dev/mapper/{name}"


def mapper_exists(name: str) -> bool:
    return os.path.exists(mapper_path(name))


def mapper_name_for(uuid: str) -> str:
    """Mapper name tied to the LUKS header UUID, stable across runs."""

    return f"luks-{uuid}"


def is_luks(device: str) -> bool:
    return run(["cryptsetup", "isLuks", device], check=False).rc == 0


def _key_args(key_file: str | None) -> list[str]:
    return ["--key-file", key_file] if key_file else []


def format_luks(device: str, key_file: str | None = None, dry_run: bool = False):
    cmd = ["cryptsetup", "luksFormat", "--type", "luks2"]
    if key_file:
        cmd += ["-q", "--batch-mode", *_key_args(key_file)]
    cmd.append(device)
    # without a key file cryptsetup asks for and confirms the passphrase itself
    run(cmd, check=True, dry_run=dry_run, timeout=None, interactive=not key_file)
    udev_settle()


def open_luks(device: str, name: str, key_file: str | None = None, dry_run: bool = False):
    if not dry_run and mapper_exists(name):
        return
    cmd = ["cryptsetup", "open", device, name, *_key_args(key_file)]
    run(cmd, check=True, dry_run=dry_run, timeout=None, interactive=not key_file)
    udev_settle()


def close_luks(name: str, dry_run: bool = False, check: bool = True):
    return run(["cryptsetup", "close", name], check=check, dry_run=dry_run, timeout=60.0)
