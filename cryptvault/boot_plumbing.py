"""fstab/crypttab generation and bootloader installation for restores."""

from __future__ import annotations

import datetime as _dt
import os
import re

from .executil import run
from .mounts import SUBVOLUMES, data_disk_options, subvolume_options

GRUB_DEFAULTS = "etc/default/grub"
GRUB_CFG = "/boot/grub2/grub.cfg"

_DATA_UUID_RE = re.compile(r"^UUID\s*:\s*(\S+)", re.MULTILINE)


def _write(path: str, text: str):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(text)
        try:
            f.flush()
            os.fsync(f.fileno())
        except OSError:
            pass


def render_fstab(btrfs_uuid: str, boot_uuid: str, efi_uuid: str, now: _dt.datetime | None = None) -> str:
    stamp = (now or _dt.datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
    lines = [
        "#",
        "# /etc/fstab",
        f"# Generated during restoration on {stamp}",
        "#",
        "",
        "# Boot",
        f"UUID={boot_uuid}  /boot      ext4  defaults                    1 2",
        f"UUID={efi_uuid}  /boot/efi  vfat  umask=0077,shortname=winnt  0 2",
        "",
        "# System (BTRFS on LUKS)",
    ]
    for name, rel in SUBVOLUMES:
        opts = subvolume_options(name)
        if name in ("root", "home"):
            opts += ",x-systemd.device-timeout=0"
        lines.append(f"UUID={btrfs_uuid}  /{rel}  btrfs  {opts}  0 0")
        if name == "home":
            lines += ["", "# Data"]
    return "\n".join(lines) + "\n"


def data_fstab_entry(data_uuid: str, connected: bool) -> str:
    entry = f"UUID={data_uuid}  /data  btrfs  {data_disk_options()}  0 0"
    if connected:
        return f"\n# Additional disk /data\n{entry}\n"
    return (
        f"\n# /data disk (UUID: {data_uuid})\n"
        "# Not connected during restoration\n"
        "# Uncomment after connection:\n"
        f"# {entry}\n"
    )


def write_fstab(mnt: str, text: str) -> str:
    path = os.path.join(mnt, "etc", "fstab")
    _write(path, text)
    return path


def write_crypttab(mnt: str, mapper_name: str, luks_uuid: str) -> str:
    path = os.path.join(mnt, "etc", "crypttab")
    _write(path, f"{mapper_name}  UUID={luks_uuid}  none  discard\n")
    return path


def read_data_disk_uuid(info_path: str) -> str:
    """UUID of the ``/data`` disk recorded at backup time, or ``""``."""

    try:
        with open(info_path, "r", encoding="utf-8") as fh:
            text = fh.read()
    except FileNotFoundError:
        return ""
    m = _DATA_UUID_RE.search(text)
    return m.group(1) if m else ""


def enable_os_prober(mnt: str) -> bool:
    """Force ``GRUB_DISABLE_OS_PROBER=false``; returns False without a grub defaults file."""

    path = os.path.join(mnt, GRUB_DEFAULTS)
    if not os.path.isfile(path):
        return False
    with open(path, "r", encoding="utf-8") as fh:
        lines = fh.read().splitlines()
    out = [line for line in lines if not line.startswith("GRUB_DISABLE_OS_PROBER=")]
    out.append("GRUB_DISABLE_OS_PROBER=false")
    _write(path, "\n".join(out) + "\n")
    return True


def _chroot(mnt: str, *cmd: str, check: bool = True, dry_run: bool = False):
    return run(["chroot", mnt, *cmd], check=check, dry_run=dry_run, timeout=None)


def install_bootloader(mnt: str, dual_boot: bool, dry_run: bool = False) -> dict:
    """Install GRUB to the EFI directory and regenerate config and initramfs.

    With ``dual_boot`` the OS prober is enabled so the preserved operating
    system gets a menu entry; its own failure is tolerated.
    """

    result = {"os_prober": None}
    _chroot(mnt, "grub2-install", "--target=x86_64-efi", "--efi-directory=/boot/efi",
            "--bootloader-id=fedora", "--recheck", dry_run=dry_run)
    if dual_boot:
        if not dry_run:
            enable_os_prober(mnt)
        probe = _chroot(mnt, "os-prober", check=False, dry_run=dry_run)
        result["os_prober"] = probe.rc
    _chroot(mnt, "grub2-mkconfig", "-o", GRUB_CFG, dry_run=dry_run)
    _chroot(mnt, "dracut", "--force", "--regenerate-all", dry_run=dry_run)
    return result
