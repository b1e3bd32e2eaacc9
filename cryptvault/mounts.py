"""Mount bookkeeping and the restored system's subvolume layout."""

from __future__ import annotations

import os
from subprocess import CalledProcessError

from .executil import log, run, udev_settle

BTRFS_LABEL = "fedora-root"
BTRFS_ROOT_MOUNT = "/mnt/btrfs-root"
NEW_ROOT_MOUNT = "/mnt/newroot"

# (subvolume, mount path relative to the new root), in mount order
SUBVOLUMES = (
    ("root", ""),
    ("home", "home"),
    ("code", "code"),
    ("vm", "vm"),
    ("ai", "ai"),
)
NOCOW_SUBVOLUMES = ("vm",)
USER_SUBVOLUMES = ("code", "ai")

_BASE_OPTS = "noatime,ssd,space_cache=v2,discard=async"
COMPRESSION = "zstd:1"


def subvolume_options(name: str) -> str:
    if name in NOCOW_SUBVOLUMES:
        return f"subvol={name},{_BASE_OPTS},nodatacow"
    return f"subvol={name},compress={COMPRESSION},{_BASE_OPTS}"


def data_disk_options() -> str:
    return f"compress={COMPRESSION},{_BASE_OPTS},nofail"


class MountSet:
    """Mounts made under one target root, undone in reverse order."""

    def __init__(self, root: str):
        self.root = root
        self.mounted: list[str] = []

    def path(self, rel: str = "") -> str:
        return os.path.join(self.root, rel) if rel else self.root

    def mount(self, source: str, target: str, options: str | None = None, fstype: str | None = None):
        run(["mkdir", "-p", target], check=True)
        cmd = ["mount"]
        if fstype:
            cmd += ["-t", fstype]
        if options:
            cmd += ["-o", options]
        cmd += [source, target]
        run(cmd, check=True)
        self.mounted.append(target)

    def bind(self, source: str, target: str):
        run(["mkdir", "-p", target], check=True)
        run(["mount", "--bind", source, target], check=True)
        self.mounted.append(target)

    def unmount(self, target: str) -> bool:
        """Unmount one tracked target ahead of a full teardown."""

        if target not in self.mounted:
            return True
        r = run(["umount", target], check=False)
        if r.rc == 0:
            self.mounted.remove(target)
            return True
        return False

    def teardown(self) -> list[str]:
        """Unmount everything in strict reverse order; returns failed targets."""

        failed = []
        for target in reversed(self.mounted):
            r = run(["umount", target], check=False)
            if r.rc != 0:
                # a lazy detach still frees the live environment
                lazy = run(["umount", "-l", target], check=False)
                if lazy.rc != 0:
                    failed.append(target)
                    log("ERROR", "mounts.umount_failed", target=target, err=(r.err or "").strip())
        self.mounted = []
        udev_settle()
        return failed


def mount_subvolumes(ms: MountSet, device: str):
    for name, rel in SUBVOLUMES:
        target = ms.path(rel)
        ms.mount(device, target, subvolume_options(name))
        if name == "root":
            for sub in ("home", "code", "vm", "ai", "boot", "boot/efi", "data"):
                run(["mkdir", "-p", ms.path(sub)], check=True)


def bind_chroot(ms: MountSet):
    for p in ("dev", "proc", "sys", "run"):
        ms.bind(f"/{p}", ms.path(p))
    efivars = "/sys/firmware/efi/efivars"
    if os.path.isdir(efivars):
        try:
            ms.bind(efivars, ms.path(efivars.lstrip("/")))
        except CalledProcessError as exc:
            log("WARN", "mounts.efivars_bind_failed", rc=exc.returncode)
