"""GPT layout for full-disk restores and partition naming."""

import re

from .devices import is_block_device
from .executil import run, udev_settle
from .model import FORMAT, FULL_DISK, PARTITIONS, PRESERVE, PartitionPlan, PartitionRole

# MiB boundaries: EFI 1-211, boot 211-2347, root 2347-end
EFI_START, EFI_END = 1, 211
BOOT_END = 2347

_P_SUFFIX = re.compile(r"(nvme|mmcblk|loop)")


def partition_name(disk: str, number: int) -> str:
    # nvme0n1 -> nvme0n1p1, sda -> sda1
    if _P_SUFFIX.search(disk.rsplit("/", 1)[-1]):
        return f"{disk}p{number}"
    return f"{disk}{number}"


def full_disk_plan(disk: str) -> PartitionPlan:
    return PartitionPlan(
        mode=FULL_DISK,
        efi=PartitionRole("EFI", partition_name(disk, 1), FORMAT),
        boot=PartitionRole("boot", partition_name(disk, 2), FORMAT),
        root=PartitionRole("root", partition_name(disk, 3), FORMAT),
        disk=disk,
    )


def partitions_plan(efi: str, boot: str, root: str) -> PartitionPlan:
    return PartitionPlan(
        mode=PARTITIONS,
        efi=PartitionRole("EFI", efi, PRESERVE),
        boot=PartitionRole("boot", boot, FORMAT),
        root=PartitionRole("root", root, FORMAT),
    )


def create_layout(disk: str, dry_run: bool = False):
    run(["wipefs", "-af", disk], check=False, dry_run=dry_run)
    run(["parted", "-s", disk, "mklabel", "gpt"], check=True, dry_run=dry_run)
    run(["parted", "-s", disk, "mkpart", "primary", "fat32", f"{EFI_START}MiB", f"{EFI_END}MiB"], check=True, dry_run=dry_run)
    run(["parted", "-s", disk, "set", "1", "esp", "on"], check=True, dry_run=dry_run)
    run(["parted", "-s", disk, "mkpart", "primary", "ext4", f"{EFI_END}MiB", f"{BOOT_END}MiB"], check=True, dry_run=dry_run)
    run(["parted", "-s", disk, "mkpart", "primary", f"{BOOT_END}MiB", "100%"], check=True, dry_run=dry_run)
    reread(disk, dry_run=dry_run)


def reread(disk: str, dry_run: bool = False):
    run(["partprobe", disk], check=False, dry_run=dry_run)
    udev_settle()


def missing_nodes(plan: PartitionPlan) -> list[str]:
    return [r.device for r in plan.roles() if not is_block_device(r.device)]
