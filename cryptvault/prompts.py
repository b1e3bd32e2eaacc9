"""Operator decisions, collected before any pipeline runs.

Every prompt takes an ``ask`` callable (``input`` by default) so the
decision phase can be driven without a terminal.
"""

from __future__ import annotations

import os
from typing import Callable

from . import console, devices
from .model import FULL_DISK, PartitionPlan
from .partitioning import partitions_plan

Ask = Callable[[str], str]


class Cancelled(Exception):
    """The operator declined to continue."""


def confirm(prompt: str, ask: Ask = input) -> bool:
    """Strict yes/no: anything but the full word is asked again."""

    while True:
        answer = ask(f"{prompt} (yes/no): ").strip()
        if answer == "yes":
            return True
        if answer == "no":
            return False
        console.warn("Answer 'yes' or 'no'")


def confirm_short(prompt: str, ask: Ask = input) -> bool:
    answer = ask(f"{prompt} (Y/N) ").strip()
    return answer in ("y", "Y")


def _show_partitions():
    console.info("Available partitions:")
    try:
        parts = devices.list_partitions()
    except Exception as exc:
        console.warn(f"Cannot list partitions: {exc}")
        return
    for p in parts:
        console.plain(
            f"  {p.get('path') or p.get('name')}  {p.get('size') or ''}  "
            f"{p.get('fstype') or '-'}  {p.get('label') or ''}  {p.get('mountpoint') or ''}"
        )


def _pick(prompt: str, taken: dict, ask: Ask, check_fat: bool = False, warning: str | None = None) -> str:
    while True:
        dev = ask(prompt).strip()
        if not devices.is_block_device(dev):
            console.warn(f"Partition not found: {dev}")
            continue
        real = os.path.realpath(dev)
        if real in taken:
            console.warn(f"Cannot be the same device as the {taken[real]} partition")
            continue
        if check_fat:
            fstype = devices.fs_type(dev)
            if fstype == "vfat":
                console.success(f"EFI partition: {dev} (will be PRESERVED)")
                return dev
            console.warn(f"This doesn't appear to be a FAT32 EFI partition (found: {fstype or 'none'})")
            if confirm("Use it anyway?", ask):
                return dev
            continue
        if warning:
            console.warn(warning.format(dev=dev))
        if confirm("Confirm?", ask):
            return dev


def select_partitions(ask: Ask = input) -> PartitionPlan:
    """Ask for the existing EFI partition and the boot/root partitions to format."""

    _show_partitions()
    taken: dict = {}
    efi = _pick("Enter EXISTING EFI partition (e.g. /dev/nvme0n1p1): ", taken, ask, check_fat=True)
    taken[os.path.realpath(efi)] = "EFI"
    boot = _pick("Enter /boot partition to FORMAT (e.g. /dev/nvme0n1p4): ", taken, ask,
                 warning="/boot ({dev}) will be FORMATTED as ext4")
    taken[os.path.realpath(boot)] = "boot"
    root = _pick("Enter LUKS partition to FORMAT (e.g. /dev/nvme0n1p5): ", taken, ask,
                 warning="LUKS ({dev}) will be FORMATTED with LUKS+BTRFS")
    plan = partitions_plan(efi, boot, root)
    console.success("Partition selection complete")
    return plan


def describe_plan(plan: PartitionPlan) -> list[str]:
    lines = [f"Mode: {plan.mode}"]
    if plan.disk:
        lines.append(f"Target disk: {plan.disk}")
    for r in plan.roles():
        lines.append(f"  {r.role:<5} {r.device}  ({r.action})")
    return lines


def confirm_start(mode: str, target: str, ask: Ask = input) -> bool:
    if mode == FULL_DISK:
        console.warn(f"ALL DATA ON {target} WILL BE LOST!")
    else:
        console.warn("ONLY the selected Linux partitions will be formatted.")
        console.warn("The EFI partition and every other partition are preserved.")
    return confirm("Do you want to continue?", ask)


def confirm_destruction(plan: PartitionPlan, ask: Ask = input) -> bool:
    """Second confirmation that names every device about to be erased."""

    console.warn("FINAL CONFIRMATION!")
    if plan.mode == FULL_DISK:
        console.warn(f"Target disk: {plan.disk} ({', '.join(plan.devices_to_format())})")
    else:
        console.warn(f"Partitions to FORMAT: {', '.join(plan.devices_to_format())}")
        console.warn(f"Partition PRESERVED: {plan.efi.device}")
    return confirm("Are you ABSOLUTELY SURE?", ask)
