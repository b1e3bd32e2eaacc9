"""Bare-metal restore: ten ordered stages from raw device to bootable system.

The pipeline is driven entirely by a confirmed :class:`PartitionPlan` and the
validated restore configuration; all operator interaction happens before it
is constructed. Stages never retry. Whatever happens in stages 1-9, stage 10
(teardown) runs, unmounting in reverse order and closing the mapper.
"""

from __future__ import annotations

import os
from subprocess import CalledProcessError
from typing import Callable

from . import boot_plumbing, btrfs, console, devices, fsinfo, luks, mounts, partitioning, recovery, root_sync, safety
from .config import ValidatedConfig
from .executil import failure_text, log, run
from .model import FULL_DISK, PARTITIONS, PartitionPlan, PreconditionError, RestoreContext

BOOT_LABEL = "boot"
EFI_LABEL = "EFI"
DEFAULT_ID = 1000
STRUCTURE_DIR = "btrfs-structure"
DATA_INFO = "additional-disks-info.txt"

STAGES = (
    (1, "Preliminary checks"),
    (2, "Partitioning"),
    (3, "Partition verification"),
    (4, "Encryption setup"),
    (5, "Filesystem creation"),
    (6, "Subvolume layout"),
    (7, "Mounting"),
    (8, "Data restoration"),
    (9, "Boot configuration"),
    (10, "Teardown"),
)
STAGE_NAMES = dict(STAGES)


class StageError(RuntimeError):
    def __init__(self, stage: int, message: str):
        self.stage = stage
        super().__init__(f"stage {stage} ({STAGE_NAMES.get(stage, '?')}): {message}")


def stage_applies(stage: int, mode: str) -> bool:
    if stage == 2:
        return mode == FULL_DISK
    if stage == 3:
        return mode == PARTITIONS
    return True


def plan_lines(plan: PartitionPlan) -> list[str]:
    lines = []
    for number, name in STAGES:
        note = "" if stage_applies(number, plan.mode) else "  (skipped in this mode)"
        lines.append(f"{number:>2}. {name}{note}")
    return lines


def infer_main_user(home_backup: str) -> tuple[str, int, int] | None:
    """First user directory in the backed-up ``/home`` with its owner ids."""

    try:
        names = sorted(n for n in os.listdir(home_backup) if os.path.isdir(os.path.join(home_backup, n)))
    except OSError:
        return None
    if not names:
        return None
    try:
        st = os.stat(os.path.join(home_backup, names[0]))
        return names[0], st.st_uid, st.st_gid
    except OSError:
        return names[0], DEFAULT_ID, DEFAULT_ID


def _non_empty_dir(path: str) -> bool:
    try:
        return os.path.isdir(path) and bool(os.listdir(path))
    except OSError:
        return False


class RestorePipeline:
    def __init__(
        self,
        plan: PartitionPlan,
        config: ValidatedConfig,
        key_file: str | None = None,
        btrfs_root: str = mounts.BTRFS_ROOT_MOUNT,
        new_root: str = mounts.NEW_ROOT_MOUNT,
    ):
        problems = plan.problems()
        if problems:
            raise PreconditionError("; ".join(problems))
        self.plan = plan
        self.config = config
        self.key_file = key_file
        self.backup_mount = config["backup.hdd_mount"]
        self.backup_root = config["backup.backup_root"]
        self.ctx = RestoreContext()
        self.top = mounts.MountSet(btrfs_root)
        self.target = mounts.MountSet(new_root)
        self.report: dict = {"mode": plan.mode}

    # -- stage plumbing -------------------------------------------------

    def _steps(self) -> dict[int, Callable[[], None]]:
        return {
            1: self.preliminary_checks,
            2: self.partition_disk,
            3: self.verify_partitions,
            4: self.setup_encryption,
            5: self.create_filesystem,
            6: self.create_subvolumes,
            7: self.mount_all,
            8: self.restore_data,
            9: self.configure_boot,
        }

    def _fail(self, message: str):
        raise StageError(self.ctx.stage, message)

    def run(self) -> dict:
        leftovers: list[str] = []
        steps = self._steps()
        try:
            for number, name in STAGES[:-1]:
                if not stage_applies(number, self.plan.mode):
                    continue
                self.ctx.enter(number)
                console.section(f"STEP {number}/10: {name.upper()}")
                log("INFO", "restore.stage", stage=number, name=name)
                try:
                    steps[number]()
                except CalledProcessError as exc:
                    raise StageError(number, failure_text(exc)) from exc
                except OSError as exc:
                    raise StageError(number, str(exc)) from exc
        finally:
            leftovers = self.teardown()
        if leftovers:
            raise StageError(10, "left behind: " + ", ".join(leftovers))
        console.success("Cleanup complete")
        return self.report

    # -- stages -------------------------------------------------------------

    def preliminary_checks(self):
        plan = self.plan
        needed = [plan.disk] if plan.mode == FULL_DISK else [r.device for r in plan.roles()]
        for dev in needed:
            if not devices.is_block_device(dev):
                raise PreconditionError(f"Target device not found: {dev}")
        ok, reason = safety.guard_not_live_disk(needed, self.backup_mount)
        if not ok:
            raise PreconditionError(reason)
        if not fsinfo.is_mounted(self.backup_mount):
            raise PreconditionError(f"Backup HDD not mounted on {self.backup_mount}")
        console.success("Backup HDD mounted")
        for sub in ("root", "home"):
            if not os.path.isdir(os.path.join(self.backup_root, sub)):
                raise PreconditionError(
                    f"Incomplete backups in {self.backup_root}: missing {sub}/ "
                    "(expected root/, home/, code/, btrfs-structure/)"
                )
        console.success("Backups found and valid")
        for line in (f"{r.role}: {r.device} ({r.action})" for r in plan.roles()):
            console.info(line)

    def partition_disk(self):
        console.warn(f"Erasing and repartitioning {self.plan.disk}")
        partitioning.create_layout(self.plan.disk)
        missing = partitioning.missing_nodes(self.plan)
        if missing:
            self._fail(f"partitions not created correctly: {', '.join(missing)} missing")
        console.success("Partitioning complete")

    def verify_partitions(self):
        missing = partitioning.missing_nodes(self.plan)
        if missing:
            self._fail(f"selected partitions disappeared: {', '.join(missing)}")
        problems = self.plan.problems()
        if problems:
            self._fail("; ".join(problems))
        console.success("All selected partitions exist")

    def setup_encryption(self):
        root = self.plan.root.device
        console.warn("You will set the passphrase required at every boot")
        luks.format_luks(root, self.key_file)
        uuid = devices.uuid_of(root)
        if not uuid:
            self._fail(f"cannot read the LUKS UUID of {root}")
        self.ctx.set("luks_uuid", uuid)
        mapper = luks.mapper_name_for(uuid)
        console.step(f"Opening encrypted partition (mapper: {mapper})")
        luks.open_luks(root, mapper, self.key_file)
        self.ctx.set("mapper_name", mapper)
        self.report.update(luks_uuid=uuid, mapper_name=mapper)
        console.success("LUKS partition opened")

    def create_filesystem(self):
        device = luks.mapper_path(self.ctx.get("mapper_name"))
        btrfs.make_filesystem(device, mounts.BTRFS_LABEL)
        self.ctx.set("btrfs_device", device)
        console.success("BTRFS filesystem created")

    def create_subvolumes(self):
        device = self.ctx.get("btrfs_device")
        top = self.top.root
        self.top.mount(device, top, "subvolid=5")
        for name, _ in mounts.SUBVOLUMES:
            btrfs.create_subvolume(os.path.join(top, name))
        for name in mounts.NOCOW_SUBVOLUMES:
            btrfs.disable_cow(os.path.join(top, name))

        user = infer_main_user(os.path.join(self.backup_root, "home"))
        if user:
            name, uid, gid = user
            console.info(f"Main user detected: {name} (UID:{uid} GID:{gid})")
            for sub in mounts.USER_SUBVOLUMES:
                path = os.path.join(top, sub)
                run(["chown", f"{uid}:{gid}", path], check=True)
                run(["chmod", "755", path], check=True)
            self.ctx.set("main_user", user)
        else:
            console.warn("Cannot detect the main user, keeping root ownership")
        log("INFO", "restore.subvolumes", listing=btrfs.list_subvolumes(top))
        if not self.top.unmount(top):
            self._fail(f"cannot unmount {top}")
        console.success("Subvolumes created")

    def mount_all(self):
        device = self.ctx.get("btrfs_device")
        ms = self.target
        mounts.mount_subvolumes(ms, device)
        console.success("Subvolumes mounted")
        run(["mkfs.ext4", "-F", "-L", BOOT_LABEL, self.plan.boot.device], check=True, timeout=None)
        ms.mount(self.plan.boot.device, ms.path("boot"))
        if self.plan.mode == FULL_DISK:
            run(["mkfs.vfat", "-F32", "-n", EFI_LABEL, self.plan.efi.device], check=True, timeout=None)
        else:
            console.info("Mounting the existing EFI partition unformatted")
        ms.mount(self.plan.efi.device, ms.path("boot/efi"))
        if self.plan.mode == PARTITIONS:
            run(["mkdir", "-p", ms.path("boot/efi/EFI/fedora")], check=True)
        console.success("Boot partitions mounted")

    def restore_data(self):
        ms = self.target
        jobs = [("root", ms.root), ("home", ms.path("home"))]
        code = os.path.join(self.backup_root, "code")
        if _non_empty_dir(code):
            jobs.append(("code", ms.path("code")))
        console.warn("This step may take 30-60 minutes")
        failures = []
        for name, dest in jobs:
            console.step(f"Restoring /{'' if name == 'root' else name} ...")
            try:
                root_sync.rsync(os.path.join(self.backup_root, name), dest, root_sync.RESTORE_OPTIONS, interactive=True)
            except CalledProcessError as exc:
                failures.append(f"{name}: {failure_text(exc)}")
                console.error(f"Restoring {name} failed")
                continue
            console.success(f"{name} restored")
        if failures:
            self._fail("; ".join(failures))
        console.success("All data restored")

    def configure_boot(self):
        ms = self.target
        plan = self.plan
        btrfs_uuid = devices.uuid_of(self.ctx.get("btrfs_device"))
        boot_uuid = devices.uuid_of(plan.boot.device)
        efi_uuid = devices.uuid_of(plan.efi.device)
        missing = [n for n, v in (("BTRFS", btrfs_uuid), ("boot", boot_uuid), ("EFI", efi_uuid)) if not v]
        if missing:
            self._fail(f"cannot read UUIDs for: {', '.join(missing)}")
        self.ctx.set("btrfs_uuid", btrfs_uuid)
        self.ctx.set("boot_uuid", boot_uuid)
        self.ctx.set("efi_uuid", efi_uuid)
        self.report.update(btrfs_uuid=btrfs_uuid, boot_uuid=boot_uuid, efi_uuid=efi_uuid)

        fstab = boot_plumbing.render_fstab(btrfs_uuid, boot_uuid, efi_uuid)
        info_path = os.path.join(self.backup_root, STRUCTURE_DIR, DATA_INFO)
        data_uuid = boot_plumbing.read_data_disk_uuid(info_path)
        if data_uuid:
            connected = devices.uuid_present(data_uuid)
            fstab += boot_plumbing.data_fstab_entry(data_uuid, connected)
            self.report.update(data_uuid=data_uuid, data_connected=connected)
            if connected:
                console.success("Original /data connected, adding to fstab")
            else:
                console.warn("Original /data not connected; its fstab entry is commented out")
                meta = recovery.write_missing_volume_report(ms.root, "/data", data_uuid, info_path)
                self.report["missing_volume_report"] = meta["target_path"]
        boot_plumbing.write_fstab(ms.root, fstab)
        boot_plumbing.write_crypttab(ms.root, self.ctx.get("mapper_name"), self.ctx.get("luks_uuid"))
        console.success("fstab and crypttab created")

        mounts.bind_chroot(ms)
        dual_boot = plan.mode == PARTITIONS
        result = boot_plumbing.install_bootloader(ms.root, dual_boot=dual_boot)
        if dual_boot and result["os_prober"]:
            console.warn("os-prober reported no other operating system")
        console.success("GRUB installed" + (" (dual-boot mode)" if dual_boot else ""))

    def teardown(self) -> list[str]:
        """Stage 10. Never raises; returns what could not be released."""

        if self.ctx.stage < 10:
            self.ctx.enter(10)
        console.section("STEP 10/10: TEARDOWN")
        leftovers = self.target.teardown() + self.top.teardown()
        if self.ctx.has("mapper_name"):
            mapper = self.ctx.get("mapper_name")
            if luks.mapper_exists(mapper):
                r = luks.close_luks(mapper, check=False)
                if r.rc != 0:
                    leftovers.append(luks.mapper_path(mapper))
        for item in leftovers:
            console.error(f"Could not release {item}")
        log("INFO", "restore.teardown", leftovers=leftovers)
        return leftovers
