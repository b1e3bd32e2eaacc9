import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

FULL_DISK = "full-disk"
PARTITIONS = "partitions"

FORMAT = "format"
PRESERVE = "preserve"


class PreconditionError(RuntimeError):
    """A required mount, device or backup tree is missing."""


@dataclass
class BackupFlags:
    drive: str = "both"
    dry_run: bool = False
    assume_yes: bool = False
    snapshot: Optional[bool] = None
    scrub: bool = False
    stats: bool = False
    mount: bool = False
    no_delete: bool = False
    no_progress: bool = False


@dataclass
class VolumeHandle:
    device: str
    mapper_name: str
    mount_point: str
    label: str
    compression: str = "zstd:9"
    # only resources this process created are undone on release
    owns_mapper: bool = False
    owns_mount: bool = False

    @property
    def mapper_path(self) -> str:
        return f"/dev/mapper/{self.mapper_name}"


@dataclass(frozen=True)
class PartitionRole:
    role: str
    device: str
    action: str


@dataclass(frozen=True)
class PartitionPlan:
    mode: str
    efi: PartitionRole
    boot: PartitionRole
    root: PartitionRole
    disk: Optional[str] = None

    def roles(self) -> tuple:
        return (self.efi, self.boot, self.root)

    def devices_to_format(self) -> list:
        return [r.device for r in self.roles() if r.action == FORMAT]

    def problems(self) -> list:
        """Return every invariant this plan violates (empty when sound)."""

        errors = []
        seen: Dict[str, str] = {}
        for r in self.roles():
            # by-id and by-partuuid links name the same node as /dev/sdXN
            real = os.path.realpath(r.device)
            if real in seen:
                errors.append(f"{r.role} and {seen[real]} cannot use the same device ({r.device})")
            else:
                seen[real] = r.role
        if self.mode == PARTITIONS and self.efi.action != PRESERVE:
            errors.append("EFI partition must be preserved in partitions mode")
        if self.mode == FULL_DISK:
            if not self.disk:
                errors.append("full-disk plan requires a target disk")
            if any(r.action != FORMAT for r in self.roles()):
                errors.append("full-disk plan formats every partition")
        if self.mode not in (FULL_DISK, PARTITIONS):
            errors.append(f"unknown restore mode: {self.mode}")
        return errors


class RestoreContext:
    """Identifiers handed from earlier restore stages to later ones.

    Each value is written once, by the stage that produced it, and may only
    be read by a strictly later stage.
    """

    def __init__(self) -> None:
        self.stage = 0
        self._values: Dict[str, Any] = {}
        self._origin: Dict[str, int] = {}

    def enter(self, stage: int) -> None:
        if stage <= self.stage:
            raise RuntimeError(f"restore stage {stage} cannot follow stage {self.stage}")
        self.stage = stage

    def set(self, key: str, value: Any) -> None:
        if key in self._values:
            raise RuntimeError(f"{key} was already set by stage {self._origin[key]}")
        self._values[key] = value
        self._origin[key] = self.stage

    def get(self, key: str) -> Any:
        if key not in self._values:
            raise KeyError(f"{key} has not been produced by an earlier stage")
        if self._origin[key] >= self.stage:
            raise RuntimeError(f"{key} is produced by stage {self._origin[key]} and cannot be read there")
        return self._values[key]

    def has(self, key: str) -> bool:
        return key in self._values


@dataclass
class SpaceCheck:
    label: str
    required: int
    available: int
    total: int
    delete_mode: bool
    source_bytes: int = 0
    notes: list = field(default_factory=list)

    @property
    def ok(self) -> bool:
        limit = self.total if self.delete_mode else self.available
        return limit >= self.required
