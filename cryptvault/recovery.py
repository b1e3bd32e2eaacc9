from __future__ import annotations

# Notes left inside the restored system
import datetime as _dt
import os

from .mounts import data_disk_options

REPORT_NAME = "RESTORE_MISSING_VOLUMES.md"


def write_missing_volume_report(mnt: str, mount_point: str, uuid: str, info_path: str | None = None) -> dict:
    """Document a volume present at backup time but absent during restore."""

    stamp = _dt.datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    doc = (
        "# Volumes not reconnected during restoration\n\n"
        f"Generated on {stamp}.\n\n"
        f"## {mount_point}\n\n"
        f"- Filesystem UUID at backup time: `{uuid}`\n"
        f"- fstab entry (commented out): `UUID={uuid}  {mount_point}  btrfs  {data_disk_options()}  0 0`\n"
    )
    if info_path:
        doc += f"- Backup-time details: `{info_path}`\n"
    doc += (
        "\n## Reattach\n\n"
        "1. Connect the disk\n"
        f"2. Check it is visible: `blkid -U {uuid}`\n"
        f"3. Uncomment the {mount_point} line in /etc/fstab\n"
        f"4. Mount: `mount {mount_point}`\n"
    )
    p = os.path.join(mnt, "root", REPORT_NAME)
    os.makedirs(os.path.dirname(p), exist_ok=True)
    with open(p, "w", encoding="utf-8") as f:
        f.write(doc)
    return {
        "host_path": p,
        "target_path": f"/root/{REPORT_NAME}",
        "exists": os.path.isfile(p),
    }
