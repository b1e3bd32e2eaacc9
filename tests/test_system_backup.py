import os

import pytest

from cryptvault import config, fsinfo, system_backup
from cryptvault.model import PreconditionError
from cryptvault.root_sync import CopyFailed
from cryptvault.system_backup import SystemBackup

GIB = 1024 ** 3


@pytest.fixture
def machine(host, tmp_path, monkeypatch, messages):
    root = tmp_path / "sys"
    (root / "home" / "alice").mkdir(parents=True)
    (root / "code" / "project").mkdir(parents=True)
    host.mounts["/mnt/hdd1"] = ("/dev/sdb1", "compress=zstd:9")
    monkeypatch.setattr(fsinfo, "free_bytes", lambda path: 500 * GIB)
    return host


def _config(tmp_path, **extra):
    doc = {
        "backup": {"hdd_mount": "/mnt/hdd1", "backup_root": str(tmp_path / "backups")},
        "exclusions": {"home": ["*/.cache"], "system": ["/proc/*", "/sys/*"]},
    }
    doc.update(extra)
    return config.validate(doc, config.SYSTEM_SCHEMA)


def _job(tmp_path, **kw):
    cfg = kw.pop("cfg", None) or _config(tmp_path)
    return SystemBackup(cfg, root=str(tmp_path / "sys"), **kw)


def test_requires_mounted_drive(host, tmp_path, messages):
    with pytest.raises(PreconditionError, match="External HDD not mounted on /mnt/hdd1"):
        _job(tmp_path).run()
    assert host.find("rsync") == []


def test_low_space_only_warns(machine, tmp_path, monkeypatch, messages):
    monkeypatch.setattr(fsinfo, "free_bytes", lambda path: 10 * GIB)
    _job(tmp_path).check_destination()
    assert any(level == "warn" and "Low available space" in text for level, text in messages)


def test_options_per_section(tmp_path):
    job = _job(tmp_path)
    assert job.options("home") == [
        "-aAXHh", "--info=progress2", "--stats", "--delete", "--exclude=*/.cache", "--exclude=.snapshots",
    ]
    assert job.options("code") == ["-aAXHh", "--info=progress2", "--stats", "--delete"]
    assert "--dry-run" in _job(tmp_path, dry_run=True).options("system")


def test_full_run(machine, tmp_path):
    report = _job(tmp_path).run()

    sysroot, backups = tmp_path / "sys", tmp_path / "backups"
    temp = os.path.join(str(sysroot), f".backup-snapshot-{os.getpid()}")
    pairs = [(c[-2], c[-1]) for c in machine.find("rsync")]
    assert pairs == [
        (f"{sysroot}/home/", f"{backups}/home/"),
        (f"{temp}/", f"{backups}/root/"),
        (f"{sysroot}/code/", f"{backups}/code/"),
    ]
    root_copy = next(i for i, c in enumerate(machine.calls) if c[0] == "rsync" and c[-2] == f"{temp}/")
    assert machine.index("btrfs", "subvolume", "snapshot", "-r", str(sysroot), temp) < root_copy
    assert root_copy < machine.index("btrfs", "subvolume", "delete", temp)
    assert report["failures"] == [] and report["snapshot"] is None
    assert (backups / "btrfs-structure" / "additional-disks-info.txt").is_file()
    assert (backups / "btrfs-structure" / "system-info.txt").is_file()


def test_empty_code_is_skipped(machine, tmp_path):
    (tmp_path / "sys" / "code" / "project").rmdir()
    _job(tmp_path).run()
    assert all("/code/" not in c[-2] for c in machine.find("rsync"))


def test_temp_snapshot_removed_when_root_copy_fails(machine, tmp_path):
    temp = os.path.join(str(tmp_path / "sys"), f".backup-snapshot-{os.getpid()}")
    machine.fail(["rsync", "-aAXHh", "--info=progress2", "--stats", "--delete", "--exclude=/proc/*"],
                 rc=12, err="connection closed")
    with pytest.raises(CopyFailed, match="connection closed"):
        _job(tmp_path).run()
    assert ["btrfs", "subvolume", "delete", temp] in machine.calls
    assert len(machine.find("rsync")) == 3


def test_root_copied_live_without_snapshot(machine, tmp_path, messages):
    machine.fail(["btrfs", "subvolume", "snapshot"], err="not a subvolume")
    _job(tmp_path).run()
    sources = [c[-2] for c in machine.find("rsync")]
    assert f"{tmp_path / 'sys'}/" in sources
    assert machine.find("btrfs", "subvolume", "delete") == []
    assert any("without consistency guarantee" in text for level, text in messages)


def test_dry_run_writes_nothing(machine, tmp_path):
    _job(tmp_path, dry_run=True).run()
    assert not (tmp_path / "backups").exists()
    assert machine.find("btrfs", "subvolume", "snapshot") == []
    assert all("--dry-run" in c for c in machine.find("rsync"))


def test_versioning_needs_subvolume(machine, tmp_path, messages):
    cfg = _config(tmp_path, snapshots={"enabled": "true", "directory": str(tmp_path / "versions")})
    machine.fail(["btrfs", "subvolume", "show"], rc=1)
    assert _job(tmp_path, cfg=cfg).version() is None
    assert any("is not a BTRFS subvolume" in text for level, text in messages)


def test_versioning_snapshot_and_rotation(machine, tmp_path):
    versions = tmp_path / "versions"
    for stamp in ("2024-01-01_00-00-00", "2024-02-01_00-00-00"):
        (versions / f"backup-{stamp}").mkdir(parents=True)
    cfg = _config(tmp_path, snapshots={"enabled": "true", "directory": str(versions), "retention": "1"})

    name = _job(tmp_path, cfg=cfg).version()

    assert name.startswith("backup-")
    assert machine.find("btrfs", "subvolume", "snapshot", "-r", str(tmp_path / "backups"))
    assert machine.find("btrfs", "subvolume", "delete") == [
        ["btrfs", "subvolume", "delete", str(versions / "backup-2024-01-01_00-00-00")]
    ]


def test_data_disk_info(machine, monkeypatch):
    machine.mounts["/data"] = ("/dev/sdc1", "")
    machine.reply(["findmnt", "-n", "-o", "UUID", "/data"], out="9f3c-77aa\n")
    monkeypatch.setattr(fsinfo, "total_bytes", lambda path: 2 * 1024 ** 4)
    monkeypatch.setattr(fsinfo, "used_bytes", lambda path: 1024 ** 4)

    text = system_backup.data_disk_info("/data")

    assert "Status  : mounted" in text
    assert "Device  : /dev/sdc1" in text
    assert "UUID    : 9f3c-77aa" in text
    assert "Size    : 2.0TiB" in text


def test_data_disk_info_not_mounted(host):
    assert "Status  : not mounted at backup time" in system_backup.data_disk_info("/data")
