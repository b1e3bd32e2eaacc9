import os
from types import SimpleNamespace

import pytest

from cryptvault import fsinfo
from cryptvault.executil import Result

MOUNTINFO = (
    "22 1 0:21 / / rw,relatime shared:1 - btrfs /dev/nvme0n1p3 rw,ssd,space_cache=v2,subvol=/root\n"
    "90 22 0:45 / /mnt/backup1 rw,noatime shared:40 - btrfs /dev/mapper/backup1_crypt "
    "rw,compress=zstd:9,space_cache=v2\n"
    "91 22 0:46 / /mnt/with\\040space rw shared:41 - ext4 /dev/sdc1 rw\n"
    "92 22 0:47 / /mnt/backup1 rw,noatime shared:42 - btrfs /dev/mapper/other rw,compress-force=zstd:3\n"
)


@pytest.fixture
def mountinfo(tmp_path, monkeypatch):
    path = tmp_path / "mountinfo"
    path.write_text(MOUNTINFO, encoding="utf-8")
    monkeypatch.setattr(fsinfo, "MOUNTINFO", str(path))
    return path


def test_mount_queries(mountinfo):
    assert fsinfo.is_mounted("/")
    assert fsinfo.is_mounted("/mnt/with space")
    assert not fsinfo.is_mounted("/mnt/backup2")
    # stacked mounts: the most recent one is visible
    assert fsinfo.mount_source("/mnt/backup1") == "/dev/mapper/other"
    assert fsinfo.compression_option("/mnt/backup1") == "zstd:3"
    assert fsinfo.compression_option("/") == ""
    assert fsinfo.mount_source("/nowhere") == ""


def test_missing_mountinfo(monkeypatch, tmp_path):
    monkeypatch.setattr(fsinfo, "MOUNTINFO", str(tmp_path / "absent"))
    assert fsinfo.is_mounted("/") is False


def test_filesystem_type(monkeypatch):
    monkeypatch.setattr(fsinfo, "run", lambda cmd, check=False: Result(0, "btrfs\n", "", 0.0))
    assert fsinfo.is_btrfs("/mnt/backup1")
    monkeypatch.setattr(fsinfo, "run", lambda cmd, check=False: Result(1, "", "", 0.0))
    assert fsinfo.filesystem_type("/nope") == ""


def test_statvfs_figures(monkeypatch):
    st = SimpleNamespace(f_blocks=1000, f_bfree=400, f_bavail=300, f_frsize=4096)
    monkeypatch.setattr(fsinfo.os, "statvfs", lambda path: st)
    assert fsinfo.total_bytes("/x") == 1000 * 4096
    assert fsinfo.free_bytes("/x") == 300 * 4096
    assert fsinfo.used_bytes("/x") == 600 * 4096


def test_tree_bytes(monkeypatch):
    monkeypatch.setattr(fsinfo, "run", lambda cmd, check=False, timeout=None: Result(1, "2048\t/data/code\n", "", 0.0))
    assert fsinfo.tree_bytes("/data/code") == 2048 * 1024
    monkeypatch.setattr(fsinfo, "run", lambda cmd, check=False, timeout=None: Result(2, "", "err", 0.0))
    assert fsinfo.tree_bytes("/data/code") == 0


@pytest.mark.parametrize(
    "value, text",
    [(512, "512B"), (1536, "1.5KiB"), (5 * 1024 ** 3, "5.0GiB"), (3 * 1024 ** 4, "3.0TiB")],
)
def test_human_size(value, text):
    assert fsinfo.human_size(value) == text


def _sizes(monkeypatch, source_bytes, free, total):
    monkeypatch.setattr(fsinfo, "tree_bytes", lambda path: source_bytes)
    monkeypatch.setattr(fsinfo, "free_bytes", lambda path: free)
    monkeypatch.setattr(fsinfo, "total_bytes", lambda path: total)


def test_space_check_adds_margin(monkeypatch):
    gib = 1024 ** 3
    _sizes(monkeypatch, 5 * gib, 6 * gib, 100 * gib)
    check = fsinfo.check_space("Backup1", "/mnt/backup1", ["/data/a"], delete_mode=False)
    assert check.required == int(5.5 * gib)
    assert check.ok

    _sizes(monkeypatch, 5 * gib, 5 * gib, 100 * gib)
    assert not fsinfo.check_space("Backup1", "/mnt/backup1", ["/data/a"], delete_mode=False).ok


def test_space_check_delete_mode_uses_total(monkeypatch):
    gib = 1024 ** 3
    _sizes(monkeypatch, 5 * gib, 1 * gib, 10 * gib)
    check = fsinfo.check_space("Backup1", "/mnt/backup1", ["/data/a"], delete_mode=True)
    assert check.ok
    lines = fsinfo.describe_space(check)
    assert lines[0] == "Source size: ~5.0GiB (required with margin: ~5.5GiB)"
    assert "Destination total: 10.0GiB" in lines


def test_space_check_sums_selected_items(monkeypatch):
    sizes = {"/data/a": 100, "/data/b": 300}
    monkeypatch.setattr(fsinfo, "tree_bytes", lambda path: sizes[path])
    monkeypatch.setattr(fsinfo, "free_bytes", lambda path: 10 ** 6)
    monkeypatch.setattr(fsinfo, "total_bytes", lambda path: 10 ** 6)
    check = fsinfo.check_space("B", "/mnt/b", list(sizes), delete_mode=False)
    assert check.source_bytes == 400
    assert check.required == 440


def test_entry_for_resolves_symlinks(mountinfo, tmp_path):
    link = tmp_path / "rootlink"
    os.symlink("/", link)
    assert fsinfo.is_mounted(str(link))
