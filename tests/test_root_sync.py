import subprocess

import pytest

from cryptvault import root_sync


def test_parse_rsync_stats():
    text = """
Number of files: 1,234 (reg: 1,000, dir: 234)
Number of created files: 3
Number of deleted files: 2
Number of regular files transferred: 5
Total file size: 1.23G bytes
Total transferred file size: 512M bytes
Literal data: 10M bytes
sent 100 bytes  received 200 bytes  300.00 bytes/sec
"""
    stats = root_sync.parse_rsync_stats(text)
    assert stats["files_transferred"] == 5
    assert stats["files_deleted"] == 2
    assert stats["total_file_size_bytes"] == 1_320_702_444
    assert stats["transferred_size_bytes"] == 536_870_912
    assert root_sync.parse_rsync_stats(None) == {}


def test_build_backup_options():
    assert root_sync.build_backup_options() == ["-a", "--delete", "--info=progress2", "-h", "--stats"]
    assert root_sync.build_backup_options(delete=False, progress=False, compress=True, dry_run=True) == [
        "-a", "-z", "--dry-run", "-h", "--stats",
    ]


def test_exclude_args():
    assert root_sync.exclude_args(["*.tmp", "", ".cache"]) == ["--exclude=*.tmp", "--exclude=.cache"]


def test_rsync_copies_directory_contents(host):
    root_sync.rsync("/data/code", "/mnt/backup1/code/", ["-a"])
    assert host.calls == [["rsync", "-a", "/data/code/", "/mnt/backup1/code/"]]


@pytest.mark.parametrize("code", [23, 24])
def test_soft_exit_codes_warn(host, messages, code):
    host.fail(["rsync"], rc=code, err="file has vanished")
    res = root_sync.rsync("/home", "/mnt/hdd1/backups/home", ["-a"])
    assert isinstance(res, subprocess.CalledProcessError)
    assert res.returncode == code
    assert messages[0][0] == "warn" and f"code {code}" in messages[0][1]


def test_hard_failure_propagates(host, messages):
    host.fail(["rsync"], rc=11, err="No space left on device")
    with pytest.raises(subprocess.CalledProcessError) as exc:
        root_sync.rsync("/home", "/mnt/hdd1/backups/home", ["-a"])
    assert exc.value.stderr == "No space left on device"


def test_rsync_keeps_stderr_when_streaming(monkeypatch):
    seen = {}

    def fake_run(cmd, **kwargs):
        seen.update(kwargs)
        raise subprocess.CalledProcessError(12, list(cmd), "", "rsync error: error in rsync protocol data stream")

    monkeypatch.setattr(root_sync, "run", fake_run)
    with pytest.raises(subprocess.CalledProcessError) as exc:
        root_sync.rsync("/home", "/mnt/hdd1/backups/home", root_sync.RESTORE_OPTIONS, interactive=True)

    assert seen["interactive"] is True and seen["capture_err"] is True
    assert "protocol data stream" in exc.value.stderr
