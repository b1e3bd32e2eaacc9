import subprocess
from typing import Dict, List, Set, Tuple

import pytest

from cryptvault import (
    backup,
    btrfs,
    boot_plumbing,
    console,
    devices,
    executil,
    fsinfo,
    luks,
    mounts,
    partitioning,
    restore,
    root_sync,
    safety,
    system_backup,
    volumes,
)
from cryptvault.executil import Result

_RUN_MODULES = (
    backup,
    btrfs,
    boot_plumbing,
    devices,
    fsinfo,
    luks,
    mounts,
    partitioning,
    restore,
    root_sync,
    safety,
    system_backup,
    volumes,
)


class FakeHost:
    """Records commands and keeps a small device/mapper/mount table.

    ``cryptsetup open|close`` and ``mount``/``umount`` update the tables, so
    code that checks state after acting sees a consistent machine.
    """

    def __init__(self) -> None:
        self.calls: List[List[str]] = []
        self.block_devices: Set[str] = set()
        self.mappers: Set[str] = set()
        self.mounts: Dict[str, Tuple[str, str]] = {}
        self._replies: List[Tuple[Tuple[str, ...], int, str, str]] = []

    def reply(self, prefix, out: str = "", rc: int = 0, err: str = "") -> None:
        self._replies.append((tuple(prefix), rc, out, err))

    def fail(self, prefix, rc: int = 1, err: str = "failed") -> None:
        self.reply(prefix, rc=rc, err=err)

    def find(self, *prefix) -> List[List[str]]:
        return [c for c in self.calls if c[: len(prefix)] == list(prefix)]

    def index(self, *prefix) -> int:
        for i, c in enumerate(self.calls):
            if c[: len(prefix)] == list(prefix):
                return i
        raise AssertionError(f"command not run: {' '.join(prefix)}")

    def mount_entries(self) -> List[dict]:
        return [
            {
                "mount_point": target,
                "mount_options": "rw,noatime",
                "fstype": "btrfs",
                "source": source,
                "super_options": opts,
            }
            for target, (source, opts) in self.mounts.items()
        ]

    def _apply(self, cmd: List[str]) -> None:
        if cmd[:2] == ["cryptsetup", "open"]:
            self.mappers.add(cmd[3])
        elif cmd[:2] == ["cryptsetup", "close"]:
            self.mappers.discard(cmd[2])
        elif cmd[0] == "mount":
            opts = cmd[cmd.index("-o") + 1] if "-o" in cmd else ""
            self.mounts[cmd[-1]] = (cmd[-2], opts)
        elif cmd[0] == "umount":
            self.mounts.pop(cmd[-1], None)

    def __call__(self, cmd, check=True, dry_run=False, timeout=None, env=None, interactive=False, capture_err=False):
        cmd = list(cmd)
        self.calls.append(cmd)
        if dry_run:
            return Result(0, "DRY-RUN: " + " ".join(cmd), "", 0.0)
        rc, out, err = 0, "", ""
        for prefix, r, o, e in reversed(self._replies):
            if tuple(cmd[: len(prefix)]) == prefix:
                rc, out, err = r, o, e
                break
        if rc == 0:
            self._apply(cmd)
        if check and rc != 0:
            raise subprocess.CalledProcessError(rc, cmd, out, err)
        return Result(rc, out, err, 0.0)


@pytest.fixture(autouse=True)
def isolated_log(tmp_path, monkeypatch):
    monkeypatch.setenv("CRYPTVAULT_BASE_PATH", str(tmp_path / "state"))
    monkeypatch.setenv("NO_COLOR", "1")
    monkeypatch.setattr(executil, "LOG_PATH", None)
    monkeypatch.setattr(executil, "LOG_DIRS", [str(tmp_path / "logs")])
    yield tmp_path / "logs" / executil.LOG_NAME


@pytest.fixture(autouse=True)
def tools_installed(monkeypatch):
    monkeypatch.setattr(safety, "missing_tools", lambda tools: [])


@pytest.fixture
def host(monkeypatch):
    fake = FakeHost()
    for module in _RUN_MODULES:
        monkeypatch.setattr(module, "run", fake)
    for module in (luks, mounts, partitioning, volumes):
        monkeypatch.setattr(module, "udev_settle", lambda: None)
    monkeypatch.setattr(fsinfo, "_mount_entries", fake.mount_entries)
    monkeypatch.setattr(devices, "is_block_device", lambda p: p in fake.block_devices)
    monkeypatch.setattr(partitioning, "is_block_device", lambda p: p in fake.block_devices)
    monkeypatch.setattr(luks, "mapper_exists", lambda name: name in fake.mappers)
    return fake


@pytest.fixture
def messages(monkeypatch):
    """Capture console output as ``(level, text)`` pairs."""

    seen: List[Tuple[str, str]] = []
    for level in ("error", "warn", "info", "success", "step", "plain"):
        monkeypatch.setattr(console, level, lambda msg="", _lvl=level: seen.append((_lvl, msg)))
    monkeypatch.setattr(console, "section", lambda title: seen.append(("section", title)))
    return seen


def answers(*replies):
    """An ``ask`` callable that returns ``replies`` in order."""

    queue = list(replies)
    prompts: List[str] = []

    def ask(prompt: str) -> str:
        prompts.append(prompt)
        if not queue:
            raise AssertionError(f"unexpected prompt: {prompt}")
        return queue.pop(0)

    ask.prompts = prompts
    return ask


@pytest.fixture
def ask():
    return answers
