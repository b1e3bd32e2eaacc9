"""Subprocess wrapper, dry-run hook and the JSONL run log."""

from __future__ import annotations

import datetime as _dt
import json
import os
import shlex
import subprocess
import sys
import threading
import time
from typing import Sequence

from .paths import logs_dir


LOG_DIRS: list[str] | None = None
LOG_PATH: str | None = None
LOG_NAME = "cryptvault.jsonl"

_WRITE_LOCK = threading.Lock()


def _log_dirs() -> list[str]:
    if LOG_DIRS:
        return list(LOG_DIRS)
    return [
        logs_dir(),
        "/var/log/cryptvault",
        "/tmp/cryptvault-logs",
    ]


def _ensure_logger() -> str | None:
    global LOG_PATH
    if LOG_PATH:
        return LOG_PATH
    for d in _log_dirs():
        d_expanded = os.path.expanduser(d)
        try:
            os.makedirs(d_expanded, exist_ok=True)
        except OSError:
            continue
        if os.access(d_expanded, os.W_OK):
            LOG_PATH = os.path.join(d_expanded, LOG_NAME)
            return LOG_PATH
    LOG_PATH = None
    return None


def resolve_log_path() -> str | None:
    """Return the active log path, creating directories when possible."""

    return _ensure_logger()


def rotate_log(path: str, max_size_mb: int, retention: int) -> bool:
    """Shift ``path`` to ``path.1`` once it reaches ``max_size_mb`` MiB.

    Older generations move up by one and anything past ``retention`` is
    removed. Returns ``True`` when a rotation happened.
    """

    try:
        size = os.path.getsize(path)
    except OSError:
        return False
    if size < max_size_mb * 1024 * 1024:
        return False
    keep = max(1, retention)
    for i in range(keep, 0, -1):
        older = f"{path}.{i}"
        if not os.path.exists(older):
            continue
        if i == keep:
            os.remove(older)
        else:
            os.replace(older, f"{path}.{i + 1}")
    os.replace(path, f"{path}.1")
    with open(path, "a", encoding="utf-8"):
        pass
    os.chmod(path, 0o644)
    return True


def configure_log(path: str | None, max_size_mb: int = 50, retention: int = 5) -> str | None:
    """Select the run log (``logging.file``) and rotate it before first use."""

    global LOG_PATH
    if path:
        try:
            os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
            LOG_PATH = path
        except OSError:
            LOG_PATH = None
    active = _ensure_logger()
    if active and rotate_log(active, max_size_mb, retention):
        log("INFO", "log.rotated", path=active, max_size_mb=max_size_mb, retention=retention)
    return active


class Result:
    def __init__(self, rc: int, out: str, err: str, duration: float):
        self.rc, self.out, self.err, self.duration = rc, out, err, duration


LEVELS = {"TRACE": 10, "INFO": 20, "WARN": 30, "ERROR": 40, "NONE": 100}
LOG_LEVEL = os.environ.get("CRYPTVAULT_LOG_LEVEL", "INFO").upper()


def _write_jsonl(obj: dict):
    path = _ensure_logger()
    if not path:
        return
    try:
        with _WRITE_LOCK, open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(obj, ensure_ascii=False) + "\n")
    except OSError:
        pass


def log(level: str, event: str, **fields):
    lvl = LEVELS.get(level.upper(), 100)
    cur = LEVELS.get(LOG_LEVEL, 20)
    if lvl < cur:
        return
    ts = _dt.datetime.now(_dt.timezone.utc).isoformat()
    rec = {"ts": ts, "level": level.upper(), "event": event}
    rec.update(fields)
    _write_jsonl(rec)


def trace(event: str, **fields):
    log("TRACE", event, **fields)


def run(
    cmd: Sequence[str],
    check: bool = True,
    dry_run: bool = False,
    timeout: float | None = None,
    env: dict | None = None,
    interactive: bool = False,
    capture_err: bool = False,
) -> Result:
    log("INFO", "exec.start", cmd=list(cmd), dry_run=dry_run)
    started = time.time()
    if dry_run:
        text = "DRY-RUN: " + " ".join(shlex.quote(c) for c in cmd)
        return Result(0, text, "", 0.0)
    env2 = (env or os.environ).copy()
    if interactive:
        # passphrase prompts and progress need the terminal; stderr can still be kept
        proc = subprocess.run(list(cmd), stderr=subprocess.PIPE if capture_err else None,
                              text=True, timeout=timeout, env=env2)
        out, err = "", (proc.stderr or "") if capture_err else ""
        if err:
            sys.stderr.write(err)
    else:
        proc = subprocess.run(list(cmd), capture_output=True, text=True, timeout=timeout, env=env2)
        out, err = proc.stdout, proc.stderr
    dur = time.time() - started
    log("INFO", "exec.done", cmd=list(cmd), rc=proc.returncode, dur=round(dur, 3))
    if proc.returncode != 0:
        log("WARN", "exec.failed", cmd=list(cmd), rc=proc.returncode, err=(err or "")[-2000:])
    if check and proc.returncode != 0:
        raise subprocess.CalledProcessError(proc.returncode, list(cmd), out, err)
    return Result(proc.returncode, out, err, dur)


def failure_text(exc: BaseException) -> str:
    """Render a failed command with the tool's own diagnostic output."""

    if isinstance(exc, subprocess.CalledProcessError):
        cmd = exc.cmd if isinstance(exc.cmd, str) else " ".join(exc.cmd)
        detail = (exc.stderr or exc.stdout or "").strip()
        text = f"{cmd} exited with status {exc.returncode}"
        return f"{text}: {detail}" if detail else text
    return str(exc)


def udev_settle():
    try:
        subprocess.run(["udevadm", "settle"], check=False)
    except OSError:
        pass


def append_jsonl(path: str, obj: dict):
    try:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with _WRITE_LOCK, open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(obj, ensure_ascii=False) + "\n")
    except OSError:
        pass
