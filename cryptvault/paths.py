from __future__ import annotations

import hashlib
import os
import pwd
import tempfile
from pathlib import Path

_DEFAULT_BASE = "/var/lib/cryptvault"

LOCK_FILE = "/var/run/backup-system.lock"
RESTORE_CONFIG_FALLBACK = "/mnt/hdd1/backups/restore-system/config.yml"


def _expand(path: str) -> str:
    candidate = Path(path).expanduser()
    try:
        return str(candidate.resolve())
    except FileNotFoundError:
        return str(candidate)


def base_path() -> str:
    """Return the base directory for cryptvault state.

    ``CRYPTVAULT_BASE_PATH`` overrides the default ``/var/lib/cryptvault``
    so tests and unprivileged dry runs can point it somewhere writable.
    """

    override = os.environ.get("CRYPTVAULT_BASE_PATH")
    if override:
        return _expand(override)
    return _expand(_DEFAULT_BASE)


def logs_dir() -> str:
    return str(Path(base_path()) / "logs")


def real_home() -> str:
    """Home directory of the invoking user, looking through ``sudo``."""

    sudo_user = os.environ.get("SUDO_USER")
    if sudo_user:
        try:
            return pwd.getpwnam(sudo_user).pw_dir
        except KeyError:
            pass
    return os.path.expanduser("~")


def default_drives_config() -> str:
    return os.path.join(real_home(), ".backup", "backup-hdd.yml")


def default_system_config() -> str:
    return os.path.join(real_home(), ".backup", "config-system.yml")


def restore_config_candidates(script_dir: str | None = None) -> list[str]:
    here = script_dir or os.path.dirname(os.path.abspath(__file__))
    return [
        os.path.join(here, "config.yml"),
        os.path.join(os.getcwd(), "config.yml"),
        RESTORE_CONFIG_FALLBACK,
    ]


def find_restore_config(script_dir: str | None = None) -> str | None:
    for candidate in restore_config_candidates(script_dir):
        if os.path.isfile(candidate):
            return candidate
    return None


def backup_lock_file(config_path: str) -> str:
    """Lock path for one drives configuration (one run per config at a time)."""

    digest = hashlib.sha1(_expand(config_path).encode("utf-8")).hexdigest()[:12]
    lock_dir = "/run/lock" if os.access("/run/lock", os.W_OK) else tempfile.gettempdir()
    return os.path.join(lock_dir, f"cryptvault-{digest}.lock")
