"""Encrypted volume lifecycle: unlock + mount, and the exact reverse.

A :class:`VolumeRegistry` records every volume this process opened so the
top-level exit path can close them again, in reverse order, however the run
ends. Volumes found already open are used but never registered, so they are
left exactly as they were found.
"""

from __future__ import annotations

import threading
from subprocess import CalledProcessError

from . import console, devices, fsinfo, luks
from .executil import failure_text, log, run, udev_settle
from .model import VolumeHandle


class DriveNotPresent(Exception):
    """The backing device node is absent (drive unplugged)."""

    def __init__(self, device: str, label: str = "") -> None:
        self.device = device
        self.label = label
        super().__init__(f"{label or 'drive'} not present: {device}")


class VolumeError(RuntimeError):
    """Unlock, mount, unmount or lock failed."""


def mount_options(compression: str) -> str:
    return f"compress={compression},noatime"


class VolumeRegistry:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handles: list[VolumeHandle] = []
        self._locks: list = []

    def handles(self) -> list[VolumeHandle]:
        with self._lock:
            return list(self._handles)

    def _registered(self, mapper_name: str, mount_point: str) -> VolumeHandle | None:
        with self._lock:
            for h in self._handles:
                if h.mapper_name == mapper_name and h.mount_point == mount_point:
                    return h
        return None

    def _contains(self, handle: VolumeHandle) -> bool:
        with self._lock:
            return any(h is handle for h in self._handles)

    def acquire(
        self,
        device: str,
        mapper_name: str,
        mount_point: str,
        label: str = "",
        compression: str = "zstd:9",
        key_file: str | None = None,
    ) -> VolumeHandle:
        """Unlock ``device`` as ``mapper_name`` and mount it on ``mount_point``.

        Raises :class:`DriveNotPresent` when the device node is missing and
        :class:`VolumeError` on any unlock or mount failure. A mount failure
        closes the mapper again if this call opened it.
        """

        known = self._registered(mapper_name, mount_point)
        if known is not None:
            return known
        label = label or mapper_name
        handle = VolumeHandle(device, mapper_name, mount_point, label, compression)

        if fsinfo.is_mounted(mount_point):
            actual = fsinfo.compression_option(mount_point)
            if actual != compression:
                console.warn(
                    f"{label} is already mounted at {mount_point} with compression "
                    f"'{actual or 'none'}' (configured: {compression})"
                )
            else:
                console.info(f"{label} already mounted at {mount_point}")
            log("INFO", "volume.reuse", mapper=mapper_name, mount_point=mount_point, compression=actual)
            return handle

        if not devices.is_block_device(device):
            raise DriveNotPresent(device, label)

        if not luks.mapper_exists(mapper_name):
            if not luks.is_luks(device):
                raise VolumeError(f"{label}: {device} is not a LUKS device")
            console.step(f"Unlocking {label} ({device})")
            try:
                luks.open_luks(device, mapper_name, key_file)
            except CalledProcessError as exc:
                raise VolumeError(f"failed to unlock {label}: {failure_text(exc)}") from exc
            handle.owns_mapper = True

        try:
            run(["mkdir", "-p", mount_point], check=True)
            run(["mount", "-o", mount_options(compression), handle.mapper_path, mount_point], check=True)
        except CalledProcessError as exc:
            if handle.owns_mapper:
                closed = luks.close_luks(mapper_name, check=False)
                if closed.rc != 0:
                    log("ERROR", "volume.close_after_mount_failure", mapper=mapper_name, rc=closed.rc)
            raise VolumeError(f"failed to mount {label} at {mount_point}: {failure_text(exc)}") from exc
        handle.owns_mount = True

        with self._lock:
            self._handles.append(handle)
        log("INFO", "volume.acquired", mapper=mapper_name, mount_point=mount_point,
            owns_mapper=handle.owns_mapper)
        console.success(f"{label} mounted at {mount_point}")
        return handle

    def release(self, handle: VolumeHandle) -> None:
        """Unmount and lock ``handle``. Unknown or released handles are a no-op."""

        if not self._contains(handle):
            return
        if handle.owns_mount and fsinfo.is_mounted(handle.mount_point):
            try:
                run(["umount", handle.mount_point], check=True)
            except CalledProcessError as exc:
                raise VolumeError(f"failed to unmount {handle.label}: {failure_text(exc)}") from exc
        if handle.owns_mapper and luks.mapper_exists(handle.mapper_name):
            udev_settle()
            try:
                luks.close_luks(handle.mapper_name)
            except CalledProcessError as exc:
                raise VolumeError(f"failed to lock {handle.label}: {failure_text(exc)}") from exc
        with self._lock:
            self._handles = [h for h in self._handles if h is not handle]
        log("INFO", "volume.released", mapper=handle.mapper_name, mount_point=handle.mount_point)
        console.info(f"{handle.label} unmounted and locked")

    def detach(self, handle: VolumeHandle) -> None:
        """Stop tracking ``handle`` so it stays open after this process exits."""

        with self._lock:
            self._handles = [h for h in self._handles if h is not handle]
        log("INFO", "volume.detached", mapper=handle.mapper_name, mount_point=handle.mount_point)

    def hold(self, lock):
        """Keep ``lock`` until :meth:`release_all` has released every volume."""

        with self._lock:
            self._locks.append(lock)
        return lock

    def release_all(self) -> list[str]:
        """Best-effort release of every registered handle, newest first.

        Held run locks are dropped last, once no volume of this run is left
        mounted. An interrupt while one handle is released is recorded like
        any other failure and the remaining handles are still released.
        """

        failures: list[str] = []
        for handle in reversed(self.handles()):
            try:
                self.release(handle)
            except (Exception, KeyboardInterrupt) as exc:
                reason = str(exc) or type(exc).__name__
                failures.append(f"{handle.label}: {reason}")
                log("ERROR", "volume.release_failed", mapper=handle.mapper_name, error=reason)
                console.error(f"Cleanup of {handle.label} failed: {reason}")
        with self._lock:
            locks, self._locks = self._locks, []
        for lock in reversed(locks):
            lock.release()
        return failures


def teardown(mapper_name: str, mount_point: str, label: str = "") -> bool:
    """Unmount and lock a volume regardless of who opened it."""

    label = label or mapper_name
    ok = True
    if fsinfo.is_mounted(mount_point):
        r = run(["umount", mount_point], check=False)
        if r.rc != 0:
            console.error(f"Failed to unmount {label}: {(r.err or '').strip()}")
            ok = False
        else:
            console.info(f"{label} unmounted")
    else:
        console.info(f"{label} is not mounted")
    if ok and luks.mapper_exists(mapper_name):
        r = luks.close_luks(mapper_name, check=False)
        if r.rc != 0:
            console.error(f"Failed to lock {label}: {(r.err or '').strip()}")
            ok = False
        else:
            console.info(f"{label} locked")
    return ok
