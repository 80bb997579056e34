"""Mount helpers and a scoped chroot environment.

Module Purpose:
    Wraps ``mount``/``umount`` behind :class:`Mounter` so every caller gets the
    same error types, and provides :class:`ScopedChroot` to run commands
    against a not-yet-booted root with the usual API filesystems bound in.

Functions:
    - Mounter.mount(): Mount a device, image file or bind source
    - Mounter.unmount(): Unmount a mountpoint
    - Mounter.remount(): Switch a mountpoint between read-only and read-write
    - Mounter.is_mounted(): Check whether a path is a mountpoint
    - ScopedChroot: Context manager binding /dev, /proc, /sys into a root

Example:
    >>> with ScopedChroot("/run/cos/active", {"/run/cos/oem": "/oem"}) as chroot:
    ...     chroot.run(["setfiles", "-c", policy, context, "/"])
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Callable, Optional, Sequence

from kairos_agent.logging import LoggerFactory
from kairos_agent.storage.command_runners import run_checked_command
from kairos_agent.storage.exceptions import (
    ChrootError,
    CommandError,
    MountFailedError,
    UnmountFailedError,
)


# Module logger
log = LoggerFactory.for_storage()

DEFAULT_CHROOT_BINDS = ["/dev", "/dev/pts", "/proc", "/sys"]
JOURNAL_DIR = "/run/systemd/journal"


class Mounter:
    """Runs mount and umount with consistent error reporting."""

    def mount(
        self,
        source: str,
        target: str,
        fstype: str = "auto",
        options: Sequence[str] = (),
    ) -> None:
        command = ["mount"]
        if fstype:
            command += ["-t", fstype]
        if options:
            command += ["-o", ",".join(options)]
        command += [source, target]
        log.debug(f"Mounting {source} at {target}")
        try:
            run_checked_command(command)
        except CommandError as e:
            raise MountFailedError(target, e.output) from e

    def unmount(self, target: str) -> None:
        log.debug(f"Unmounting {target}")
        try:
            run_checked_command(["umount", target])
        except CommandError as e:
            raise UnmountFailedError(target, e.output) from e

    def remount(self, target: str, read_only: bool) -> None:
        mode = "ro" if read_only else "rw"
        log.debug(f"Remounting {target} as {mode}")
        try:
            run_checked_command(["mount", "-o", f"remount,{mode}", target])
        except CommandError as e:
            raise MountFailedError(target, e.output) from e

    def is_mounted(self, target: str) -> bool:
        return os.path.ismount(target)


class ScopedChroot:
    """A chroot environment whose bind mounts are always released.

    ``extra_mounts`` maps a host path to a path inside the chroot. Extra mounts
    are applied after the default API filesystems, sorted by host path.
    """

    def __init__(
        self,
        root: str,
        extra_mounts: Optional[dict[str, str]] = None,
        *,
        mounter: Optional[Mounter] = None,
        systemd_run_dir: str = "/run/systemd/system",
    ):
        self.root = root
        self.extra_mounts = dict(extra_mounts or {})
        self.mounter = mounter or Mounter()
        self.default_mounts = list(DEFAULT_CHROOT_BINDS)
        if Path(systemd_run_dir).exists():
            self.default_mounts.append(JOURNAL_DIR)
        self.active_mounts: list[str] = []

    def prepare(self) -> None:
        """Bind mount the API filesystems and extra mounts into the root."""
        if self.active_mounts:
            raise MountFailedError(self.root, "chroot environment already prepared")
        try:
            for host_path in self.default_mounts:
                self._bind(host_path, host_path)
            for host_path in sorted(self.extra_mounts):
                self._bind(host_path, self.extra_mounts[host_path])
        except MountFailedError:
            self.close()
            raise

    def _bind(self, host_path: str, chroot_path: str) -> None:
        target = os.path.join(self.root, chroot_path.lstrip("/"))
        Path(target).mkdir(parents=True, exist_ok=True)
        self.mounter.mount(host_path, target, fstype="", options=["bind"])
        self.active_mounts.append(target)

    def close(self) -> None:
        """Unmount every bind mount in reverse order."""
        failures: list[str] = []
        for target in reversed(self.active_mounts):
            try:
                self.mounter.unmount(target)
            except UnmountFailedError as e:
                log.error(f"Error unmounting {target}: {e.reason}")
                failures.append(target)
        self.active_mounts = []
        if failures:
            raise ChrootError(failures)

    def run(self, command: list[str]) -> str:
        """Run a command with the chroot as its root directory."""
        return run_checked_command(["chroot", self.root, *command])

    def run_callback(self, callback: Callable[[ScopedChroot], None]) -> None:
        with self:
            callback(self)

    def __enter__(self) -> ScopedChroot:
        self.prepare()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            self.close()
        except ChrootError:
            if exc_type is None:
                raise
            log.error("Chroot cleanup failed while handling an earlier error")
