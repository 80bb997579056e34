"""Boot entry listing and selection for GRUB and systemd-boot systems."""

from __future__ import annotations

from typing import Optional

from kairos_agent.boot import grub, systemd
from kairos_agent.boot.detect import BootRoleDetector
from kairos_agent.config.settings import Paths
from kairos_agent.storage.mount import Mounter


def list_boot_entries(paths: Paths, detector: Optional[BootRoleDetector] = None) -> list[str]:
    """Entries of whichever bootloader the running system uses."""
    detector = detector or BootRoleDetector(paths)
    if detector.is_uki():
        return systemd.list_entries(paths.uki_efi_dir)
    return grub.list_entries(paths)


def select_boot_entry(
    paths: Paths,
    entry: str,
    detector: Optional[BootRoleDetector] = None,
    mounter: Optional[Mounter] = None,
) -> None:
    detector = detector or BootRoleDetector(paths)
    if detector.is_uki():
        systemd.select_entry(paths.uki_efi_dir, entry, mounter=mounter)
    else:
        grub.select_entry(paths, entry)


__all__ = ["list_boot_entries", "select_boot_entry"]
