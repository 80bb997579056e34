"""Detection of the slot and boot mode the running system uses."""

from __future__ import annotations

from pathlib import Path

from kairos_agent import constants
from kairos_agent.config.settings import Paths
from kairos_agent.domain.models import BootRole
from kairos_agent.logging import LoggerFactory


log = LoggerFactory.for_bootentries()

UKI_HDD_MODE = "uki_boot_mode"
UKI_REMOVABLE_MEDIA_MODE = "uki_install_mode"
UNKNOWN_MODE = "unknown"


class BootRoleDetector:
    """Reads the current boot role from sentinel files or the kernel cmdline.

    The initramfs drops ``/run/cos/<role>_mode`` files once it knows which
    image it mounted. When those are missing the image labels and file names
    on the kernel command line are used instead.
    """

    def __init__(self, paths: Paths):
        self.paths = paths

    def cmdline(self) -> str:
        try:
            return Path(self.paths.proc_cmdline).read_text(encoding="utf-8")
        except OSError:
            return ""

    def booted_from(self, marker: str) -> bool:
        return marker in self.cmdline()

    def current_role(self) -> BootRole:
        sentinels = [
            (self.paths.recovery_mode_file, BootRole.RECOVERY),
            (self.paths.passive_mode_file, BootRole.PASSIVE),
            (self.paths.active_mode_file, BootRole.ACTIVE),
        ]
        for sentinel, role in sentinels:
            if Path(sentinel).exists():
                return role

        cmdline = self.cmdline()
        markers = [
            (BootRole.RECOVERY, (constants.RECOVERY_SQUASH_FILE, constants.RECOVERY_IMG_FILE,
                                 constants.SYSTEM_LABEL, constants.RECOVERY_LABEL)),
            (BootRole.PASSIVE, (constants.PASSIVE_IMG_FILE, constants.PASSIVE_LABEL)),
            (BootRole.ACTIVE, (constants.ACTIVE_IMG_FILE, constants.ACTIVE_LABEL)),
        ]
        for role, tokens in markers:
            if any(token in cmdline for token in tokens):
                return role

        log.debug("Could not determine the current boot role")
        return BootRole.UNKNOWN

    def is_uki(self) -> bool:
        return constants.UKI_CMDLINE_FLAG in self.cmdline()

    def uki_boot_mode(self) -> str:
        """Whether a UKI system booted from disk or from removable media."""
        if not self.is_uki():
            return UNKNOWN_MODE
        if Path(self.paths.uki_boot_mode_file).exists():
            return UKI_HDD_MODE
        return UKI_REMOVABLE_MEDIA_MODE

    def booted_from_cd(self) -> bool:
        return self.booted_from("cdroot")
