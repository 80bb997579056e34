"""Build install, upgrade and reset specs from config and the running host."""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Any, Optional

import yaml

from kairos_agent import constants
from kairos_agent.boot.detect import BootRoleDetector
from kairos_agent.config.settings import AgentConfig, Paths
from kairos_agent.domain.models import (
    FIRMWARE_BIOS,
    FIRMWARE_EFI,
    PART_TABLE_GPT,
    BootRole,
    Image,
    ImageSource,
    InstallSpec,
    InstallState,
    Partition,
    Partitions,
    ResetSpec,
    UpgradeSpec,
)
from kairos_agent.logging import LoggerFactory
from kairos_agent.storage.exceptions import MountError, SpecError
from kairos_agent.storage.mount import Mounter


log = LoggerFactory.for_system()


def _values(section: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Config section with non-empty CLI overrides applied on top."""
    values = dict(section)
    values.update({key: value for key, value in overrides.items() if value not in (None, "", [])})
    return values


def _image_path(mount_point: str, file_name: str) -> str:
    return os.path.join(mount_point, constants.IMAGES_SUBDIR, file_name)


def detect_firmware(paths: Paths) -> str:
    return FIRMWARE_EFI if Path(paths.efi_firmware_dir).exists() else FIRMWARE_BIOS


def default_partitions(paths: Paths, firmware: str = FIRMWARE_EFI) -> Partitions:
    """The standard OEM/Recovery/State/Persistent layout plus a boot partition."""
    parts = Partitions(
        oem=Partition(
            name=constants.OEM_PART_NAME,
            filesystem_label=constants.OEM_LABEL,
            size=constants.OEM_SIZE_MB,
            fs=constants.LINUX_FS,
            mount_point=paths.oem_dir,
        ),
        recovery=Partition(
            name=constants.RECOVERY_PART_NAME,
            filesystem_label=constants.RECOVERY_LABEL,
            size=constants.RECOVERY_SIZE_MB,
            fs=constants.LINUX_FS,
            mount_point=paths.recovery_dir,
        ),
        state=Partition(
            name=constants.STATE_PART_NAME,
            filesystem_label=constants.STATE_LABEL,
            size=constants.STATE_SIZE_MB,
            fs=constants.LINUX_FS,
            mount_point=paths.state_dir,
        ),
        persistent=Partition(
            name=constants.PERSISTENT_PART_NAME,
            filesystem_label=constants.PERSISTENT_LABEL,
            size=0,
            fs=constants.LINUX_FS,
            mount_point=paths.persistent_dir,
        ),
    )
    if firmware == FIRMWARE_EFI:
        parts.efi = Partition(
            name=constants.EFI_PART_NAME,
            filesystem_label=constants.EFI_LABEL,
            size=constants.EFI_SIZE_MB,
            fs=constants.EFI_FS,
            mount_point=paths.efi_dir,
            flags=["esp"],
        )
    else:
        parts.bios = Partition(
            name=constants.BIOS_PART_NAME,
            size=constants.BIOS_SIZE_MB,
            flags=["bios_grub"],
        )
    return parts


# ==============================================================================
# Install
# ==============================================================================


def build_install_spec(config: AgentConfig, **overrides: Any) -> InstallSpec:
    paths = config.paths
    values = _values(config.install, overrides)
    firmware = values.get("firmware") or detect_firmware(paths)

    active = Image(
        file=_image_path(paths.state_dir, constants.ACTIVE_IMG_FILE),
        label=constants.ACTIVE_LABEL,
        fs=constants.LINUX_IMG_FS,
        size=int(values.get("image_size") or constants.IMG_SIZE_MB),
        mount_point=paths.active_dir,
    )
    if values.get("source"):
        active.source = ImageSource.parse(values["source"])
    elif Path(paths.iso_base_tree).exists():
        active.source = ImageSource.from_dir(paths.iso_base_tree)

    live_recovery = Path(paths.iso_base_tree).parent / "live" / constants.RECOVERY_SQUASH_FILE
    if live_recovery.exists():
        recovery = Image(
            file=_image_path(paths.recovery_dir, constants.RECOVERY_SQUASH_FILE),
            fs=constants.SQUASH_FS,
            size=active.size,
            source=ImageSource.from_file(str(live_recovery)),
        )
    else:
        recovery = Image(
            file=_image_path(paths.recovery_dir, constants.RECOVERY_IMG_FILE),
            label=constants.SYSTEM_LABEL,
            fs=constants.LINUX_IMG_FS,
            size=active.size,
            source=ImageSource.from_file(active.file),
        )
    if values.get("recovery_source"):
        recovery.source = ImageSource.parse(values["recovery_source"])

    passive = Image(
        file=_image_path(paths.state_dir, constants.PASSIVE_IMG_FILE),
        label=constants.PASSIVE_LABEL,
        fs=constants.LINUX_IMG_FS,
        size=active.size,
        source=ImageSource.from_file(active.file),
    )

    return InstallSpec(
        target=values.get("device", ""),
        firmware=firmware,
        part_table=values.get("part_table", PART_TABLE_GPT),
        partitions=default_partitions(paths, firmware),
        no_format=bool(values.get("no_format", False)),
        force=bool(values.get("force", False)),
        cloud_init=list(values.get("cloud_init") or []),
        iso=values.get("iso", ""),
        grub_entry_name=values.get("grub_entry_name", ""),
        grub_conf=values.get("grub_conf", constants.GRUB_CONF),
        tty=values.get("tty", ""),
        reboot=bool(values.get("reboot", False)),
        poweroff=bool(values.get("poweroff", False)),
        extra_dirs_rootfs=list(values.get("extra_dirs_rootfs") or []),
        active=active,
        recovery=recovery,
        passive=passive,
    )


# ==============================================================================
# Upgrade
# ==============================================================================


def has_squashed_recovery(paths: Paths, recovery: Partition, mounter: Optional[Mounter] = None) -> bool:
    """Whether the Recovery partition carries a squashfs recovery image."""
    mounter = mounter or Mounter()
    relative = os.path.join(constants.IMAGES_SUBDIR, constants.RECOVERY_SQUASH_FILE)
    if mounter.is_mounted(recovery.mount_point):
        return Path(recovery.mount_point, relative).exists()

    device = recovery.path or f"/dev/disk/by-label/{recovery.filesystem_label}"
    temp_dir = paths.make_temp_dir("elemental")
    try:
        mounter.mount(device, temp_dir, "auto", ["ro"])
        try:
            return Path(temp_dir, relative).exists()
        finally:
            mounter.unmount(temp_dir)
    except MountError as e:
        raise SpecError(f"failed checking for squashed recovery: {e}") from e
    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)


def load_install_state(paths: Paths) -> Optional[InstallState]:
    state_file = os.path.join(paths.running_state_dir, constants.INSTALL_STATE_FILE)
    try:
        return InstallState.load(state_file)
    except (OSError, yaml.YAMLError) as e:
        log.warning(f"Failed reading installation state: {e}")
        return None


def build_upgrade_spec(
    config: AgentConfig,
    mounter: Optional[Mounter] = None,
    detector: Optional[BootRoleDetector] = None,
    **overrides: Any,
) -> UpgradeSpec:
    paths = config.paths
    detector = detector or BootRoleDetector(paths)
    values = _values(config.upgrade, overrides)
    partitions = default_partitions(paths, detect_firmware(paths))

    if "recovery_squashfs" in values:
        squashed = bool(values["recovery_squashfs"])
    elif detector.is_uki():
        # UKI recoveries are efi artifacts, there is no partition to look into
        squashed = False
    else:
        squashed = has_squashed_recovery(paths, partitions.recovery, mounter)

    if squashed:
        recovery = Image(
            file=_image_path(paths.recovery_dir, constants.TRANSITION_SQUASH_FILE),
            fs=constants.SQUASH_FS,
            size=constants.IMG_SIZE_MB,
        )
    else:
        recovery = Image(
            file=_image_path(paths.recovery_dir, constants.TRANSITION_IMG_FILE),
            label=constants.SYSTEM_LABEL,
            fs=constants.LINUX_IMG_FS,
            size=constants.IMG_SIZE_MB,
            mount_point=paths.transition_dir,
        )

    active = Image(
        file=_image_path(paths.state_dir, constants.TRANSITION_IMG_FILE),
        label=constants.ACTIVE_LABEL,
        fs=constants.LINUX_IMG_FS,
        size=int(values.get("image_size") or constants.IMG_SIZE_MB),
        mount_point=paths.transition_dir,
    )
    passive = Image(
        file=_image_path(paths.state_dir, constants.PASSIVE_IMG_FILE),
        label=constants.PASSIVE_LABEL,
        fs=active.fs,
        size=active.size,
        source=ImageSource.from_file(active.file),
    )

    recovery_upgrade = bool(values.get("recovery", False))
    source = ImageSource.parse(values.get("source"))
    if recovery_upgrade:
        recovery.source = source
    else:
        active.source = source

    return UpgradeSpec(
        recovery_upgrade=recovery_upgrade,
        active=active,
        recovery=recovery,
        passive=passive,
        partitions=partitions,
        state=load_install_state(paths),
        grub_entry_name=values.get("grub_entry_name", ""),
        extra_dirs_rootfs=list(values.get("extra_dirs_rootfs") or []),
        reboot=bool(values.get("reboot", False)),
        poweroff=bool(values.get("poweroff", False)),
    )


# ==============================================================================
# Reset
# ==============================================================================


def build_reset_spec(
    config: AgentConfig, detector: Optional[BootRoleDetector] = None, **overrides: Any
) -> ResetSpec:
    paths = config.paths
    detector = detector or BootRoleDetector(paths)
    if detector.current_role() is not BootRole.RECOVERY:
        raise SpecError("reset can only be called from the recovery system")

    values = _values(config.reset, overrides)
    firmware = detect_firmware(paths)
    partitions = default_partitions(paths, firmware)

    recovery_img = _image_path(paths.running_state_dir, constants.RECOVERY_IMG_FILE)
    if values.get("source"):
        source = ImageSource.parse(values["source"])
    elif Path(recovery_img).exists():
        source = ImageSource.from_file(recovery_img)
    elif Path(paths.iso_base_tree).exists():
        source = ImageSource.from_dir(paths.iso_base_tree)
    else:
        source = ImageSource()

    active_file = _image_path(paths.state_dir, constants.ACTIVE_IMG_FILE)
    return ResetSpec(
        target=values.get("device", ""),
        efi=firmware == FIRMWARE_EFI,
        grub_conf=values.get("grub_conf", constants.GRUB_CONF),
        grub_entry_name=values.get("grub_entry_name", ""),
        tty=values.get("tty", ""),
        format_persistent=bool(values.get("reset_persistent", True)),
        format_oem=bool(values.get("reset_oem", False)),
        reboot=bool(values.get("reboot", False)),
        poweroff=bool(values.get("poweroff", False)),
        active=Image(
            file=active_file,
            label=constants.ACTIVE_LABEL,
            fs=constants.LINUX_IMG_FS,
            size=constants.IMG_SIZE_MB,
            source=source,
            mount_point=paths.active_dir,
        ),
        passive=Image(
            file=_image_path(paths.state_dir, constants.PASSIVE_IMG_FILE),
            label=constants.PASSIVE_LABEL,
            fs=constants.LINUX_IMG_FS,
            size=constants.IMG_SIZE_MB,
            source=ImageSource.from_file(active_file),
        ),
        partitions=partitions,
        state=load_install_state(paths),
    )
