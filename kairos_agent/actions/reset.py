"""Reset the system from the Recovery image.

State is always reformatted and redeployed from the recovery source;
Persistent and OEM are wiped only when asked to. The Recovery partition is
left untouched and its entry in the install state is carried over.

On UKI systems booted from disk the recovery artifact set is copied over the
active one instead.
"""

from __future__ import annotations

import os
from typing import Any, Optional

from kairos_agent import constants, system_utils
from kairos_agent.actions.cleanup import CleanupStack
from kairos_agent.actions.hooks import HookRunner
from kairos_agent.actions.install import rfc3339_now
from kairos_agent.boot import grub, systemd
from kairos_agent.boot.detect import UKI_HDD_MODE, UKI_REMOVABLE_MEDIA_MODE, BootRoleDetector
from kairos_agent.config.settings import AgentConfig
from kairos_agent.domain.models import (
    ImageState,
    InstallState,
    Partition,
    PartitionState,
    ResetSpec,
)
from kairos_agent.logging import LoggerFactory
from kairos_agent.storage.elemental import Elemental
from kairos_agent.storage.exceptions import BootEntryError, SpecError
from kairos_agent.storage.mount import Mounter


class ResetAction:
    def __init__(
        self,
        config: AgentConfig,
        spec: ResetSpec,
        *,
        elemental: Optional[Elemental] = None,
        hooks: Optional[HookRunner] = None,
        detector: Optional[BootRoleDetector] = None,
        mounter: Optional[Mounter] = None,
        job_id: Optional[str] = None,
    ):
        self.config = config
        self.spec = spec
        self.mounter = mounter or Mounter()
        self.elemental = elemental or Elemental(config.paths, self.mounter)
        self.hooks = hooks or HookRunner(config, self.mounter)
        self.detector = detector or BootRoleDetector(config.paths)
        self.log = LoggerFactory.for_reset(job_id)

    def resolve_target(self) -> None:
        """Find the disk holding the State partition when none was given."""
        if self.spec.target:
            return
        device = self.elemental.get_device_by_label(constants.STATE_LABEL, attempts=5)
        self.spec.target = self.elemental.find_disk(device)
        self.log.debug(f"Resetting disk {self.spec.target}")

    def reset_state(self, metadata: Any) -> InstallState:
        spec = self.spec
        parts = spec.partitions
        state = InstallState(
            date=rfc3339_now(),
            partitions={
                constants.STATE_PART_NAME: PartitionState(
                    fslabel=parts.state.filesystem_label,
                    images={
                        constants.ACTIVE_IMG_NAME: ImageState(
                            source=spec.active.source,
                            source_metadata=metadata,
                            label=spec.active.label,
                            fs=spec.active.fs,
                        ),
                        constants.PASSIVE_IMG_NAME: ImageState(
                            source=spec.active.source,
                            source_metadata=metadata,
                            label=spec.passive.label,
                            fs=spec.passive.fs,
                        ),
                    },
                ),
            },
        )
        if parts.oem is not None:
            state.partitions[constants.OEM_PART_NAME] = PartitionState(
                fslabel=parts.oem.filesystem_label
            )
        if parts.persistent is not None:
            state.partitions[constants.PERSISTENT_PART_NAME] = PartitionState(
                fslabel=parts.persistent.filesystem_label
            )
        if spec.state is not None:
            recovery = spec.state.partitions.get(constants.RECOVERY_PART_NAME)
            if recovery is not None:
                state.partitions[constants.RECOVERY_PART_NAME] = recovery
        return state

    def _format_partition(self, partition: Partition) -> None:
        if not partition.path:
            partition.path = self.elemental.get_device_by_label(partition.filesystem_label, attempts=5)
        self.log.info(f"Formatting {partition.name} partition")
        self.elemental.format_partition(partition)

    def _format(self) -> None:
        parts = self.spec.partitions
        self._format_partition(parts.state)
        if self.spec.format_persistent and parts.persistent is not None:
            self._format_partition(parts.persistent)
        if self.spec.format_oem and parts.oem is not None:
            self._format_partition(parts.oem)

    def _reset(self, cleanup: CleanupStack) -> None:
        spec = self.spec
        parts = spec.partitions

        self.elemental.unmount_partitions(parts.partitions_by_mount_point(True, parts.recovery))
        self._format()

        self.elemental.mount_partitions(parts.partitions_by_mount_point(False, parts.recovery))
        cleanup.push(
            lambda: self.elemental.unmount_partitions(
                parts.partitions_by_mount_point(True, parts.recovery)
            )
        )

        self.hooks.hook(constants.BEFORE_RESET_HOOK)

        metadata = self.elemental.deploy_image(spec.active, leave_mounted=True)
        cleanup.push(lambda: self.elemental.unmount_image(spec.active))

        grub.install_grub(
            self.config.paths,
            spec.target,
            spec.active.mount_point,
            parts.state.mount_point,
            spec.grub_conf,
            tty=spec.tty,
            efi=spec.efi,
            state_label=parts.state.filesystem_label,
        )
        self.elemental.apply_selinux_labels(spec.active.mount_point, parts)
        self.hooks.chroot_hook(
            constants.AFTER_RESET_CHROOT_HOOK,
            spec.active.mount_point,
            self.elemental.chroot_binds(parts),
        )
        grub.set_default_grub_entry(
            parts.state.mount_point, spec.active.mount_point, spec.grub_entry_name
        )

        self.elemental.unmount_image(spec.active)
        self.elemental.deploy_image(spec.passive, leave_mounted=False)

        self.hooks.hook(constants.AFTER_RESET_HOOK)

        targets = [os.path.join(parts.state.mount_point, constants.INSTALL_STATE_FILE)]
        if parts.recovery is not None and parts.recovery.mount_point:
            cleanup.push(self.elemental.mount_rw_partition(parts.recovery))
            targets.append(os.path.join(parts.recovery.mount_point, constants.INSTALL_STATE_FILE))
        self.reset_state(metadata).write(*targets)

    def _reset_uki(self, cleanup: CleanupStack) -> None:
        """Copy the recovery artifact set over the active one."""
        parts = self.spec.partitions
        efi_dir = self.config.paths.uki_efi_dir
        self.hooks.best_effort_stage(constants.UKI_RESET_PRE_STAGE)
        self.hooks.bus_hook(constants.UKI_RESET_PRE_HOOK_SCRIPT)

        if self.spec.format_persistent and parts.persistent is not None:
            self._format_partition(parts.persistent)
        if self.spec.format_oem and parts.oem is not None:
            # OEM is mounted in recovery; mount it back once wiped
            self.elemental.unmount_partition(parts.oem)
            self._format_partition(parts.oem)
            self.elemental.mount_partition(parts.oem, "rw")

        self.mounter.remount(efi_dir, read_only=False)
        cleanup.push(lambda: self.mounter.remount(efi_dir, read_only=True))

        systemd.overwrite_artifact_set_role(efi_dir, systemd.ROLE_RECOVERY, systemd.ROLE_ACTIVE)
        try:
            systemd.add_sort_keys(efi_dir)
        except (BootEntryError, OSError) as e:
            self.log.warning(f"Adding sort keys failed: {e}")
        try:
            systemd.add_boot_assessment(efi_dir)
        except OSError as e:
            self.log.warning(f"Adding boot assessment failed: {e}")
        systemd.select_entry(efi_dir, "cos", mounter=self.mounter)

        self.hooks.hook(constants.AFTER_RESET_HOOK)
        self.hooks.best_effort_stage(constants.UKI_RESET_AFTER_STAGE)
        self.hooks.bus_hook(constants.UKI_RESET_AFTER_HOOK_SCRIPT)

    def run(self) -> None:
        mode = self.detector.uki_boot_mode()
        if mode == UKI_REMOVABLE_MEDIA_MODE:
            raise SpecError(
                "reset is not supported on removable media, "
                "run reset from the recovery entry of the installed system"
            )
        uki = mode == UKI_HDD_MODE
        if not uki:
            self.spec.sanitize()
            self.resolve_target()

        cleanup = CleanupStack()
        try:
            if uki:
                self._reset_uki(cleanup)
            else:
                self._reset(cleanup)
        except Exception as e:
            cleanup.cleanup(e)
            raise
        error = cleanup.cleanup()
        if error is not None:
            raise error
        self.log.success("Reset completed")

        if self.spec.should_reboot():
            self.log.info("Rebooting")
            system_utils.reboot_system(constants.POWER_ACTION_DELAY_SECONDS)
        elif self.spec.should_shutdown():
            self.log.info("Powering off")
            system_utils.poweroff_system(constants.POWER_ACTION_DELAY_SECONDS)
