"""Upgrade the Active or the Recovery image in place.

The new image is deployed into a transition file next to its final slot and
renamed over it once complete. For system upgrades the running Active image
is first kept as Passive, unless the machine is currently booted from
Passive: in that case Active is suspect and the good Passive is preserved.

UKI systems keep no images: the new artifacts are dumped into the EFI
partition under an unassigned role, the active set is rotated into passive
and the new set takes the active role.
"""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Any, Optional

from kairos_agent import constants, system_utils
from kairos_agent.actions.cleanup import CleanupStack
from kairos_agent.actions.hooks import FINISH_UPGRADE, HookRunner, run_hooks
from kairos_agent.actions.install import rfc3339_now
from kairos_agent.boot import grub, systemd
from kairos_agent.boot.detect import BootRoleDetector
from kairos_agent.config.settings import AgentConfig
from kairos_agent.domain.models import (
    BootRole,
    Image,
    ImageState,
    InstallState,
    PartitionState,
    UpgradeSpec,
)
from kairos_agent.logging import LoggerFactory
from kairos_agent.storage.elemental import Elemental
from kairos_agent.storage.exceptions import (
    AgentError,
    BootEntryError,
    DeviceNotFoundError,
    MountError,
)
from kairos_agent.storage.mount import Mounter


class UpgradeAction:
    def __init__(
        self,
        config: AgentConfig,
        spec: UpgradeSpec,
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
        self.log = LoggerFactory.for_upgrade(job_id)

    @property
    def upgrade_image(self) -> Image:
        return self.spec.recovery if self.spec.recovery_upgrade else self.spec.active

    def final_image_path(self) -> str:
        """Location the transition file is renamed to."""
        parts = self.spec.partitions
        if self.spec.recovery_upgrade:
            name = (
                constants.RECOVERY_SQUASH_FILE
                if self.spec.recovery.fs == constants.SQUASH_FS
                else constants.RECOVERY_IMG_FILE
            )
            return os.path.join(parts.recovery.mount_point, constants.IMAGES_SUBDIR, name)
        return os.path.join(parts.state.mount_point, constants.IMAGES_SUBDIR, constants.ACTIVE_IMG_FILE)

    def _remove_transition_file(self) -> None:
        transition = Path(self.upgrade_image.file)
        if transition.exists():
            self.log.debug(f"Removing leftover transition file {transition}")
            transition.unlink()

    def _mount_persistent(self, cleanup: CleanupStack) -> None:
        persistent = self.spec.partitions.persistent
        if persistent is None or self.elemental.is_mounted(persistent):
            return
        try:
            self.elemental.mount_partition(persistent, "rw")
        except (MountError, DeviceNotFoundError) as e:
            self.log.warning(f"Could not mount persistent partition: {e}")
            return
        cleanup.push(lambda: self.elemental.unmount_partition(persistent))

    def _rebrand(self) -> None:
        state = self.spec.partitions.state
        try:
            grub.set_default_grub_entry(
                state.mount_point, self.spec.active.mount_point, self.spec.grub_entry_name
            )
        except (AgentError, OSError) as e:
            self.log.warning(f"Failed setting the default grub entry: {e}")

    def _backup_active(self) -> None:
        """Keep the running Active image as the new Passive."""
        spec = self.spec
        active_file = os.path.join(
            spec.partitions.state.mount_point, constants.IMAGES_SUBDIR, constants.ACTIVE_IMG_FILE
        )
        self.log.info(f"Moving {active_file} to {spec.passive.file}")
        os.replace(active_file, spec.passive.file)
        self.elemental.set_filesystem_label(spec.passive.file, spec.passive.label)
        system_utils.sync()

    def upgrade_state(self, metadata: Any, backed_up: bool) -> InstallState:
        spec = self.spec
        state = spec.state or InstallState()
        state.date = rfc3339_now()

        if spec.recovery_upgrade:
            recovery = state.partitions.get(constants.RECOVERY_PART_NAME) or PartitionState(
                fslabel=spec.partitions.recovery.filesystem_label
            )
            recovery.images[constants.RECOVERY_IMG_NAME] = ImageState(
                source=spec.recovery.source,
                source_metadata=metadata,
                label=spec.recovery.label,
                fs=spec.recovery.fs,
            )
            state.partitions[constants.RECOVERY_PART_NAME] = recovery
            return state

        part = state.partitions.get(constants.STATE_PART_NAME) or PartitionState(
            fslabel=spec.partitions.state.filesystem_label
        )
        previous = part.images.get(constants.ACTIVE_IMG_NAME)
        if backed_up and previous is not None:
            part.images[constants.PASSIVE_IMG_NAME] = ImageState(
                source=previous.source,
                source_metadata=previous.source_metadata,
                label=spec.passive.label,
                fs=spec.passive.fs,
            )
        part.images[constants.ACTIVE_IMG_NAME] = ImageState(
            source=spec.active.source,
            source_metadata=metadata,
            label=spec.active.label,
            fs=spec.active.fs,
        )
        state.partitions[constants.STATE_PART_NAME] = part
        return state

    def _write_state(self, state: InstallState) -> None:
        parts = self.spec.partitions
        targets = [
            os.path.join(part.mount_point, constants.INSTALL_STATE_FILE)
            for part in (parts.state, parts.recovery)
            if part is not None and part.mount_point
        ]
        state.write(*targets)

    def _upgrade(self, cleanup: CleanupStack, role: BootRole) -> None:
        spec = self.spec
        parts = spec.partitions
        image = self.upgrade_image

        cleanup.push(self.elemental.mount_rw_partition(parts.state))
        cleanup.push(self.elemental.mount_rw_partition(parts.recovery))
        cleanup.push(self._remove_transition_file)
        self._mount_persistent(cleanup)

        self.hooks.hook(constants.BEFORE_UPGRADE_HOOK)

        metadata = self.elemental.deploy_image(image, leave_mounted=True)
        cleanup.push(lambda: self.elemental.unmount_image(image))

        if image.fs != constants.SQUASH_FS:
            self.elemental.create_extra_dirs(image.mount_point, spec.extra_dirs_rootfs)
            self.elemental.apply_selinux_labels(image.mount_point, parts)
            self.hooks.chroot_hook(
                constants.AFTER_UPGRADE_CHROOT_HOOK,
                image.mount_point,
                self.elemental.chroot_binds(parts),
            )
        else:
            self.hooks.hook(constants.AFTER_UPGRADE_CHROOT_HOOK)

        if not spec.recovery_upgrade:
            self._rebrand()

        self.elemental.unmount_image(image)

        backed_up = False
        if not spec.recovery_upgrade and role is not BootRole.PASSIVE:
            self._backup_active()
            backed_up = True
        elif not spec.recovery_upgrade:
            self.log.info("Booted from passive, keeping the current passive image")

        final = self.final_image_path()
        self.log.info(f"Moving {image.file} to {final}")
        os.replace(image.file, final)
        system_utils.sync()

        self.hooks.hook(constants.AFTER_UPGRADE_HOOK)
        if not spec.recovery_upgrade:
            self.log.warning("Recovery is upgraded independently, run an upgrade with --recovery to update it")

        self._write_state(self.upgrade_state(metadata, backed_up))

    # ==========================================================================
    # UKI
    # ==========================================================================

    def _install_uki_recovery(self, efi_dir: str) -> None:
        """Swap only the recovery efi and conf, leaving loader.conf alone."""
        self.log.info("Installing entry: recovery")
        staged = self.config.paths.make_temp_dir("uki-recovery")
        try:
            self.elemental.dump_source(staged, self.spec.recovery.source)
            systemd.install_entry(efi_dir, staged, systemd.ROLE_RECOVERY)
        finally:
            shutil.rmtree(staged, ignore_errors=True)
        conf = Path(efi_dir) / "loader" / "entries" / f"recovery{systemd.CONF_SUFFIX}"
        systemd.replace_conf_title(conf, systemd.ROLE_RECOVERY)

    def _upgrade_uki(self, cleanup: CleanupStack) -> None:
        efi_dir = self.config.paths.uki_efi_dir
        self.hooks.best_effort_stage(constants.UKI_UPGRADE_PRE_STAGE)
        self.hooks.bus_hook(constants.UKI_UPGRADE_PRE_HOOK_SCRIPT)

        self.mounter.remount(efi_dir, read_only=False)
        cleanup.push(lambda: self.mounter.remount(efi_dir, read_only=True))

        if self.spec.recovery_upgrade:
            self._install_uki_recovery(efi_dir)
            return

        self.log.info("Installing entry: active")
        cleanup.push(
            lambda: systemd.remove_artifact_set_with_role(efi_dir, systemd.UNASSIGNED_ROLE)
        )
        self.elemental.dump_source(efi_dir, self.spec.active.source)

        systemd.overwrite_artifact_set_role(efi_dir, systemd.ROLE_ACTIVE, systemd.ROLE_PASSIVE)
        systemd.overwrite_artifact_set_role(efi_dir, systemd.UNASSIGNED_ROLE, systemd.ROLE_ACTIVE)
        systemd.replace_role_in_key(
            Path(efi_dir) / "loader" / systemd.LOADER_CONF,
            "default",
            systemd.UNASSIGNED_ROLE,
            systemd.ROLE_ACTIVE,
        )
        systemd.remove_artifact_set_with_role(efi_dir, systemd.UNASSIGNED_ROLE)

        try:
            systemd.add_sort_keys(efi_dir)
        except (BootEntryError, OSError) as e:
            self.log.warning(f"Adding sort keys failed: {e}")
        try:
            systemd.add_boot_assessment(efi_dir)
        except OSError as e:
            self.log.warning(f"Adding boot assessment failed: {e}")

        systemd.select_entry(efi_dir, "cos", mounter=self.mounter)

        self.hooks.best_effort_stage(constants.UKI_UPGRADE_AFTER_STAGE)
        self.hooks.bus_hook(constants.UKI_UPGRADE_AFTER_HOOK_SCRIPT)

    def run(self) -> None:
        if self.detector.is_uki():
            self.run_uki()
            return

        self.spec.sanitize()
        role = self.detector.current_role()
        self.log.info(f"Upgrading from {role.value} boot")

        cleanup = CleanupStack()
        try:
            self._upgrade(cleanup, role)
        except Exception as e:
            cleanup.cleanup(e)
            raise
        self.log.success("Upgrade completed")

        error = cleanup.cleanup()
        if error is not None:
            self.log.warning(f"Cleanup after upgrade failed: {error}")

        run_hooks(self.hooks, self.spec, FINISH_UPGRADE)

    def run_uki(self) -> None:
        self.spec.sanitize()
        self.log.info("Upgrading UKI artifacts")

        cleanup = CleanupStack()
        try:
            self._upgrade_uki(cleanup)
        except Exception as e:
            cleanup.cleanup(e)
            raise
        self.log.success("Upgrade completed")

        error = cleanup.cleanup()
        if error is not None:
            self.log.warning(f"Cleanup after upgrade failed: {error}")

        run_hooks(self.hooks, self.spec, FINISH_UPGRADE)
