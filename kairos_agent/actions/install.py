"""Install the OS onto a disk.

The install is one linear pipeline. Every step that leaves something mounted
registers its undo on a :class:`CleanupStack`; when a step fails the stack
unwinds and the original error is raised.

Step order:
    1. kairos-install.pre stage and pre-install hook script (best effort)
    2. ISO download and mount, when an ISO is configured
    3. Partition and format the target, or check an existing layout
    4. Mount partitions
    5. before-install hook, fail-installation sentinel
    6. Deploy Active, extra dirs, cloud-config, GRUB, SELinux relabel
    7. after-install-chroot hook, default GRUB entry
    8. Deploy Recovery and Passive, after-install hook
    9. Write state.yaml to State and Recovery
   10. Unwind; then eject script, post-install stages and hook sets
"""

from __future__ import annotations

import os
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from kairos_agent import constants
from kairos_agent.actions.cleanup import CleanupStack
from kairos_agent.actions.hooks import (
    FINISH_INSTALL,
    POST_INSTALL,
    HookRunner,
    run_hooks,
)
from kairos_agent.boot import grub
from kairos_agent.boot.detect import BootRoleDetector
from kairos_agent.config.settings import AgentConfig
from kairos_agent.domain.models import (
    FIRMWARE_EFI,
    ImageState,
    InstallSpec,
    InstallState,
    PartitionState,
)
from kairos_agent.logging import LoggerFactory
from kairos_agent.storage.elemental import Elemental
from kairos_agent.storage.exceptions import DeploymentError, DeviceNotFoundError, SpecError
from kairos_agent.storage.mount import Mounter


def rfc3339_now() -> str:
    return datetime.now().astimezone().isoformat(timespec="seconds")


def check_failed_installation(sentinel: str) -> None:
    """Abort when an earlier stage asked for the installation to fail."""
    path = Path(sentinel)
    if path.exists():
        raise DeploymentError(f"Installation failed: {path.read_text(encoding='utf-8')}")


class InstallAction:
    def __init__(
        self,
        config: AgentConfig,
        spec: InstallSpec,
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
        self.log = LoggerFactory.for_install(job_id)

    def _install_hook(self, name: str, chroot: bool) -> None:
        if not chroot:
            self.hooks.hook(name)
            return
        binds: dict[str, str] = {}
        parts = self.spec.partitions
        if parts.persistent is not None and parts.persistent.mount_point:
            binds[parts.persistent.mount_point] = constants.USR_LOCAL_PATH
        if parts.oem is not None and parts.oem.mount_point:
            binds[parts.oem.mount_point] = constants.OEM_PATH
        self.hooks.chroot_hook(name, self.spec.active.mount_point, binds)

    def install_state(self, system_meta: Any, recovery_meta: Any) -> InstallState:
        spec = self.spec
        parts = spec.partitions
        if parts.state is None or parts.recovery is None:
            raise SpecError("undefined state or recovery partition")

        # A recovery copied from the Active file shares its source
        recovery_source = spec.recovery.source
        if spec.recovery.source.is_file and spec.recovery.source.value == spec.active.file:
            recovery_meta = system_meta
            recovery_source = spec.active.source

        state = InstallState(
            date=rfc3339_now(),
            partitions={
                constants.STATE_PART_NAME: PartitionState(
                    fslabel=parts.state.filesystem_label,
                    images={
                        constants.ACTIVE_IMG_NAME: ImageState(
                            source=spec.active.source,
                            source_metadata=system_meta,
                            label=spec.active.label,
                            fs=spec.active.fs,
                        ),
                        constants.PASSIVE_IMG_NAME: ImageState(
                            source=spec.active.source,
                            source_metadata=system_meta,
                            label=spec.passive.label,
                            fs=spec.passive.fs,
                        ),
                    },
                ),
                constants.RECOVERY_PART_NAME: PartitionState(
                    fslabel=parts.recovery.filesystem_label,
                    images={
                        constants.RECOVERY_IMG_NAME: ImageState(
                            source=recovery_source,
                            source_metadata=recovery_meta,
                            label=spec.recovery.label,
                            fs=spec.recovery.fs,
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
        return state

    def _prepare_target(self) -> None:
        spec = self.spec
        if spec.no_format:
            self.log.info("NoFormat is true, skipping format and partitioning")
            labels = [label for label in (spec.active.label, spec.recovery.label) if label]
            if self.elemental.check_active_deployment(labels) and not spec.force:
                raise SpecError(
                    "use force flag to run an installation over the current running deployment"
                )
            if spec.target in ("", "auto"):
                try:
                    device = self.elemental.detect_preconfigured_device()
                except DeviceNotFoundError as e:
                    raise DeviceNotFoundError(
                        f"no target device specified and no device found: {e}"
                    ) from e
                self.log.info(f"No target device specified, using pre-configured device: {device}")
                spec.target = device
            return
        self.elemental.deactivate_devices()
        self.elemental.partition_and_format_device(spec)

    def _deploy(self, cleanup: CleanupStack) -> None:
        spec = self.spec
        paths = self.config.paths
        parts = spec.partitions

        if spec.iso:
            work_dir = self.elemental.get_iso(spec.iso)
            cleanup.push(lambda: self.elemental.release_iso(work_dir))
            self.elemental.update_sources_from_iso(work_dir, spec.active, spec.recovery)

        self._prepare_target()

        self.elemental.mount_partitions(parts.partitions_by_mount_point(False))
        cleanup.push(
            lambda: self.elemental.unmount_partitions(parts.partitions_by_mount_point(True))
        )

        self._install_hook(constants.BEFORE_INSTALL_HOOK, chroot=False)
        check_failed_installation(paths.fail_installation_file)

        system_meta = self.elemental.deploy_image(spec.active, leave_mounted=True)
        cleanup.push(lambda: self.elemental.unmount_image(spec.active))

        self.elemental.create_extra_dirs(spec.active.mount_point, spec.extra_dirs_rootfs)
        self.elemental.copy_cloud_config(spec.cloud_init)

        grub.install_grub(
            paths,
            spec.target,
            spec.active.mount_point,
            parts.state.mount_point,
            spec.grub_conf,
            tty=spec.tty,
            efi=spec.firmware == FIRMWARE_EFI,
            state_label=parts.state.filesystem_label,
        )
        self.elemental.apply_selinux_labels(spec.active.mount_point, parts)
        self._install_hook(constants.AFTER_INSTALL_CHROOT_HOOK, chroot=True)

        grub.set_default_grub_entry(
            parts.state.mount_point, spec.active.mount_point, spec.grub_entry_name
        )

        # Recovery and Passive are copied from the unmounted Active file
        self.elemental.unmount_image(spec.active)
        recovery_meta = self.elemental.deploy_image(spec.recovery, leave_mounted=False)
        self.elemental.deploy_image(spec.passive, leave_mounted=False)

        self._install_hook(constants.AFTER_INSTALL_HOOK, chroot=False)

        state = self.install_state(system_meta, recovery_meta)
        state.write(
            os.path.join(parts.state.mount_point, constants.INSTALL_STATE_FILE),
            os.path.join(parts.recovery.mount_point, constants.INSTALL_STATE_FILE),
        )

    def _write_eject_script(self) -> None:
        if not (self.config.eject_cd and self.detector.booted_from_cd()):
            return
        script = Path(self.config.paths.eject_script)
        self.log.info("Writing eject script")
        try:
            script.parent.mkdir(parents=True, exist_ok=True)
            script.write_text(constants.EJECT_SCRIPT, encoding="utf-8")
            os.chmod(script, 0o744)
        except OSError as e:
            self.log.warning(f"Could not write eject script, cdrom wont be ejected automatically: {e}")

    def run(self) -> None:
        self.spec.sanitize()
        self.hooks.best_effort_stage(constants.INSTALL_PRE_STAGE)
        self.hooks.bus_hook(constants.INSTALL_PRE_HOOK_SCRIPT)

        cleanup = CleanupStack()
        try:
            self._deploy(cleanup)
        except Exception as e:
            cleanup.cleanup(e)
            raise
        error = cleanup.cleanup()
        if error is not None:
            raise error

        self._write_eject_script()
        self.hooks.best_effort_stage(constants.INSTALL_AFTER_STAGE)
        self.hooks.bus_hook(constants.INSTALL_AFTER_HOOK_SCRIPT)
        run_hooks(self.hooks, self.spec, POST_INSTALL)
        run_hooks(self.hooks, self.spec, FINISH_INSTALL)
        self.log.success("Installation finished")
