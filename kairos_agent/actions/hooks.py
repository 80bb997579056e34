"""Lifecycle hooks run around install, upgrade and reset.

Two kinds of hooks exist:

* Named stages (``before-install``, ``after-upgrade-chroot``...) executed
  by the configured stage runner (``yip -s <stage> <cloud-config dirs>``),
  either on the host or inside a chroot of the freshly deployed image.
* Python hooks (:class:`CopyLogs`, :class:`Lifecycle`) grouped in the
  ``POST_INSTALL``/``FINISH_INSTALL``/``FINISH_UPGRADE`` sets.

Stage failures are logged and only propagated in strict mode.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Optional, Protocol, Sequence

from kairos_agent import constants, system_utils
from kairos_agent.config.settings import AgentConfig
from kairos_agent.domain.models import Partition
from kairos_agent.logging import LoggerFactory
from kairos_agent.storage.command_runners import run_checked_command
from kairos_agent.storage.elemental import Elemental
from kairos_agent.storage.exceptions import (
    AgentError,
    CommandError,
    DeviceNotFoundError,
    HookError,
    MountError,
)
from kairos_agent.storage.mount import Mounter, ScopedChroot


log = LoggerFactory.for_hooks()


class HookRunner:
    """Runs named stages with the strictness taken from the agent config."""

    def __init__(self, config: AgentConfig, mounter: Optional[Mounter] = None):
        self.config = config
        self.mounter = mounter or Mounter()

    @property
    def strict(self) -> bool:
        return self.config.strict

    def stage_command(self, name: str, root: str = "/") -> list[str]:
        """Stage runner invocation with the cloud-config dirs present in ``root``."""
        sources = [
            path
            for path in self.config.cloud_init_paths
            if (Path(root) / path.lstrip("/")).exists()
        ]
        return [*self.config.stage_command, name, *sources]

    def _handle_failure(self, name: str, error: CommandError) -> None:
        log.error(f"Hook {name} failed: {error.output}")
        if self.strict:
            raise HookError(name, error.output) from error

    def hook(self, name: str) -> None:
        log.info(f"Running {name} hook")
        try:
            run_checked_command(self.stage_command(name))
        except CommandError as e:
            self._handle_failure(name, e)

    def chroot_hook(self, name: str, chroot_dir: str, bind_mounts: dict[str, str]) -> None:
        """Run a stage inside ``chroot_dir``; bind mounts are always released."""
        log.info(f"Running {name} hook in chroot {chroot_dir}")
        with ScopedChroot(
            chroot_dir,
            bind_mounts,
            mounter=self.mounter,
            systemd_run_dir=self.config.paths.systemd_run_dir,
        ) as chroot:
            try:
                chroot.run(self.stage_command(name, chroot_dir))
            except CommandError as e:
                self._handle_failure(name, e)

    def best_effort_stage(self, name: str) -> None:
        """Run a stage whose failure never matters, strict mode or not."""
        log.debug(f"Running {name} stage")
        try:
            run_checked_command(self.stage_command(name))
        except CommandError as e:
            log.warning(f"Stage {name} failed: {e.output}")

    def bus_hook(self, script: str) -> None:
        """Run an external provider script if one is installed."""
        if not Path(script).exists():
            log.debug(f"No hook script at {script}")
            return
        try:
            run_checked_command([script])
        except CommandError as e:
            log.warning(f"Hook script {script} failed: {e.output}")


# ==============================================================================
# Python hooks
# ==============================================================================


class Hook(Protocol):
    def run(self, runner: HookRunner, spec: Any) -> None: ...


class CopyLogs:
    """Keep the live system's logs by copying them to the Persistent partition."""

    def run(self, runner: HookRunner, spec: Any) -> None:
        paths = runner.config.paths
        elemental = Elemental(paths, runner.mounter)
        persistent = Partition(
            name=constants.PERSISTENT_PART_NAME,
            filesystem_label=constants.PERSISTENT_LABEL,
            fs=constants.LINUX_FS,
            mount_point=paths.persistent_dir,
        )
        log.debug("Running CopyLogs hook")
        try:
            elemental.unmount_partition(persistent)
            elemental.mount_partition(persistent)
        except (MountError, DeviceNotFoundError) as e:
            log.warning(f"Could not mount persistent partition: {e}")
            return

        try:
            var_log = Path(paths.persistent_dir) / ".state" / "var-log.bind"
            var_log.mkdir(parents=True, exist_ok=True, mode=constants.DIR_PERM)
            elemental.sync_data(paths.var_log_dir, str(var_log))
            system_utils.sync()
            log.debug("Logs copied to persistent partition")
        except (OSError, CommandError) as e:
            log.error(f"Could not copy logs to persistent partition: {e}")
        finally:
            try:
                elemental.unmount_partition(persistent)
            except MountError as e:
                log.error(f"Could not unmount persistent partition: {e}")


class Lifecycle:
    """Reboot or power off once an operation is complete."""

    def run(self, runner: HookRunner, spec: Any) -> None:
        if spec.should_reboot():
            log.info("Rebooting")
            system_utils.reboot_system(constants.POWER_ACTION_DELAY_SECONDS)
        elif spec.should_shutdown():
            log.info("Powering off")
            system_utils.poweroff_system(constants.POWER_ACTION_DELAY_SECONDS)


POST_INSTALL: list[Hook] = [CopyLogs()]
FINISH_INSTALL: list[Hook] = [Lifecycle()]
FINISH_UPGRADE: list[Hook] = [Lifecycle()]


def run_hooks(runner: HookRunner, spec: Any, hooks: Sequence[Hook]) -> None:
    """Run a hook set in order; failures stop the set only in strict mode."""
    for hook in hooks:
        name = type(hook).__name__
        try:
            hook.run(runner, spec)
        except (AgentError, OSError) as e:
            log.error(f"Hook {name} failed: {e}")
            if runner.strict:
                raise HookError(name, str(e)) from e
