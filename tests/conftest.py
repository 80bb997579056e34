"""
Pytest configuration and shared fixtures for kairos-agent tests.

This module provides fakes for everything that would touch real disks:
- FakeMounter: records mounts instead of calling mount/umount
- FakeElemental: deploys images as plain files under tmp_path
- RecordingHookRunner: records stages instead of running yip
- FakeDetector: boot role detector with a settable role
"""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Any, Optional

import pytest

from kairos_agent.actions.hooks import HookRunner
from kairos_agent.boot.detect import BootRoleDetector
from kairos_agent.config.settings import AgentConfig, Paths
from kairos_agent.domain.models import BootRole, Image, InstallSpec, Partition
from kairos_agent.storage.elemental import Elemental
from kairos_agent.storage.exceptions import UnmountFailedError
from kairos_agent.storage.mount import Mounter


# ==============================================================================
# Fakes
# ==============================================================================


class FakeMounter(Mounter):
    """Keeps a set of mounted targets instead of running mount."""

    def __init__(self) -> None:
        self.mounted: dict[str, str] = {}
        self.remounts: list[tuple[str, bool]] = []
        self.calls: list[tuple[str, str]] = []

    def mount(self, source, target, fstype="auto", options=()):
        self.calls.append(("mount", target))
        self.mounted[str(target)] = str(source)

    def unmount(self, target):
        self.calls.append(("unmount", target))
        if str(target) not in self.mounted:
            raise UnmountFailedError(str(target), "not mounted")
        del self.mounted[str(target)]

    def remount(self, target, read_only):
        self.remounts.append((str(target), read_only))

    def is_mounted(self, target):
        return str(target) in self.mounted


class FakeElemental(Elemental):
    """Elemental whose disk operations work on plain files.

    Deploying an image writes ``deployed:<source>`` into the image file, or
    copies the source file, so tests can inspect slot contents.
    """

    def __init__(self, paths: Paths, mounter: FakeMounter):
        super().__init__(paths, mounter)
        self.calls: list[Any] = []
        self.active_deployment = False
        self.fail_on: Optional[str] = None

    def _record(self, *call: Any) -> None:
        self.calls.append(call)
        if self.fail_on is not None and call[0] == self.fail_on:
            raise RuntimeError(f"{self.fail_on} failed")

    def get_device_by_label(self, label, attempts=1):
        return f"/dev/disk/by-label/{label}"

    def find_disk(self, partition_device):
        self._record("find_disk", partition_device)
        return "/dev/sda"

    def detect_preconfigured_device(self):
        self._record("detect_preconfigured_device")
        return "/dev/sda"

    def check_active_deployment(self, labels):
        self._record("check_active_deployment", list(labels))
        return self.active_deployment

    def deactivate_devices(self):
        self._record("deactivate_devices")

    def partition_and_format_device(self, spec: InstallSpec):
        self._record("partition_and_format_device", spec.target)

    def format_partition(self, partition: Partition, *options):
        self._record("format_partition", partition.name)

    def deploy_image(self, image: Image, leave_mounted=False):
        self._record("deploy_image", image.file)
        target = Path(image.file)
        target.parent.mkdir(parents=True, exist_ok=True)
        if image.source.is_file:
            shutil.copyfile(image.source.value, target)
        else:
            target.write_text(f"deployed:{image.source}", encoding="utf-8")
        if leave_mounted and image.mount_point and image.fs != "squashfs":
            Path(image.mount_point).mkdir(parents=True, exist_ok=True)
            self.mounter.mount(image.file, image.mount_point, "auto", ["loop"])
        if image.source.is_docker:
            return {"digest": "sha256:cafe"}
        return None

    def set_filesystem_label(self, image_file, label):
        self._record("set_filesystem_label", Path(image_file).name, label)

    def copy_cloud_config(self, cloud_init):
        self._record("copy_cloud_config", list(cloud_init))

    def apply_selinux_labels(self, root, partitions):
        self._record("apply_selinux_labels", root)

    def get_iso(self, iso):
        self._record("get_iso", iso)
        return str(Path(self.paths.tmp_dir) / "iso-work")

    def release_iso(self, work_dir):
        self._record("release_iso", work_dir)

    def names(self) -> list[str]:
        return [call[0] for call in self.calls]


class RecordingHookRunner(HookRunner):
    """Hook runner that only records which stages would have run."""

    def __init__(self, config: AgentConfig, mounter: Optional[Mounter] = None):
        super().__init__(config, mounter)
        self.stages: list[str] = []

    def hook(self, name):
        self.stages.append(name)

    def chroot_hook(self, name, chroot_dir, bind_mounts):
        self.stages.append(name)

    def best_effort_stage(self, name):
        self.stages.append(name)

    def bus_hook(self, script):
        self.stages.append(Path(script).name)


class FakeDetector(BootRoleDetector):
    def __init__(self, paths: Paths, role: BootRole = BootRole.ACTIVE, uki: bool = False):
        super().__init__(paths)
        self.role = role
        self.uki = uki
        self.from_cd = False

    def current_role(self):
        return self.role

    def is_uki(self):
        return self.uki

    def booted_from_cd(self):
        return self.from_cd


# ==============================================================================
# Fixtures
# ==============================================================================


@pytest.fixture
def paths(tmp_path) -> Paths:
    """Every well known location rebased under a temporary root."""
    return Paths.rooted(tmp_path / "root")


@pytest.fixture
def config(paths) -> AgentConfig:
    return AgentConfig(paths=paths, stage_command=["yip", "-s"])


@pytest.fixture
def mounter() -> FakeMounter:
    return FakeMounter()


@pytest.fixture
def elemental(paths, mounter) -> FakeElemental:
    return FakeElemental(paths, mounter)


@pytest.fixture
def hooks(config, mounter) -> RecordingHookRunner:
    return RecordingHookRunner(config, mounter)


@pytest.fixture
def detector(paths) -> FakeDetector:
    return FakeDetector(paths)


@pytest.fixture
def mock_grub(mocker):
    """Patch bootloader installation and the default entry writer."""
    return {
        "install": mocker.patch("kairos_agent.boot.grub.install_grub"),
        "default_entry": mocker.patch("kairos_agent.boot.grub.set_default_grub_entry"),
    }


@pytest.fixture
def mock_power(mocker):
    return {
        "reboot": mocker.patch("kairos_agent.system_utils.reboot_system"),
        "poweroff": mocker.patch("kairos_agent.system_utils.poweroff_system"),
        "sync": mocker.patch("kairos_agent.system_utils.sync"),
    }


@pytest.fixture
def mock_subprocess_run(mocker):
    """Patch subprocess.run for command runner tests."""
    return mocker.patch("kairos_agent.storage.command_runners.subprocess.run")


@pytest.fixture
def mock_run_command(mocker):
    """Patch run_checked_command where the Mounter uses it."""
    return mocker.patch("kairos_agent.storage.mount.run_checked_command", return_value="")


STOCK_UKI_TITLES = {
    "active": "Kairos",
    "passive": "Kairos (fallback)",
    "recovery": "Kairos recovery",
    "statereset": "Kairos state reset (auto)",
}


def write_uki_artifacts(efi_dir, role: str, kernel: str, title: str = "Kairos") -> None:
    """Write the efi binary and loader entry of one artifact role."""
    kairos = Path(efi_dir) / "EFI" / "kairos"
    entries = Path(efi_dir) / "loader" / "entries"
    kairos.mkdir(parents=True, exist_ok=True)
    entries.mkdir(parents=True, exist_ok=True)
    (kairos / f"{role}.efi").write_text(kernel, encoding="utf-8")
    (entries / f"{role}.conf").write_text(
        f"title {title}\nefi /EFI/kairos/{role}.efi\n", encoding="utf-8"
    )


@pytest.fixture
def uki_efi(paths) -> Path:
    """A stock UKI EFI partition: one artifact set per role and loader.conf."""
    efi = Path(paths.uki_efi_dir)
    for role, title in STOCK_UKI_TITLES.items():
        write_uki_artifacts(efi, role, f"{role}-kernel-v1", title)
    (efi / "loader" / "loader.conf").write_text("timeout 5\ndefault active.conf\n")
    return efi


@pytest.fixture
def staged_uki_source(mocker, elemental):
    """Make dump_source stage a new unassigned artifact set into its target."""

    def dump(target, source):
        write_uki_artifacts(target, "norole", "kernel-v2", "Kairos v2")
        loader = Path(target) / "loader" / "loader.conf"
        loader.write_text("timeout 5\ndefault norole.conf\n", encoding="utf-8")
        return None

    return mocker.patch.object(elemental, "dump_source", side_effect=dump)
