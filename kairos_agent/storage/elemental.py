"""Partition and image deployment helpers.

Module Purpose:
    Everything the install, upgrade and reset actions need from the disk:
    partitioning and formatting a device, mounting partitions by label,
    creating loop-mounted filesystem images and dumping an image source
    (container image, directory or file) into them.

Functions:
    - Elemental.partition_and_format_device(): New partition table plus mkfs
    - Elemental.format_partition(): Create a filesystem on one partition
    - Elemental.mount_partitions() / unmount_partitions(): Mount by label
    - Elemental.mount_rw_partition(): Mount or remount rw, returning the undo
    - Elemental.deploy_image(): Dump a source into an image file or squashfs
    - Elemental.apply_selinux_labels(): setfiles inside a scoped chroot
    - Elemental.get_iso(): Download and mount an installation ISO

External commands:
    parted, partprobe, udevadm, mkfs.*, blkid, lsblk, blkdeactivate, rsync,
    mksquashfs, tune2fs, setfiles
"""

from __future__ import annotations

import os
import re
import shutil
import time
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

from kairos_agent import constants
from kairos_agent.config.settings import Paths
from kairos_agent.domain.models import (
    FIRMWARE_EFI,
    Image,
    ImageSource,
    InstallSpec,
    Partition,
    Partitions,
)
from kairos_agent.logging import LoggerFactory
from kairos_agent.services.download import download_file, extract_oci_image, image_digest
from kairos_agent.storage.command_runners import run_checked_command
from kairos_agent.storage.exceptions import (
    CommandError,
    DeploymentError,
    DeviceNotFoundError,
    MountError,
    UnmountFailedError,
)
from kairos_agent.storage.mount import Mounter, ScopedChroot


log = LoggerFactory.for_storage()

UnmountCallback = Callable[[], None]

PARTITION_FLAGS = {
    constants.BIOS_PART_NAME: ["bios_grub"],
    constants.EFI_PART_NAME: ["esp"],
}


def partition_device_path(disk: str, number: int) -> str:
    """Device node of partition ``number`` on ``disk``.

    Disks whose name ends in a digit (nvme0n1, mmcblk0, loop0) use a ``p``
    separator before the partition number.
    """
    if re.search(r"\d$", disk):
        return f"{disk}p{number}"
    return f"{disk}{number}"


def _copy_file(source: str | Path, target: str | Path) -> None:
    Path(target).parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(source, target)


class Elemental:
    """Disk side operations shared by the install, upgrade and reset actions."""

    def __init__(self, paths: Paths, mounter: Optional[Mounter] = None):
        self.paths = paths
        self.mounter = mounter or Mounter()

    # ==========================================================================
    # Devices and labels
    # ==========================================================================

    def get_device_by_label(self, label: str, attempts: int = 1) -> str:
        """Resolve a filesystem label to its device node, retrying with settle."""
        for attempt in range(attempts):
            try:
                device = run_checked_command(["blkid", "-L", label]).strip()
            except CommandError:
                device = ""
            if device:
                return device
            if attempt + 1 < attempts:
                self._settle()
                time.sleep(1)
        raise DeviceNotFoundError(f"label {label}")

    def find_disk(self, partition_device: str) -> str:
        """Parent disk of a partition device node."""
        parent = run_checked_command(["lsblk", "-no", "pkname", partition_device]).strip()
        if not parent:
            raise DeviceNotFoundError(f"parent disk of {partition_device}")
        return f"/dev/{parent.splitlines()[0]}"

    def detect_preconfigured_device(self) -> str:
        """Disk holding an existing State partition."""
        state_device = self.get_device_by_label(constants.STATE_LABEL)
        return self.find_disk(state_device)

    def check_active_deployment(self, labels: Iterable[str]) -> bool:
        """True when any of ``labels`` is already present on the system."""
        log.info("Checking for active deployment")
        for label in labels:
            try:
                self.get_device_by_label(label)
            except DeviceNotFoundError:
                continue
            log.debug("There is already an active deployment in the system")
            return True
        return False

    def deactivate_devices(self) -> None:
        """Release LVM and device-mapper volumes that could hold the target busy."""
        run_checked_command(
            [
                "blkdeactivate",
                "--lvmoptions",
                "retry,wholevg",
                "--dmoptions",
                "force,retry",
                "--errors",
            ]
        )

    def _settle(self) -> None:
        try:
            run_checked_command(["udevadm", "settle"])
        except CommandError as e:
            log.debug(f"udevadm settle failed: {e.output}")

    # ==========================================================================
    # Partitioning and formatting
    # ==========================================================================

    def format_partition(self, partition: Partition, *options: str) -> None:
        self.format_device(partition.path, partition.fs, partition.filesystem_label, *options)

    def format_device(self, device: str, fs: str, label: str = "", *options: str) -> None:
        log.info(f"Formatting {device} as {fs} (label {label or '-'})")
        if fs == constants.EFI_FS:
            command = ["mkfs.vfat"]
            if label:
                command += ["-n", label]
        else:
            command = [f"mkfs.{fs}"]
            if fs.startswith("ext"):
                command.append("-F")
            if label:
                command += ["-L", label]
        run_checked_command([*command, *options, device])

    def partitions_by_install_order(self, spec: InstallSpec) -> list[Partition]:
        parts = spec.partitions
        boot_part = parts.efi if spec.firmware == FIRMWARE_EFI else parts.bios
        ordered = [boot_part, parts.oem, parts.recovery, parts.state, parts.persistent]
        return [part for part in ordered if part is not None]

    def partition_and_format_device(self, spec: InstallSpec) -> None:
        """Write a new partition table on the target disk and format it."""
        if not Path(spec.target).exists():
            log.error(f"Disk {spec.target} does not exist")
            raise DeviceNotFoundError(spec.target)

        log.info("Partitioning device...")
        run_checked_command(["parted", "-s", spec.target, "mklabel", spec.part_table])

        start = 1
        partitions = self.partitions_by_install_order(spec)
        for number, part in enumerate(partitions, start=1):
            end = f"{start + part.size}MiB" if part.size else "100%"
            command = ["parted", "-s", spec.target, "mkpart"]
            # msdos tables have no partition names
            command.append(part.name if spec.part_table == "gpt" else "primary")
            if part.fs:
                command.append("fat32" if part.fs == constants.EFI_FS else part.fs)
            command += [f"{start}MiB", end]
            run_checked_command(command)
            for flag in part.flags or PARTITION_FLAGS.get(part.name, []):
                run_checked_command(["parted", "-s", spec.target, "set", str(number), flag, "on"])
            part.path = partition_device_path(spec.target, number)
            start += part.size

        try:
            run_checked_command(["partprobe", spec.target])
        except CommandError as e:
            log.warning(f"Failed re-reading partition table: {e.output}")
        self._settle()

        for part in partitions:
            if not part.fs:
                continue
            self.format_partition(part)

    # ==========================================================================
    # Partition mounts
    # ==========================================================================

    def is_mounted(self, partition: Optional[Partition]) -> bool:
        if partition is None or not partition.mount_point:
            return False
        return self.mounter.is_mounted(partition.mount_point)

    def mount_partition(self, partition: Partition, *options: str) -> None:
        log.debug(f"Mounting partition {partition.filesystem_label}")
        Path(partition.mount_point).mkdir(parents=True, exist_ok=True)
        if not partition.path:
            try:
                partition.path = self.get_device_by_label(partition.filesystem_label, 10)
            except DeviceNotFoundError:
                log.error(f"Could not find a device with label {partition.filesystem_label}")
                raise
        self.mounter.mount(partition.path, partition.mount_point, "auto", options)

    def unmount_partition(self, partition: Partition) -> None:
        if not self.is_mounted(partition):
            log.debug(f"Not unmounting partition, {partition.mount_point} doesn't look like mountpoint")
            return
        log.debug(f"Unmounting partition {partition.filesystem_label}")
        self.mounter.unmount(partition.mount_point)

    def mount_partitions(self, partitions: list[Partition]) -> None:
        """Mount every partition with a mount point; undo all on failure."""
        log.info("Mounting disk partitions")
        for part in partitions:
            if not part.mount_point:
                continue
            try:
                self.mount_partition(part, "rw")
            except (MountError, DeviceNotFoundError):
                try:
                    self.unmount_partitions(list(reversed(partitions)))
                except MountError as e:
                    log.warning(f"Failed rolling back partition mounts: {e}")
                raise

    def unmount_partitions(self, partitions: list[Partition]) -> None:
        """Unmount every partition, reporting all failures at once."""
        log.info("Unmounting disk partitions")
        failures: list[str] = []
        for part in partitions:
            if not part.mount_point:
                continue
            try:
                self.unmount_partition(part)
            except UnmountFailedError as e:
                failures.append(f"{part.mount_point}: {e.reason}")
        if failures:
            raise MountError("Failed to unmount " + "; ".join(failures))

    def mount_rw_partition(self, partition: Partition) -> UnmountCallback:
        """Make ``partition`` writable and return the call that restores it."""
        if self.is_mounted(partition):
            self.mounter.remount(partition.mount_point, read_only=False)

            def restore() -> None:
                self.mounter.remount(partition.mount_point, read_only=True)

            return restore

        self.mount_partition(partition, "rw")

        def unmount() -> None:
            self.unmount_partition(partition)

        return unmount

    # ==========================================================================
    # Images
    # ==========================================================================

    def mount_image(self, image: Image, *options: str) -> None:
        log.debug(f"Mounting image {image.label or image.file}")
        Path(image.mount_point).mkdir(parents=True, exist_ok=True)
        self.mounter.mount(image.file, image.mount_point, "auto", ["loop", *options])

    def unmount_image(self, image: Image) -> None:
        if not image.mount_point or not self.mounter.is_mounted(image.mount_point):
            log.debug(f"Not unmounting image, {image.mount_point} doesn't look like mountpoint")
            return
        log.debug(f"Unmounting image {image.label or image.file}")
        self.mounter.unmount(image.mount_point)

    def create_filesystem_image(self, image: Image) -> None:
        """Create a sparse image file of ``image.size`` MiB and format it."""
        log.info(f"Creating file system image {image.file} with size {image.size}Mb")
        target = Path(image.file)
        target.parent.mkdir(parents=True, exist_ok=True)
        try:
            with target.open("wb") as handle:
                handle.truncate(image.size * 1024 * 1024)
            self.format_device(image.file, image.fs, image.label)
        except (OSError, CommandError):
            target.unlink(missing_ok=True)
            raise

    def create_dir_structure(self, target: str) -> None:
        """Create the directories a root filesystem needs to boot."""
        root = Path(target)
        for name in constants.SYSTEM_DIRS:
            (root / name).mkdir(parents=True, exist_ok=True, mode=constants.DIR_PERM)
        for name in constants.API_DIRS:
            (root / name).mkdir(parents=True, exist_ok=True, mode=constants.NO_WRITE_DIR_PERM)
        tmp = root / "tmp"
        tmp.mkdir(parents=True, exist_ok=True, mode=constants.DIR_PERM)
        os.chmod(tmp, constants.TEMP_DIR_PERM)

    def sync_data(self, source: str, target: str, excludes: Iterable[str] = ()) -> None:
        command = ["rsync", "-aqAX", "--numeric-ids"]
        for exclude in excludes:
            command.append(f"--exclude={exclude}")
        command += [source.rstrip("/") + "/", target.rstrip("/") + "/"]
        run_checked_command(command)

    def dump_source(self, target: str, source: ImageSource) -> Any:
        """Copy the content of ``source`` into ``target``.

        Returns source metadata worth recording in the install state, the
        image digest for container sources and None otherwise.
        """
        log.info(f"Copying {source} source to {target}")
        if source.is_docker:
            extract_oci_image(source.value, target)
            digest = image_digest(source.value)
            return {"digest": digest} if digest else None
        if source.is_dir:
            Path(target).mkdir(parents=True, exist_ok=True)
            self.sync_data(source.value, target, constants.SYNC_EXCLUDES)
            return None
        if source.is_file:
            _copy_file(source.value, target)
            return None
        raise DeploymentError("unknown image source type")

    def deploy_image(self, image: Image, leave_mounted: bool = False) -> Any:
        """Populate ``image.file`` from ``image.source``.

        Directory and container sources land in a freshly created filesystem
        image (or a squashfs built from a temporary tree); file sources are
        copied as they are. Returns the source metadata.
        """
        log.info(f"Deploying image: {image.file}")
        temp_tree = ""
        is_squash = image.fs == constants.SQUASH_FS

        if not image.source.is_file:
            if is_squash:
                temp_tree = self.paths.make_temp_dir("kairos-squash-")
                target = temp_tree
            else:
                self.create_filesystem_image(image)
                self.mount_image(image, "rw")
                target = image.mount_point
        else:
            target = image.file

        try:
            metadata = self.dump_source(target, image.source)
            if not image.source.is_file:
                self.create_dir_structure(target)
                if is_squash:
                    Path(image.file).parent.mkdir(parents=True, exist_ok=True)
                    run_checked_command(
                        ["mksquashfs", target, image.file, *constants.SQUASHFS_OPTIONS]
                    )
            elif image.label and not is_squash:
                self.set_filesystem_label(image.file, image.label)
        except Exception:
            if not is_squash and not image.source.is_file:
                self._unmount_quietly(image)
            raise
        finally:
            if temp_tree:
                shutil.rmtree(temp_tree, ignore_errors=True)

        if leave_mounted and image.source.is_file:
            self.mount_image(image, "rw")
        if not leave_mounted:
            self.unmount_image(image)
        return metadata

    def set_filesystem_label(self, image_file: str, label: str) -> None:
        """Rewrite the ext filesystem label stored in an image file."""
        run_checked_command(["tune2fs", "-L", label, image_file])

    def _unmount_quietly(self, image: Image) -> None:
        try:
            self.unmount_image(image)
        except MountError as e:
            log.warning(f"Failed unmounting image {image.file} after a failed deployment: {e}")

    # ==========================================================================
    # Root filesystem helpers
    # ==========================================================================

    def copy_cloud_config(self, cloud_init: list[str]) -> None:
        """Place user cloud-config files into the OEM partition."""
        for index, uri in enumerate(cloud_init):
            target = Path(self.paths.oem_dir) / f"9{index}_custom.yaml"
            if uri.startswith(("http://", "https://")):
                target.parent.mkdir(parents=True, exist_ok=True)
                download_file(uri, target)
            else:
                _copy_file(uri.removeprefix("file://"), target)
            os.chmod(target, constants.CONFIG_PERM)
            log.info(f"Finished copying cloud config file {uri} to {target}")

    def selinux_relabel(self, chroot: ScopedChroot, raise_error: bool = False) -> None:
        """Relabel the chroot's root filesystem with its targeted policy."""
        root = Path(chroot.root)
        context_file = root / constants.SELINUX_TARGETED_CONTEXT_FILE
        policy_dir = root / constants.SELINUX_TARGETED_POLICY_PATH
        policies = sorted(policy_dir.glob("policy.*")) if policy_dir.is_dir() else []
        setfiles = [path for path in ("usr/sbin/setfiles", "sbin/setfiles") if (root / path).exists()]

        if not (policies and context_file.exists() and setfiles):
            log.debug("No SELinux policy found, skipping relabel")
            return

        policy = "/" + str(policies[0].relative_to(root))
        context = "/" + constants.SELINUX_TARGETED_CONTEXT_FILE
        try:
            chroot.run(
                ["setfiles", "-c", policy, "-e", "/dev", "-e", "/proc", "-e", "/sys", "-F", context, "/"]
            )
        except CommandError as e:
            log.warning(f"SELinux relabel failed: {e.output}")
            if raise_error:
                raise

    def chroot_binds(self, partitions: Partitions) -> dict[str, str]:
        """Persistent and OEM bind mounts for a chroot, when they are mounted."""
        binds: dict[str, str] = {}
        if self.is_mounted(partitions.persistent):
            binds[partitions.persistent.mount_point] = constants.USR_LOCAL_PATH
        if self.is_mounted(partitions.oem):
            binds[partitions.oem.mount_point] = constants.OEM_PATH
        return binds

    def apply_selinux_labels(self, root: str, partitions: Partitions) -> None:
        with ScopedChroot(
            root,
            self.chroot_binds(partitions),
            mounter=self.mounter,
            systemd_run_dir=self.paths.systemd_run_dir,
        ) as chroot:
            self.selinux_relabel(chroot, raise_error=True)

    def create_extra_dirs(self, root: str, directories: list[str]) -> None:
        """Best effort creation of extra directories in a deployed root."""
        for directory in directories:
            path = Path(root) / directory.lstrip("/")
            try:
                path.mkdir(parents=True, exist_ok=True, mode=constants.DIR_PERM)
                log.debug(f"Created extra dir {path}")
            except OSError as e:
                log.warning(f"Failure creating extra dir {path}: {e}")

    # ==========================================================================
    # ISO sources
    # ==========================================================================

    def get_iso(self, iso: str) -> str:
        """Download and mount an ISO, returning the work directory."""
        work_dir = self.paths.make_temp_dir("elemental")
        iso_mnt = os.path.join(work_dir, "iso")
        rootfs_mnt = os.path.join(work_dir, "rootfs")
        iso_file = os.path.join(work_dir, "cOs.iso")
        iso_mounted = False
        try:
            if iso.startswith(("http://", "https://")):
                download_file(iso, iso_file)
            else:
                _copy_file(iso.removeprefix("file://"), iso_file)
            Path(iso_mnt).mkdir(parents=True, exist_ok=True)
            log.info(f"Mounting iso {iso_file} into {iso_mnt}")
            self.mounter.mount(iso_file, iso_mnt, "auto", ["loop"])
            iso_mounted = True
            log.info(f"Mounting squashfs image from iso into {rootfs_mnt}")
            Path(rootfs_mnt).mkdir(parents=True, exist_ok=True)
            self.mounter.mount(os.path.join(iso_mnt, constants.ISO_ROOT_FILE), rootfs_mnt, "auto")
        except Exception:
            if iso_mounted:
                try:
                    self.mounter.unmount(iso_mnt)
                except MountError as e:
                    log.warning(f"Failed unmounting {iso_mnt}: {e}")
            shutil.rmtree(work_dir, ignore_errors=True)
            raise
        return work_dir

    def release_iso(self, work_dir: str) -> None:
        """Unmount what get_iso mounted and remove its work directory."""
        for name in ("rootfs", "iso"):
            mount_point = os.path.join(work_dir, name)
            if self.mounter.is_mounted(mount_point):
                self.mounter.unmount(mount_point)
        shutil.rmtree(work_dir, ignore_errors=True)

    def update_sources_from_iso(
        self, work_dir: str, active: Optional[Image], recovery: Optional[Image]
    ) -> None:
        """Point Active and Recovery sources at a mounted ISO."""
        rootfs_mnt = os.path.join(work_dir, "rootfs")
        iso_mnt = os.path.join(work_dir, "iso")
        if active is not None:
            active.source = ImageSource.from_dir(rootfs_mnt)
        if recovery is None:
            return
        squashed = os.path.join(iso_mnt, constants.RECOVERY_SQUASH_FILE)
        if os.path.exists(squashed):
            recovery.source = ImageSource.from_file(squashed)
            recovery.fs = constants.SQUASH_FS
        elif active is not None:
            recovery.source = ImageSource.from_file(active.file)
            recovery.fs = constants.LINUX_IMG_FS
            if not recovery.label:
                recovery.label = constants.SYSTEM_LABEL
        else:
            raise DeploymentError("can't set recovery image from ISO, source image is missing")
