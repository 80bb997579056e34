"""Domain model for install, upgrade and reset operations.

Specs are built once per CLI invocation and handed to an action by
reference. They stay mutable because actions rewrite a few fields in place
(target auto-detection, sources taken from a downloaded ISO).
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import yaml

from kairos_agent import constants
from kairos_agent.storage.exceptions import SpecError


# ==============================================================================
# Boot roles
# ==============================================================================


class BootRole(Enum):
    """Image slot the running system booted from."""

    ACTIVE = "active"
    PASSIVE = "passive"
    RECOVERY = "recovery"
    UNKNOWN = "unknown"


# ==============================================================================
# Image sources
# ==============================================================================


class SourceKind(Enum):
    EMPTY = ""
    FILE = "file"
    DIR = "dir"
    OCI = "oci"


_OCI_SCHEMES = ("oci", "docker", "container")


def normalize_image_reference(reference: str) -> str:
    """Append the ``latest`` tag to a name-only image reference."""
    last_component = reference.rsplit("/", 1)[-1]
    if "@" in reference or ":" in last_component:
        return reference
    return f"{reference}:latest"


@dataclass(frozen=True)
class ImageSource:
    """Where the content of an image comes from."""

    kind: SourceKind = SourceKind.EMPTY
    value: str = ""

    @classmethod
    def from_file(cls, path: str) -> ImageSource:
        return cls(SourceKind.FILE, str(path))

    @classmethod
    def from_dir(cls, path: str) -> ImageSource:
        return cls(SourceKind.DIR, str(path))

    @classmethod
    def from_docker(cls, reference: str) -> ImageSource:
        return cls(SourceKind.OCI, normalize_image_reference(reference))

    @classmethod
    def parse(cls, uri: str | None) -> ImageSource:
        """Parse ``file:``, ``dir:``, ``oci:``/``docker:`` URIs.

        A value without a known scheme is treated as a container image
        reference, matching how images are usually passed on the CLI.
        """
        if not uri:
            return cls()
        scheme, sep, rest = uri.partition(":")
        if sep:
            scheme = scheme.lower()
            value = rest[2:] if rest.startswith("//") else rest
            if scheme == "file":
                return cls.from_file(value)
            if scheme == "dir":
                return cls.from_dir(value)
            if scheme in _OCI_SCHEMES:
                return cls.from_docker(value)
        return cls.from_docker(uri)

    @property
    def is_empty(self) -> bool:
        return self.kind is SourceKind.EMPTY or not self.value

    @property
    def is_file(self) -> bool:
        return self.kind is SourceKind.FILE

    @property
    def is_dir(self) -> bool:
        return self.kind is SourceKind.DIR

    @property
    def is_docker(self) -> bool:
        return self.kind is SourceKind.OCI

    def __str__(self) -> str:
        if self.is_empty:
            return ""
        return f"{self.kind.value}://{self.value}"


# ==============================================================================
# Images and partitions
# ==============================================================================


@dataclass
class Image:
    """A filesystem image deployed into a slot file (or directory)."""

    file: str = ""
    label: str = ""
    fs: str = ""
    size: int = 0  # MiB
    source: ImageSource = field(default_factory=ImageSource)
    mount_point: str = ""


@dataclass
class Partition:
    name: str
    filesystem_label: str = ""
    size: int = 0  # MiB, 0 means "rest of the disk"
    fs: str = ""
    mount_point: str = ""
    path: str = ""  # device node, resolved by label when empty
    flags: list[str] = field(default_factory=list)


@dataclass
class Partitions:
    bios: Optional[Partition] = None
    efi: Optional[Partition] = None
    oem: Optional[Partition] = None
    recovery: Optional[Partition] = None
    state: Optional[Partition] = None
    persistent: Optional[Partition] = None

    def all(self) -> list[Partition]:
        """Defined partitions in on-disk order."""
        ordered = [self.bios, self.efi, self.oem, self.recovery, self.state, self.persistent]
        return [part for part in ordered if part is not None]

    def partitions_by_mount_point(
        self, descending: bool = False, *excludes: Optional[Partition]
    ) -> list[Partition]:
        """Mountable partitions sorted by mount point.

        Ascending order mounts parents before children; pass ``descending``
        to get the unmount order.
        """
        excluded = {part.name for part in excludes if part is not None}
        mountable = [
            part
            for part in self.all()
            if part.mount_point and part.name not in excluded
        ]
        return sorted(mountable, key=lambda part: part.mount_point, reverse=descending)


# ==============================================================================
# Install state (state.yaml)
# ==============================================================================


@dataclass
class ImageState:
    source: ImageSource = field(default_factory=ImageSource)
    source_metadata: Any = None
    label: str = ""
    fs: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": str(self.source),
            "source_metadata": self.source_metadata,
            "label": self.label,
            "fs": self.fs,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ImageState:
        return cls(
            source=ImageSource.parse(data.get("source")),
            source_metadata=data.get("source_metadata"),
            label=data.get("label") or "",
            fs=data.get("fs") or "",
        )


@dataclass
class PartitionState:
    fslabel: str = ""
    images: dict[str, Optional[ImageState]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"fslabel": self.fslabel}
        images = {
            name: image.to_dict() for name, image in self.images.items() if image is not None
        }
        if images:
            data["images"] = images
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PartitionState:
        images = data.get("images") or {}
        return cls(
            fslabel=data.get("fslabel") or "",
            images={name: ImageState.from_dict(image or {}) for name, image in images.items()},
        )


@dataclass
class InstallState:
    """Deployment metadata persisted on the State and Recovery partitions."""

    date: str = ""
    partitions: dict[str, Optional[PartitionState]] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date,
            "partitions": {
                name: part.to_dict()
                for name, part in self.partitions.items()
                if part is not None
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InstallState:
        partitions = data.get("partitions") or {}
        return cls(
            date=str(data.get("date") or ""),
            partitions={
                name: PartitionState.from_dict(part or {}) for name, part in partitions.items()
            },
        )

    @classmethod
    def load(cls, path: str | Path) -> Optional[InstallState]:
        """Read a state file, returning None when it does not exist."""
        state_file = Path(path)
        if not state_file.exists():
            return None
        data = yaml.safe_load(state_file.read_text(encoding="utf-8")) or {}
        return cls.from_dict(data)

    def to_yaml(self) -> str:
        return yaml.safe_dump(self.to_dict(), sort_keys=False, default_flow_style=False)

    def write(self, *paths: str | Path) -> None:
        """Write the same state file to every given location."""
        content = self.to_yaml()
        for path in paths:
            target = Path(path)
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
            os.chmod(target, constants.FILE_PERM)


# ==============================================================================
# Operation specs
# ==============================================================================


FIRMWARE_EFI = "efi"
FIRMWARE_BIOS = "bios"
PART_TABLE_GPT = "gpt"
PART_TABLE_MSDOS = "msdos"


@dataclass
class InstallSpec:
    target: str = ""
    firmware: str = FIRMWARE_EFI
    part_table: str = PART_TABLE_GPT
    partitions: Partitions = field(default_factory=Partitions)
    no_format: bool = False
    force: bool = False
    cloud_init: list[str] = field(default_factory=list)
    iso: str = ""
    grub_entry_name: str = ""
    grub_conf: str = constants.GRUB_CONF
    tty: str = ""
    reboot: bool = False
    poweroff: bool = False
    extra_dirs_rootfs: list[str] = field(default_factory=list)
    active: Image = field(default_factory=Image)
    recovery: Image = field(default_factory=Image)
    passive: Image = field(default_factory=Image)

    def sanitize(self) -> None:
        if self.active.source.is_empty and not self.iso:
            raise SpecError("undefined system source to install")
        if self.partitions.state is None or not self.partitions.state.mount_point:
            raise SpecError("undefined state partition")
        if self.partitions.recovery is None or not self.partitions.recovery.mount_point:
            raise SpecError("undefined recovery partition")
        unsized = [part for part in self.partitions.all() if part.size == 0]
        if len(unsized) > 1:
            raise SpecError("only one partition can have an undefined size")

    def should_reboot(self) -> bool:
        return self.reboot

    def should_shutdown(self) -> bool:
        return self.poweroff


@dataclass
class UpgradeSpec:
    recovery_upgrade: bool = False
    active: Image = field(default_factory=Image)
    recovery: Image = field(default_factory=Image)
    passive: Image = field(default_factory=Image)
    partitions: Partitions = field(default_factory=Partitions)
    state: Optional[InstallState] = None
    grub_entry_name: str = ""
    extra_dirs_rootfs: list[str] = field(default_factory=list)
    reboot: bool = False
    poweroff: bool = False

    def sanitize(self) -> None:
        if self.recovery_upgrade:
            if self.recovery.source.is_empty:
                raise SpecError("undefined upgrade source")
            if self.partitions.recovery is None or not self.partitions.recovery.mount_point:
                raise SpecError("undefined recovery partition")
        else:
            if self.active.source.is_empty:
                raise SpecError("undefined upgrade source")
            if self.partitions.state is None or not self.partitions.state.mount_point:
                raise SpecError("undefined state partition")

    def should_reboot(self) -> bool:
        return self.reboot

    def should_shutdown(self) -> bool:
        return self.poweroff


@dataclass
class ResetSpec:
    target: str = ""
    efi: bool = True
    grub_conf: str = constants.GRUB_CONF
    grub_entry_name: str = ""
    tty: str = ""
    format_persistent: bool = True
    format_oem: bool = False
    reboot: bool = False
    poweroff: bool = False
    active: Image = field(default_factory=Image)
    passive: Image = field(default_factory=Image)
    partitions: Partitions = field(default_factory=Partitions)
    state: Optional[InstallState] = None

    def sanitize(self) -> None:
        if self.active.source.is_empty:
            raise SpecError("undefined system source to reset to")
        if self.partitions.state is None or not self.partitions.state.mount_point:
            raise SpecError("undefined state partition")

    def should_reboot(self) -> bool:
        return self.reboot

    def should_shutdown(self) -> bool:
        return self.poweroff


# ==============================================================================
# System extensions
# ==============================================================================


@dataclass(frozen=True)
class SysExtension:
    """A ``.raw`` system extension image on disk."""

    name: str
    location: str

    def __str__(self) -> str:
        return self.name
