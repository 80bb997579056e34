"""Domain models for install, upgrade, reset and extension operations."""

from __future__ import annotations

from .models import (
    BootRole,
    Image,
    ImageSource,
    ImageState,
    InstallSpec,
    InstallState,
    Partition,
    Partitions,
    PartitionState,
    ResetSpec,
    SourceKind,
    SysExtension,
    UpgradeSpec,
)


__all__ = [
    "BootRole",
    "Image",
    "ImageSource",
    "ImageState",
    "InstallSpec",
    "InstallState",
    "Partition",
    "Partitions",
    "PartitionState",
    "ResetSpec",
    "SourceKind",
    "SysExtension",
    "UpgradeSpec",
]
