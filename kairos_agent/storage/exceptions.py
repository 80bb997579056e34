"""Custom exceptions for provisioning operations.

This module defines a hierarchy of exceptions so callers can tell apart a
failed external command, a mount problem, an incomplete spec or a boot entry
lookup failure.

Exception Hierarchy:
    AgentError (base)
        ├── CommandError
        ├── DeviceNotFoundError
        ├── MountError
        │   ├── MountFailedError
        │   ├── UnmountFailedError
        │   └── ChrootError
        ├── SpecError
        ├── DeploymentError
        ├── HookError
        ├── BootEntryError
        │   └── EntryNotFoundError
        └── SysExtError
            └── SysExtNotFoundError

Usage:
    from kairos_agent.storage.exceptions import SpecError

    if spec.partitions.state is None:
        raise SpecError("undefined state partition")
"""

from __future__ import annotations


class AgentError(Exception):
    """Base exception for all agent operations."""


class CommandError(AgentError):
    """An external command exited with a non-zero status."""

    def __init__(self, command: list[str], returncode: int, output: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.output = output
        message = output or "Command failed"
        super().__init__(f"Command failed ({' '.join(self.command)}): {message}")


class DeviceNotFoundError(AgentError):
    """Device was not found or does not exist."""

    def __init__(self, device_name: str):
        self.device_name = device_name
        super().__init__(f"Device not found: {device_name}")


class MountError(AgentError):
    """Base exception for mount-related errors."""


class MountFailedError(MountError):
    """Failed to mount a device, image or bind mount."""

    def __init__(self, target: str, reason: str):
        self.target = target
        self.reason = reason
        super().__init__(f"Failed to mount {target}: {reason}")


class UnmountFailedError(MountError):
    """Failed to unmount a mountpoint."""

    def __init__(self, target: str, reason: str):
        self.target = target
        self.reason = reason
        super().__init__(f"Failed to unmount {target}: {reason}")


class ChrootError(MountError):
    """One or more chroot bind mounts could not be released."""

    def __init__(self, failures: list[str]):
        self.failures = failures
        super().__init__(
            "failed closing chroot environment. Unmount failures: "
            + ", ".join(failures)
        )


class SpecError(AgentError):
    """An install, upgrade or reset spec is missing required data."""


class DeploymentError(AgentError):
    """An image could not be deployed or its sources resolved."""


class HookError(AgentError):
    """A lifecycle hook failed while strict mode is enabled."""

    def __init__(self, name: str, reason: str):
        self.name = name
        self.reason = reason
        super().__init__(f"Hook {name} failed: {reason}")


class BootEntryError(AgentError):
    """Boot entries could not be listed, mapped or selected."""


class EntryNotFoundError(BootEntryError):
    """The requested boot entry is not among the known entries."""

    def __init__(self, entry: str):
        self.entry = entry
        super().__init__(f"entry {entry} does not exist")


class SysExtError(AgentError):
    """System extension management failure."""


class SysExtNotFoundError(SysExtError):
    """No system extension matched the requested name."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"system extension {name} not found")
