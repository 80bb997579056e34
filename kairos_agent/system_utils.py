"""System service and power helpers."""

from __future__ import annotations

import os
import shutil
import subprocess
import time
from pathlib import Path
from typing import Optional

from loguru import logger


def _escape_braces(text: str) -> str:
    """Escape curly braces for loguru formatting."""
    return text.replace("{", "{{").replace("}", "}}")


def validate_command_args(args: list[str]) -> None:
    """Validate command arguments before executing."""
    if not args or not all(isinstance(arg, str) and arg for arg in args):
        raise ValueError("Command args must be a non-empty list of strings.")


def run_command(
    args: list[str],
    *,
    cwd: Optional[Path] = None,
) -> subprocess.CompletedProcess[str]:
    """Run a command and capture output without raising on failure."""
    validate_command_args(args)
    logger.debug(f"Running command: {_escape_braces(repr(args))}", component="system")
    result = subprocess.run(
        args,
        cwd=cwd,
        capture_output=True,
        text=True,
        check=False,
    )
    logger.debug(f"Command return code: {result.returncode}", component="system")
    if result.stderr.strip():
        logger.debug(
            f"Command stderr: {_escape_braces(repr(result.stderr.strip()))}",
            component="system",
        )
    return result


def run_systemctl_command(args: list[str]) -> subprocess.CompletedProcess[str]:
    """Run systemctl command."""
    if not shutil.which("systemctl"):
        logger.warning(
            f"systemctl command failed: {' '.join(args)} (systemctl missing)",
            component="system",
        )
        return subprocess.CompletedProcess(
            args=["systemctl"], returncode=1, stdout="", stderr="systemctl missing"
        )
    return run_command(["systemctl", *args])


def restart_service(service: str) -> subprocess.CompletedProcess[str]:
    """Restart a systemd unit."""
    return run_systemctl_command(["restart", service])


def reboot_system(delay_seconds: float = 0) -> subprocess.CompletedProcess[str]:
    """Reboot the machine after an optional delay."""
    if delay_seconds:
        time.sleep(delay_seconds)
    return run_systemctl_command(["reboot"])


def poweroff_system(delay_seconds: float = 0) -> subprocess.CompletedProcess[str]:
    """Power off the machine after an optional delay."""
    if delay_seconds:
        time.sleep(delay_seconds)
    return run_systemctl_command(["poweroff"])


def sync() -> None:
    """Flush filesystem buffers."""
    os.sync()
