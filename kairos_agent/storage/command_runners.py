"""Command execution helpers for storage and boot operations."""

from __future__ import annotations

import subprocess

from kairos_agent.logging import LoggerFactory
from kairos_agent.storage.exceptions import CommandError


log = LoggerFactory.for_storage()


def _escape_braces(text: str) -> str:
    """Escape curly braces for loguru formatting."""
    return text.replace("{", "{{").replace("}", "}}")


def run_checked_command(command: list[str], input_text: str | None = None) -> str:
    """Run a command and raise CommandError if it fails."""
    log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(
            command,
            input=input_text,
            text=True,
            capture_output=True,
        )
    except FileNotFoundError as error:
        raise CommandError(command, 127, str(error)) from error
    if result.stdout:
        log.bind(tags=["storage", "command-output"]).trace(
            _escape_braces(result.stdout.strip())
        )
    if result.returncode != 0:
        stderr = result.stderr.strip()
        stdout = result.stdout.strip()
        message = stderr or stdout or "Command failed"
        raise CommandError(command, result.returncode, message)
    return result.stdout
