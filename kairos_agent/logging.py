from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(os.environ.get("KAIROS_AGENT_LOG_DIR", "/var/log/kairos"))


def _should_log_command_output(record) -> bool:
    """Keep raw command output off the console unless tracing."""
    tags = record["extra"].get("tags", [])

    if record["level"].no >= logger.level("WARNING").no:
        return True

    if "command-output" in tags:
        return record["level"].no <= logger.level("TRACE").no

    return True


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """
    Setup multi-tier logging with separate sinks for different log levels.

    Logging Tiers:
    - CRITICAL/ERROR: Failed transitions, unrecoverable errors
    - SUCCESS/INFO: Install/upgrade/reset steps, boot entry and extension changes
    - DEBUG: Command execution, mount operations
    - TRACE: Raw command output

    Log Files:
    - agent.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when --debug is enabled (3 day retention)
    - structured.jsonl: Structured JSON logs for analysis (7 day retention)

    When the log directory cannot be created (read-only live media) only the
    console sink is installed.

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Custom log directory (defaults to /var/log/kairos)
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "agent"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    # SINK 1: Console (stderr)
    logger.add(
        sys.stderr,
        level=console_level,
        backtrace=False,
        diagnose=False,
        filter=_should_log_command_output,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <12}</cyan> | "
            "<blue>{extra[job_id]: <18}</blue> | "
            "{message}"
        ),
    )

    log_dir = log_dir or DEFAULT_LOG_DIR
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        logger.warning(f"File logging disabled, cannot create {log_dir}: {error}")
        return logger

    # SINK 2: Agent Log - Important events only (INFO+)
    logger.add(
        log_dir / "agent.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        backtrace=False,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <12} | "
            "{extra[job_id]: <18} | "
            "{message}"
        ),
    )

    # SINK 3: Debug Log - Detailed diagnostics
    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="TRACE" if trace else "DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            backtrace=True,
            diagnose=True,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <12} | "
                "{extra[job_id]: <18} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    # SINK 4: Structured JSON Log - For analysis tools (INFO+)
    logger.add(
        log_dir / "structured.jsonl",
        level="INFO",
        rotation="10 MB",
        retention="7 days",
        compression="zip",
        serialize=True,
        format="{message}",
    )

    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """
    Get a logger with bound context.

    Args:
        job_id: Job identifier for tracking operations
        tags: Tags for filtering (e.g., ["upgrade", "storage"])
        source: Source component (e.g., "install", "sysext")

    Returns:
        Logger with bound context
    """
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


@contextmanager
def operation_context(operation: str, **details):
    """
    Context manager for tracking a lifecycle operation with automatic timing.

    Logs operation start, completion and failure with duration tracking.

    Args:
        operation: Operation name (e.g., "install", "upgrade", "reset")
        **details: Operation-specific details to log

    Yields:
        Logger bound with job_id and operation context

    Example:
        with operation_context("upgrade", source="oci://quay.io/kairos/core") as log:
            log.debug("Mounting state partition")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])

        log.info(f"{operation.capitalize()} started", **details)

        try:
            yield log
            duration = time.time() - start_time
            log.success(
                f"{operation.capitalize()} completed", duration_seconds=round(duration, 2)
            )
        except Exception as e:
            duration = time.time() - start_time
            log.error(
                f"{operation.capitalize()} failed",
                error=str(e),
                error_type=type(e).__name__,
                duration_seconds=round(duration, 2),
            )
            raise


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.

    Each factory method returns a logger pre-configured with appropriate
    source and tags for the domain.
    """

    @staticmethod
    def for_install(job_id: str | None = None) -> Logger:
        """Logger for install operations."""
        if job_id is None:
            job_id = f"install-{uuid.uuid4().hex[:8]}"
        return logger.bind(job_id=job_id, source="install", tags=["install", "storage"])

    @staticmethod
    def for_upgrade(job_id: str | None = None) -> Logger:
        """Logger for upgrade operations."""
        if job_id is None:
            job_id = f"upgrade-{uuid.uuid4().hex[:8]}"
        return logger.bind(job_id=job_id, source="upgrade", tags=["upgrade", "storage"])

    @staticmethod
    def for_reset(job_id: str | None = None) -> Logger:
        """Logger for reset operations."""
        if job_id is None:
            job_id = f"reset-{uuid.uuid4().hex[:8]}"
        return logger.bind(job_id=job_id, source="reset", tags=["reset", "storage"])

    @staticmethod
    def for_storage() -> Logger:
        """Logger for mounts, partitions and image deployment."""
        return logger.bind(source="storage", tags=["storage"])

    @staticmethod
    def for_hooks() -> Logger:
        """Logger for lifecycle hook execution."""
        return logger.bind(source="hooks", tags=["hooks"])

    @staticmethod
    def for_bootentries() -> Logger:
        """Logger for GRUB and systemd-boot entry handling."""
        return logger.bind(source="bootentries", tags=["boot"])

    @staticmethod
    def for_sysext() -> Logger:
        """Logger for system extension management."""
        return logger.bind(source="sysext", tags=["sysext"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for system operations (startup, shutdown, config)."""
        return logger.bind(source="system", tags=["system"])
