"""Fetching remote artifacts: HTTP downloads and OCI image extraction.

HTTP transfers use aiohttp and are driven synchronously with
``asyncio.run`` since every caller runs one linear pipeline. Container images
are flattened with ``crane export`` piped into ``tar``.
"""

from __future__ import annotations

import asyncio
import platform
import subprocess
from pathlib import Path

import aiohttp

from kairos_agent.domain.models import normalize_image_reference
from kairos_agent.logging import LoggerFactory
from kairos_agent.storage.exceptions import DeploymentError


log = LoggerFactory.for_storage()

CHUNK_SIZE = 1024 * 1024
DEFAULT_TIMEOUT_SECONDS = 3600

_ARCH_MAP = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
}


class DownloadError(DeploymentError):
    """An HTTP transfer did not complete."""


def default_platform() -> str:
    """OCI platform string for the running machine, e.g. ``linux/amd64``."""
    machine = platform.machine().lower()
    return f"linux/{_ARCH_MAP.get(machine, machine)}"


async def _fetch(url: str, destination: Path, timeout_seconds: int) -> int:
    timeout = aiohttp.ClientTimeout(total=timeout_seconds)
    written = 0
    async with aiohttp.ClientSession(timeout=timeout) as session:
        try:
            async with session.get(url) as resp:
                if resp.status != 200:
                    raise DownloadError(f"failed downloading {url}: HTTP {resp.status}")
                with destination.open("wb") as handle:
                    async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
                        handle.write(chunk)
                        written += len(chunk)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            raise DownloadError(f"failed downloading {url}: {e}") from e
    return written


def download_file(
    url: str, destination: str | Path, timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
) -> Path:
    """Download ``url`` into ``destination``.

    When ``destination`` is an existing directory the file keeps the URL's
    base name. A partially written file is removed on failure.
    """
    target = Path(destination)
    if target.is_dir():
        name = url.rstrip("/").rsplit("/", 1)[-1].split("?", 1)[0]
        if not name:
            raise DownloadError(f"cannot derive a file name from {url}")
        target = target / name
    target.parent.mkdir(parents=True, exist_ok=True)

    log.info(f"Downloading {url} to {target}")
    try:
        size = asyncio.run(_fetch(url, target, timeout_seconds))
    except DownloadError:
        target.unlink(missing_ok=True)
        raise
    log.debug(f"Downloaded {size} bytes from {url}")
    return target


def extract_oci_image(image: str, destination: str | Path, image_platform: str = "") -> None:
    """Flatten a container image's filesystem into ``destination``."""
    reference = normalize_image_reference(image)
    image_platform = image_platform or default_platform()
    Path(destination).mkdir(parents=True, exist_ok=True)

    crane_cmd = ["crane", "export", "--platform", image_platform, reference, "-"]
    tar_cmd = ["tar", "-xf", "-", "-C", str(destination)]
    log.info(f"Extracting OCI image {reference} ({image_platform}) to {destination}")
    log.debug(f"Running: {' '.join(crane_cmd)} | {' '.join(tar_cmd)}")

    try:
        crane_proc = subprocess.Popen(
            crane_cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE
        )
    except FileNotFoundError as e:
        raise DeploymentError(f"crane not available: {e}") from e
    try:
        tar_proc = subprocess.Popen(
            tar_cmd,
            stdin=crane_proc.stdout,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
        )
    except FileNotFoundError as e:
        crane_proc.kill()
        crane_proc.wait()
        raise DeploymentError(f"tar not available: {e}") from e
    # Let crane see SIGPIPE if tar exits early
    crane_proc.stdout.close()
    _, tar_stderr = tar_proc.communicate()
    crane_stderr = crane_proc.stderr.read() if crane_proc.stderr else b""
    crane_proc.wait()

    if crane_proc.returncode != 0:
        reason = crane_stderr.decode(errors="replace").strip() or "unknown error"
        raise DeploymentError(
            f"crane export failed with code {crane_proc.returncode}: {reason}"
        )
    if tar_proc.returncode != 0:
        reason = tar_stderr.decode(errors="replace").strip() or "unknown error"
        raise DeploymentError(f"tar extract failed with code {tar_proc.returncode}: {reason}")
    log.info("OCI image extraction complete")


def image_digest(image: str) -> str:
    """Digest of a remote image, or an empty string when it cannot be resolved."""
    reference = normalize_image_reference(image)
    try:
        result = subprocess.run(
            ["crane", "digest", reference], capture_output=True, text=True, check=False
        )
    except FileNotFoundError:
        return ""
    if result.returncode != 0:
        log.warning(f"Could not resolve digest for {reference}")
        return ""
    return result.stdout.strip()
