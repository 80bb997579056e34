"""System extension (systemd-sysext) management.

Module Purpose:
    Installed extensions live in a pool directory. Enabling one for a boot
    role symlinks it into that role's directory, which the initramfs merges
    on the next boot of that role. Enabling with ``now`` also links it into
    the runtime directory and restarts systemd-sysext, but only when the
    running system booted into that role (or the role is ``common``).

Functions:
    - SysextManager.list(): Extensions of a role, or every installed one
    - SysextManager.get(): First extension whose name matches a pattern
    - SysextManager.install(): Fetch an extension from file, http(s) or OCI
    - SysextManager.enable() / disable(): Link or unlink for a role
    - SysextManager.remove(): Unlink everywhere and delete from the pool

Example:
    >>> manager = SysextManager(paths)
    >>> manager.install("https://example.org/tools.raw")
    >>> manager.enable("tools.raw", "active", now=True)
"""

from __future__ import annotations

import os
import re
import shutil
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from kairos_agent import constants, system_utils
from kairos_agent.boot.detect import BootRoleDetector
from kairos_agent.config.settings import Paths
from kairos_agent.domain.models import SysExtension, normalize_image_reference
from kairos_agent.logging import LoggerFactory
from kairos_agent.services.download import download_file, extract_oci_image
from kairos_agent.storage.exceptions import AgentError, SysExtError, SysExtNotFoundError


log = LoggerFactory.for_sysext()

EXTENSION_SUFFIX = ".raw"


class SysextManager:
    """Install and assign system extensions to boot roles."""

    def __init__(self, paths: Paths, detector: Optional[BootRoleDetector] = None):
        self.paths = paths
        self.detector = detector or BootRoleDetector(paths)

    @property
    def pool_dir(self) -> Path:
        return Path(self.paths.sysext_dir)

    @property
    def runtime_dir(self) -> Path:
        return Path(self.paths.sysext_runtime_dir)

    def role_dir(self, role: str) -> Path:
        if role not in constants.SYSEXT_ROLES:
            raise SysExtError(f"boot state {role} not supported")
        return self.pool_dir / role

    def _list_dir(self, directory: Path) -> list[SysExtension]:
        directory.mkdir(parents=True, exist_ok=True)
        extensions = []
        with os.scandir(directory) as entries:
            for entry in entries:
                if entry.is_dir(follow_symlinks=False):
                    continue
                if entry.name.endswith(EXTENSION_SUFFIX):
                    extensions.append(SysExtension(name=entry.name, location=entry.path))
        return sorted(extensions, key=lambda ext: ext.name)

    def list(self, role: str = "") -> list[SysExtension]:
        """Extensions enabled for ``role``; every installed one when no role applies."""
        if role in constants.SYSEXT_ROLES:
            log.debug(f"Listing {role} system extensions")
            return self._list_dir(self.role_dir(role))
        log.debug("Listing all system extensions (enabled or not)")
        return self._list_dir(self.pool_dir)

    def get(self, pattern: str, role: str = "") -> SysExtension:
        regex = re.compile(pattern)
        for extension in self.list(role):
            if regex.search(extension.name):
                return extension
        raise SysExtNotFoundError(pattern)

    # ==========================================================================
    # Install
    # ==========================================================================

    def install(self, uri: str) -> Path:
        """Fetch an extension into the pool and return its path there."""
        parsed = urlparse(uri)
        self.pool_dir.mkdir(parents=True, exist_ok=True)
        log.info(f"Installing system extension from {uri}")

        if parsed.scheme == "file":
            source = Path(parsed.netloc + parsed.path)
            if not source.is_file():
                raise SysExtError(f"failed to open file {source}")
            target = self.pool_dir / source.name
            shutil.copyfile(source, target)
        elif parsed.scheme in ("http", "https"):
            target = download_file(uri, self.pool_dir)
        elif parsed.scheme in ("oci", "docker", "container"):
            reference = uri.split("://", 1)[1]
            if not reference:
                raise SysExtError(f"invalid image reference {uri}")
            target = self._install_from_image(normalize_image_reference(reference))
        else:
            raise SysExtError(f"invalid URI reference {uri}")

        log.info(f"System extension {target.name} installed")
        return target

    def _install_from_image(self, reference: str) -> Path:
        """Extract an image and move the ``.raw`` files it carries into the pool."""
        work_dir = self.paths.make_temp_dir("kairos-sysext-")
        try:
            extract_oci_image(reference, work_dir)
            raws = sorted(Path(work_dir).rglob(f"*{EXTENSION_SUFFIX}"))
            if not raws:
                raise SysExtError(f"image {reference} does not contain a system extension")
            for raw in raws:
                shutil.move(str(raw), self.pool_dir / raw.name)
            return self.pool_dir / raws[0].name
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

    # ==========================================================================
    # Enable / disable / remove
    # ==========================================================================

    def _applies_now(self, role: str) -> bool:
        if role == constants.SYSEXT_COMMON_ROLE:
            return True
        return self.detector.current_role().value == role

    def _refresh(self) -> None:
        result = system_utils.restart_service(constants.SYSEXT_SERVICE)
        if result.returncode != 0:
            raise SysExtError(
                f"failed to restart {constants.SYSEXT_SERVICE}: {result.stderr.strip()}"
            )

    def enable(self, name: str, role: str, now: bool = False) -> None:
        extension = self.get(name)
        target_dir = self.role_dir(role)
        target_dir.mkdir(parents=True, exist_ok=True)
        link = target_dir / extension.name

        if link.is_symlink() and os.readlink(link) == extension.location:
            log.info(f"System extension {extension.name} is already enabled in {role}")
        else:
            if link.is_symlink() or link.exists():
                link.unlink()
            link.symlink_to(extension.location)
            log.info(f"System extension {extension.name} enabled in {role}")

        if not now:
            return
        if not self._applies_now(role):
            log.info(
                f"System extension {extension.name} will be merged on the next {role} boot"
            )
            return
        self.runtime_dir.mkdir(parents=True, exist_ok=True)
        runtime_link = self.runtime_dir / extension.name
        if not runtime_link.is_symlink():
            runtime_link.symlink_to(extension.location)
        self._refresh()
        log.info(f"System extension {extension.name} merged")

    def disable(self, name: str, role: str, now: bool = False) -> None:
        self.role_dir(role)
        try:
            extension = self.get(name, role)
        except SysExtNotFoundError:
            log.info(f"System extension {name} is not enabled in {role}")
            return

        Path(extension.location).unlink()
        log.info(f"System extension {extension.name} disabled in {role}")

        if not now:
            return
        if not self._applies_now(role):
            log.info(f"System extension {extension.name} stays merged until reboot")
            return
        runtime_link = self.runtime_dir / extension.name
        if runtime_link.is_symlink() or runtime_link.exists():
            runtime_link.unlink()
            self._refresh()

    def remove(self, name: str, now: bool = False) -> None:
        """Disable an extension everywhere and delete it from the pool."""
        try:
            installed = self.get(name)
        except SysExtNotFoundError:
            log.info(f"System extension {name} is not installed")
            return

        for role in constants.SYSEXT_ROLES:
            link = self.role_dir(role) / installed.name
            if link.is_symlink() or link.exists():
                link.unlink()
                log.info(f"System extension {installed.name} disabled from {role}")

        runtime_link = self.runtime_dir / installed.name
        if runtime_link.is_symlink():
            runtime_link.unlink()
            if now:
                try:
                    self._refresh()
                except AgentError as e:
                    log.warning(f"Could not refresh merged extensions: {e}")

        Path(installed.location).unlink()
        log.info(f"System extension {installed.name} removed")
