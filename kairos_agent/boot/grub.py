"""GRUB boot entries, persistent variables and bootloader installation."""

from __future__ import annotations

import os
import platform
import re
import shutil
from pathlib import Path
from typing import Optional

from kairos_agent import constants
from kairos_agent.config.settings import Paths
from kairos_agent.logging import LoggerFactory
from kairos_agent.storage.command_runners import run_checked_command
from kairos_agent.storage.exceptions import BootEntryError, DeploymentError, EntryNotFoundError


log = LoggerFactory.for_bootentries()

GRUBENV_HEADER = "# GRUB Environment Block\n"
GRUBENV_BLOCK_SIZE = 1024
ENTRY_ID_PATTERN = re.compile(r"--id\s([A-z0-9]*)\s{")

DEFAULT_TTY = "tty1"
GRUB_MODULES = ["loopback.mod", "squash4.mod", "xzio.mod", "gzio.mod", "regexp.mod"]
GRUB_FONTS = ["ascii.pf2", "euro.pf2", "unicode.pf2"]
GRUB_INSTALL_CANDIDATES = [
    "usr/sbin/grub2-install",
    "usr/bin/grub2-install",
    "sbin/grub2-install",
    "usr/sbin/grub-install",
    "usr/bin/grub-install",
    "sbin/grub-install",
]


# ==============================================================================
# grubenv
# ==============================================================================


def read_persistent_variables(grubenv: str | Path) -> dict[str, str]:
    """Parse a grubenv block, skipping comments and padding."""
    variables: dict[str, str] = {}
    for line in Path(grubenv).read_text(encoding="utf-8").split("\n"):
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            raise BootEntryError(f"invalid format for {line}")
        variables[key] = value
    return variables


def set_persistent_variables(grubenv: str | Path, variables: dict[str, str]) -> None:
    """Merge ``variables`` into a grubenv block and write it back.

    The file is rewritten with sorted keys, empty values dropped and padded
    with ``#`` to a whole number of 1 KiB blocks, the layout grub-editenv
    produces.
    """
    path = Path(grubenv)
    merged: dict[str, str] = {}
    if path.exists():
        merged = read_persistent_variables(path)
        for key in variables:
            if key in merged:
                log.warning(f"Overriding grubenv variable {key} in {path}")
    merged.update(variables)

    content = GRUBENV_HEADER
    for key in sorted(merged):
        if merged[key]:
            content += f"{key}={merged[key]}\n"
    remainder = len(content.encode("utf-8")) % GRUBENV_BLOCK_SIZE
    if remainder:
        content += "#" * (GRUBENV_BLOCK_SIZE - remainder)

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")


# ==============================================================================
# Entries
# ==============================================================================


def list_entries(paths: Paths) -> list[str]:
    """Menu entry ids found in the known GRUB configs, first seen order."""
    entries: list[str] = []
    found_any = False
    for config in paths.grub_configs:
        try:
            content = Path(config).read_text(encoding="utf-8", errors="replace")
        except OSError:
            log.debug(f"Skipping missing grub config {config}")
            continue
        found_any = True
        for entry in ENTRY_ID_PATTERN.findall(content):
            if entry not in entries:
                entries.append(entry)
    if not found_any:
        log.warning(f"No GRUB configuration file was found: {', '.join(paths.grub_configs)}")
    return entries


def entry_in_list(entry: str, entries: list[str]) -> None:
    if entry not in entries:
        log.error(f"entry {entry} does not exist")
        log.debug(f"entries: {entries}")
        raise EntryNotFoundError(entry)


def select_entry(paths: Paths, entry: str) -> None:
    """Make ``entry`` the next GRUB boot target."""
    entry_in_list(entry, list_entries(paths))
    log.info(f"Setting default boot entry to {entry}")
    set_persistent_variables(paths.oem_grubenv, {"next_entry": entry})
    log.info(f"Default boot entry set to {entry}")


# ==============================================================================
# Default menu entry branding
# ==============================================================================


def load_env_file(path: str | Path) -> dict[str, str]:
    values: dict[str, str] = {}
    for line in Path(path).read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        values[key.strip()] = value.strip().strip('"').strip("'")
    return values


def release_grub_entry_name(image_root: str) -> str:
    for name in ("kairos-release", "os-release"):
        release_file = Path(image_root) / "etc" / name
        try:
            release = load_env_file(release_file)
        except OSError as e:
            log.debug(f"Could not load {release_file}: {e}")
            continue
        return release.get("GRUB_ENTRY_NAME", "")
    log.warning(f"No kairos-release or os-release file in {image_root}")
    return ""


def set_default_grub_entry(state_mount: str, image_root: str, default_entry: str = "") -> None:
    """Write ``default_menu_entry`` for the State partition's GRUB.

    Without an explicit name the deployed image's ``GRUB_ENTRY_NAME`` is used,
    read from ``etc/kairos-release`` or else ``etc/os-release``; with neither,
    the GRUB config keeps its own default.
    """
    if not default_entry:
        default_entry = release_grub_entry_name(image_root)
        if not default_entry:
            return
    log.info(f"Setting default grub entry to {default_entry}")
    set_persistent_variables(
        Path(state_mount) / constants.GRUB_OEM_ENV, {"default_menu_entry": default_entry}
    )


# ==============================================================================
# Bootloader installation
# ==============================================================================


def grub_arch() -> str:
    machine = platform.machine().lower()
    return "arm64" if machine in ("aarch64", "arm64") else "x86_64"


def fallback_efi_name(arch: str) -> str:
    return "bootaa64.efi" if arch == "arm64" else "bootx64.efi"


def _shim_candidates(arch: str) -> list[str]:
    short = "aa64" if arch == "arm64" else "x64"
    return [
        f"usr/share/efi/{arch}/shim.efi",
        f"usr/lib/shim/shim{short}.efi.signed",
        f"usr/lib/shim/shim{short}.efi",
        f"boot/efi/EFI/boot/boot{short}.efi",
    ]


def _grub_efi_candidates(arch: str) -> list[str]:
    short = "aa64" if arch == "arm64" else "x64"
    return [
        f"usr/share/efi/{arch}/grub.efi",
        f"usr/lib/grub/{arch}-efi-signed/grub{short}.efi.signed",
        f"usr/share/grub2/{arch}-efi/grub.efi",
        f"usr/lib/grub/{arch}-efi/monolithic/grub{short}.efi",
    ]


def _find_files(root: Path, name: str, arch: str) -> Optional[Path]:
    for dirpath, _, filenames in os.walk(root):
        if name in filenames and arch in dirpath:
            return Path(dirpath) / name
    return None


def _copy_first(root: Path, candidates: list[str], target_dir: Path, kind: str) -> bytes:
    for candidate in candidates:
        source = root / candidate
        if not source.is_file():
            log.debug(f"Skip copying {source}: not found")
            continue
        name = source.name.removesuffix(".signed")
        target_dir.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, target_dir / name)
        return source.read_bytes()
    raise DeploymentError(f"could not find any {kind} file to copy")


def _current_tty() -> str:
    try:
        return os.readlink("/dev/fd/0").strip().removeprefix("/dev/")
    except OSError:
        log.warning("Failed to find current tty, leaving it unset")
        return ""


def install_grub(
    paths: Paths,
    target: str,
    root_dir: str,
    boot_dir: str,
    grub_conf: str,
    tty: str = "",
    efi: bool = True,
    state_label: str = constants.STATE_LABEL,
) -> None:
    """Install GRUB for the deployed root in ``root_dir``.

    BIOS installs run grub-install against ``target``. Both modes copy the
    image's grub.cfg into ``boot_dir``; EFI installs additionally copy the
    modules, shim and grub binaries onto the EFI partition.
    """
    root = Path(root_dir)
    arch = grub_arch()
    system_grub = "grub2"

    if not efi:
        log.info("Installing GRUB..")
        grub_dir = next(
            (
                root / sub
                for sub in ("usr/lib/grub/i386-pc", "usr/share/grub/i386-pc",
                            "usr/lib/grub2/i386-pc", "usr/share/grub2/i386-pc")
                if (root / sub).is_dir()
            ),
            None,
        )
        if grub_dir is None:
            raise DeploymentError(f"failed to find grub dir under {root_dir}")
        grub_bin = next(
            (str(root / cand) for cand in GRUB_INSTALL_CANDIDATES if (root / cand).exists()),
            "",
        )
        if not grub_bin:
            raise DeploymentError("grub binary not found in path")
        run_checked_command(
            [
                grub_bin,
                f"--directory={grub_dir}",
                f"--boot-directory={boot_dir}",
                "--target=i386-pc",
                "-v",
                target,
            ]
        )
        log.info(f"Grub install to device {target} complete")
        if (Path(boot_dir) / "grub").is_dir():
            system_grub = "grub"

    config_source = root / grub_conf.lstrip("/")
    log.info(f"Using grub config dir {config_source}")
    try:
        grub_cfg = config_source.read_text(encoding="utf-8")
    except OSError as e:
        raise DeploymentError(f"failed reading grub config file {config_source}: {e}") from e

    efi_module_dir = Path(boot_dir) / system_grub / f"{arch}-efi"
    efi_module_dir.mkdir(parents=True, exist_ok=True)

    tty = tty or _current_tty()
    if tty and tty not in ("console", DEFAULT_TTY) and Path(f"/dev/{tty}").exists():
        log.info(f"Adding extra tty ({tty}) to grub.cfg")
        default_console = f"console={DEFAULT_TTY}"
        grub_cfg = grub_cfg.replace(default_console, f"{default_console} console={tty}")

    config_target = Path(boot_dir) / system_grub / "grub.cfg"
    log.info(f"Copying grub contents from {config_source} to {config_target}")
    config_target.write_text(grub_cfg, encoding="utf-8")

    if not efi:
        return

    log.info(f"Generating grub files for efi on {target}")
    found_module = False
    for module in GRUB_MODULES:
        source = _find_files(root, module, arch)
        if source is not None:
            shutil.copyfile(source, efi_module_dir / module)
            found_module = True
    if not found_module:
        raise DeploymentError(f"did not find grub modules under {root_dir}")

    for font in GRUB_FONTS:
        source = _find_files(root, font, arch)
        if source is None:
            log.warning(f"Did not find grub font {font} under {root_dir}")
            continue
        (efi_module_dir / "fonts").mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, efi_module_dir / "fonts" / font)

    efi_boot = Path(paths.efi_dir) / "EFI" / "boot"
    shim = _copy_first(root, _shim_candidates(arch), efi_boot, "shim")
    # Booting through the fallback name avoids creating NVRAM entries
    (efi_boot / fallback_efi_name(arch)).write_bytes(shim)
    _copy_first(root, _grub_efi_candidates(arch), efi_boot, "grub efi")
    (efi_boot / "grub.cfg").write_text(
        f"search --no-floppy --label --set=root {state_label}\n"
        f"set prefix=($root)/{system_grub}\n"
        f"configfile ($root)/{system_grub}/grub.cfg",
        encoding="utf-8",
    )
