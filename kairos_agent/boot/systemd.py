"""systemd-boot entries for UKI installations.

Entry files are named ``<role>[_<differentiator>][+N[-M]].conf``. Users see
them as ``cos``, ``fallback``, ``recovery`` and ``statereset`` (plus the
differentiator), and ``active`` is accepted as an alias of ``cos``. The
``+N[-M]`` boot counter is hidden from users but must be kept when an entry
is written back to ``loader.conf``.
"""

from __future__ import annotations

import os
import re
import shutil
from dataclasses import dataclass
from pathlib import Path

from kairos_agent import constants
from kairos_agent.logging import LoggerFactory
from kairos_agent.storage.exceptions import BootEntryError, EntryNotFoundError, MountError
from kairos_agent.storage.mount import Mounter


log = LoggerFactory.for_bootentries()

ASSESSMENT_PATTERN = re.compile(r"\+\d+(-\d+)?$")
CONF_SUFFIX = ".conf"
LOADER_CONF = "loader.conf"

ROLE_ACTIVE = "active"
ROLE_PASSIVE = "passive"
ROLE_RECOVERY = "recovery"
ROLE_STATERESET = "statereset"
# Role of freshly dumped artifacts before they are rotated into place
UNASSIGNED_ROLE = "norole"

PASSIVE_BOOT_SUFFIX = " (fallback)"
RECOVERY_BOOT_SUFFIX = " recovery"
STATERESET_BOOT_SUFFIX = " state reset (auto)"

SORT_KEYS = {
    ROLE_ACTIVE: "0001",
    ROLE_PASSIVE: "0002",
    ROLE_RECOVERY: "0003",
    ROLE_STATERESET: "0004",
}
DEFAULT_SORT_KEY = "0010"


# ==============================================================================
# Role codec
# ==============================================================================


@dataclass(frozen=True)
class DecodedConf:
    """Parts of an entry file name.

    ``role`` is empty for files that do not start with a known role.
    """

    role: str
    differentiator: str
    assessment: str


class RoleCodec:
    """Two way mapping between entry file names and menu names."""

    # File role -> menu name
    DISPLAY_NAMES = {
        ROLE_ACTIVE: "cos",
        ROLE_PASSIVE: "fallback",
        ROLE_RECOVERY: "recovery",
        ROLE_STATERESET: "statereset",
    }
    # Menu name -> file role, checked in order
    ROLES_BY_NAME = [
        ("cos", ROLE_ACTIVE),
        ("active", ROLE_ACTIVE),
        ("fallback", ROLE_PASSIVE),
        ("recovery", ROLE_RECOVERY),
        ("statereset", ROLE_STATERESET),
    ]

    def encode(self, role: str, differentiator: str = "") -> str:
        """File name prefix (no counter, no extension) for a role."""
        if differentiator:
            return f"{role}_{differentiator}"
        return role

    def decode(self, filename: str) -> DecodedConf:
        if not filename.endswith(CONF_SUFFIX):
            raise BootEntryError(f"unknown systemd-boot conf: {filename}")
        base = filename[: -len(CONF_SUFFIX)]
        assessment = ""
        match = ASSESSMENT_PATTERN.search(base)
        if match:
            assessment = match.group(0)
            base = base[: match.start()]
        for role in self.DISPLAY_NAMES:
            if base.startswith(role):
                return DecodedConf(role, base[len(role):].strip("_"), assessment)
        return DecodedConf("", base, assessment)

    def display_name(self, filename: str) -> str:
        decoded = self.decode(filename)
        if not decoded.role:
            return decoded.differentiator.replace("_", " ")
        name = self.DISPLAY_NAMES[decoded.role]
        if decoded.differentiator:
            name = f"{name} {decoded.differentiator}"
        return name

    def conf_prefix(self, name: str) -> str:
        for display, role in self.ROLES_BY_NAME:
            if name.startswith(display):
                differentiator = ""
                if name != display:
                    differentiator = name.removeprefix(f"{display} ")
                return self.encode(role, differentiator)
        return name.replace(" ", "_")


_codec = RoleCodec()


def conf_to_display_name(conf: str) -> str:
    """``passive_foo+2-1.conf`` -> ``fallback foo``."""
    return _codec.display_name(conf)


def display_name_to_conf_prefix(name: str) -> str:
    """``fallback foo`` -> ``passive_foo``; the boot counter is not restored."""
    return _codec.conf_prefix(name)


# ==============================================================================
# .conf files
# ==============================================================================


def read_conf(path: str | Path) -> dict[str, str]:
    """Read a ``key value`` file; keys without a value map to ''."""
    conf: dict[str, str] = {}
    for line in Path(path).read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        key, _, value = line.partition(" ")
        conf[key] = value.strip()
    return conf


def write_conf(path: str | Path, conf: dict[str, str]) -> None:
    lines = [f"{key} {value}" if value else key for key, value in conf.items()]
    Path(path).write_text("\n".join(lines) + "\n", encoding="utf-8")


def _entries_dir(efi_dir: str | Path) -> Path:
    return Path(efi_dir) / "loader" / "entries"


def _conf_files(directory: Path) -> list[Path]:
    files: list[Path] = []
    for dirpath, dirnames, filenames in os.walk(directory):
        dirnames.sort()
        for name in sorted(filenames):
            if name.endswith(CONF_SUFFIX):
                files.append(Path(dirpath) / name)
    return files


# ==============================================================================
# Listing and selection
# ==============================================================================


def list_entries(efi_dir: str | Path) -> list[str]:
    """Menu names of every entry under ``<efi>/loader/entries``."""
    directory = _entries_dir(efi_dir)
    if not directory.is_dir():
        log.debug(f"No systemd-boot entries directory at {directory}")
        return []
    return [conf_to_display_name(path.name) for path in _conf_files(directory)]


def find_conf_file(efi_dir: str | Path, prefix: str) -> str:
    """Entry file whose name without the boot counter equals ``prefix``."""
    for path in _conf_files(_entries_dir(efi_dir)):
        base = path.name[: -len(CONF_SUFFIX)]
        if ASSESSMENT_PATTERN.sub("", base) == prefix:
            return path.name
    raise BootEntryError(f"no systemd-boot conf found for {prefix}")


def select_entry(efi_dir: str | Path, entry: str, mounter: Mounter | None = None) -> str:
    """Set the ``loader.conf`` default to ``entry``; returns the file chosen.

    With exactly as many entries as the stock menu, the listed names are
    treated as the stock menu so ``cos``/``fallback`` select entries whose
    files carry a differentiator.
    """
    mounter = mounter or Mounter()
    log.info(f"Setting default boot entry to {entry}")
    original_entries = list_entries(efi_dir)
    entries = original_entries
    if len(entries) == len(constants.UKI_DEFAULT_MENU_ENTRIES):
        entries = list(constants.UKI_DEFAULT_MENU_ENTRIES)

    if entry not in entries and not entry.startswith("active"):
        log.error(f"entry {entry} does not exist")
        log.debug(f"entries: {entries}")
        raise EntryNotFoundError(entry)

    mounter.remount(str(efi_dir), read_only=False)
    try:
        resolved = entry
        if original_entries != entries:
            if resolved.startswith("active"):
                resolved = "cos"
            for candidate in original_entries:
                if candidate.startswith(resolved):
                    resolved = candidate
        conf_file = find_conf_file(efi_dir, display_name_to_conf_prefix(resolved))

        loader_conf = Path(efi_dir) / "loader" / LOADER_CONF
        if not loader_conf.exists():
            raise BootEntryError(f"could not find {loader_conf}")
        loader = read_conf(loader_conf)
        loader["default"] = conf_file
        write_conf(loader_conf, loader)
    finally:
        try:
            mounter.remount(str(efi_dir), read_only=True)
        except MountError as e:
            log.error(f"Could not remount EFI partition as RO: {e}")

    log.info(f"Default boot entry set to {entry}")
    return conf_file


# ==============================================================================
# Artifact maintenance
# ==============================================================================


def base_boot_title(title: str) -> str:
    for suffix in (RECOVERY_BOOT_SUFFIX, PASSIVE_BOOT_SUFFIX, STATERESET_BOOT_SUFFIX):
        if title.endswith(suffix):
            return title[: -len(suffix)]
    return title


def boot_title_for_role(role: str, title: str) -> str:
    base = base_boot_title(title)
    if role == ROLE_ACTIVE:
        return base
    if role == ROLE_PASSIVE:
        return base + PASSIVE_BOOT_SUFFIX
    if role == ROLE_RECOVERY:
        return base + RECOVERY_BOOT_SUFFIX
    if role == ROLE_STATERESET:
        return base + STATERESET_BOOT_SUFFIX
    raise BootEntryError("invalid role")


def replace_role_in_key(path: str | Path, key: str, old_role: str, new_role: str) -> None:
    conf = read_conf(path)
    if key not in conf:
        raise BootEntryError(f"no {key} entry in .conf file")
    conf[key] = conf[key].replace(old_role, new_role)
    write_conf(path, conf)


def replace_conf_title(path: str | Path, role: str) -> None:
    conf = read_conf(path)
    if not conf.get("title"):
        raise BootEntryError("no title in .conf file")
    conf["title"] = boot_title_for_role(role, conf["title"])
    write_conf(path, conf)


def overwrite_artifact_set_role(directory: str | Path, old_role: str, new_role: str) -> None:
    """Replace every ``new_role`` artifact with a copy of the ``old_role`` one.

    Copied ``.conf`` files get their ``efi`` path and title rewritten for the
    new role.
    """
    root = Path(directory)
    for dirpath, _, filenames in os.walk(root):
        for name in filenames:
            if name.startswith(new_role):
                os.remove(os.path.join(dirpath, name))

    sources = [
        Path(dirpath) / name
        for dirpath, _, filenames in os.walk(root)
        for name in sorted(filenames)
        if name.startswith(old_role)
    ]
    for source in sources:
        target = source.with_name(source.name.replace(old_role, new_role))
        log.debug(f"Copying {source} to {target}")
        shutil.copyfile(source, target)
        if target.name.endswith(CONF_SUFFIX):
            replace_role_in_key(target, "efi", old_role, new_role)
            replace_conf_title(target, new_role)


def remove_artifact_set_with_role(directory: str | Path, role: str) -> None:
    for dirpath, _, filenames in os.walk(Path(directory)):
        for name in filenames:
            if name.startswith(role):
                log.debug(f"Removing {os.path.join(dirpath, name)}")
                os.remove(os.path.join(dirpath, name))


def install_entry(efi_dir: str | Path, staged_dir: str | Path, entry: str) -> None:
    """Replace the ``entry`` efi and conf files with the unassigned ones in ``staged_dir``.

    Only an entry that already exists can be replaced; ``loader.conf`` and the
    other entries are left alone.
    """
    efi_dir = Path(efi_dir)
    staged_dir = Path(staged_dir)
    target_efi = efi_dir / "EFI" / "kairos" / f"{entry}.efi"
    if not target_efi.exists():
        raise BootEntryError(f"could not find target efi file for entry {entry}")

    shutil.copyfile(staged_dir / "EFI" / "kairos" / f"{UNASSIGNED_ROLE}.efi", target_efi)
    target_conf = _entries_dir(efi_dir) / f"{entry}{CONF_SUFFIX}"
    shutil.copyfile(_entries_dir(staged_dir) / f"{UNASSIGNED_ROLE}{CONF_SUFFIX}", target_conf)
    replace_role_in_key(target_conf, "efi", UNASSIGNED_ROLE, entry)


def add_sort_keys(directory: str | Path) -> None:
    """Give every entry a ``sort-key`` so the menu order follows the role."""
    for path in _conf_files(Path(directory)):
        if path.name == LOADER_CONF:
            continue
        conf = read_conf(path)
        role = _codec.decode(path.name).role
        conf["sort-key"] = SORT_KEYS.get(role, DEFAULT_SORT_KEY)
        write_conf(path, conf)


def add_boot_assessment(directory: str | Path) -> None:
    """Append the default boot counter to entries that carry none."""
    tries = constants.DEFAULT_BOOT_ASSESSMENT_TRIES
    for path in _conf_files(Path(directory)):
        if path.name == LOADER_CONF:
            continue
        base = path.name[: -len(CONF_SUFFIX)]
        if ASSESSMENT_PATTERN.search(base):
            log.debug(f"Boot assessment already present in {path}")
            continue
        target = path.with_name(f"{base}+{tries}{CONF_SUFFIX}")
        log.debug(f"Enabling boot assessment: {path} -> {target}")
        path.rename(target)
