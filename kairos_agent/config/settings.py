"""Agent configuration loaded from YAML files."""

from __future__ import annotations

import copy
import os
import tempfile
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Iterable

import yaml

from kairos_agent import constants
from kairos_agent.logging import LoggerFactory


log = LoggerFactory.for_system()

CONFIG_PATH = Path(
    os.environ.get("KAIROS_AGENT_CONFIG_PATH", "/etc/kairos/agent.yaml")
)

DEFAULT_STAGE_COMMAND = ["yip", "-s"]

DEFAULT_SETTINGS: dict[str, Any] = {
    "strict": False,
    "eject_cd": False,
    "cloud_init_paths": list(constants.CLOUD_INIT_PATHS),
    "stage_command": list(DEFAULT_STAGE_COMMAND),
    "paths": {},
    "install": {},
    "upgrade": {},
    "reset": {},
}


@dataclass
class Paths:
    """Well known filesystem locations.

    Every component receives these instead of reading module constants so a
    test can point the whole agent at a temporary directory.
    """

    proc_cmdline: str = "/proc/cmdline"
    run_dir: str = constants.RUN_DIR
    state_dir: str = constants.STATE_DIR
    recovery_dir: str = constants.RECOVERY_DIR
    oem_dir: str = constants.OEM_DIR
    persistent_dir: str = constants.PERSISTENT_DIR
    active_dir: str = constants.ACTIVE_DIR
    transition_dir: str = constants.TRANSITION_DIR
    efi_dir: str = constants.EFI_DIR
    uki_efi_dir: str = "/efi"
    iso_base_tree: str = constants.ISO_BASE_TREE
    running_state_dir: str = "/run/initramfs/cos-state"
    fail_installation_file: str = "/run/cos/fail_installation"
    uki_boot_mode_file: str = "/run/cos/uki_boot_mode"
    active_mode_file: str = "/run/cos/active_mode"
    passive_mode_file: str = "/run/cos/passive_mode"
    recovery_mode_file: str = "/run/cos/recovery_mode"
    efi_firmware_dir: str = "/sys/firmware/efi"
    systemd_run_dir: str = "/run/systemd/system"
    grub_configs: list[str] = field(
        default_factory=lambda: [
            "/etc/cos/grub.cfg",
            "/run/initramfs/cos-state/grub/grub.cfg",
            "/run/initramfs/cos-state/grub2/grub.cfg",
            "/etc/kairos/branding/grubmenu.cfg",
        ]
    )
    oem_grubenv: str = "/oem/grubenv"
    eject_script: str = "/usr/lib/systemd/system-shutdown/eject"
    sysext_dir: str = "/var/lib/kairos/extensions"
    sysext_runtime_dir: str = "/run/extensions"
    var_log_dir: str = "/var/log"
    tmp_dir: str = ""

    @classmethod
    def rooted(cls, root: str | Path) -> Paths:
        """Rebase every default location under ``root``."""
        base = cls()
        changes: dict[str, Any] = {}
        for item in fields(cls):
            value = getattr(base, item.name)
            if isinstance(value, list):
                changes[item.name] = [_rebase(root, entry) for entry in value]
            elif value:
                changes[item.name] = _rebase(root, value)
        changes["tmp_dir"] = _rebase(root, "/tmp")
        return replace(base, **changes)

    def make_temp_dir(self, prefix: str) -> str:
        """Create a temporary directory under ``tmp_dir`` (system default when unset)."""
        if self.tmp_dir:
            os.makedirs(self.tmp_dir, exist_ok=True)
        return tempfile.mkdtemp(prefix=prefix, dir=self.tmp_dir or None)



def _rebase(root: str | Path, path: str) -> str:
    return str(Path(root) / path.lstrip("/"))


@dataclass
class AgentConfig:
    strict: bool = False
    eject_cd: bool = False
    cloud_init_paths: list[str] = field(
        default_factory=lambda: list(constants.CLOUD_INIT_PATHS)
    )
    stage_command: list[str] = field(default_factory=lambda: list(DEFAULT_STAGE_COMMAND))
    paths: Paths = field(default_factory=Paths)
    install: dict[str, Any] = field(default_factory=dict)
    upgrade: dict[str, Any] = field(default_factory=dict)
    reset: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, values: dict[str, Any]) -> AgentConfig:
        known_paths = {item.name for item in fields(Paths)}
        path_values = {
            key: value
            for key, value in (values.get("paths") or {}).items()
            if key in known_paths
        }
        return cls(
            strict=bool(values.get("strict", False)),
            eject_cd=bool(values.get("eject_cd", False)),
            cloud_init_paths=list(values.get("cloud_init_paths") or []),
            stage_command=list(values.get("stage_command") or DEFAULT_STAGE_COMMAND),
            paths=Paths(**path_values),
            install=dict(values.get("install") or {}),
            upgrade=dict(values.get("upgrade") or {}),
            reset=dict(values.get("reset") or {}),
        )


def merge_settings(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_settings(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def read_config_file(path: Path) -> dict[str, Any]:
    """Read one YAML config file, returning an empty mapping when unusable."""
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as error:
        log.warning(f"Ignoring unreadable config file {path}: {error}")
        return {}
    if not isinstance(data, dict):
        log.warning(f"Ignoring config file {path}: top level is not a mapping")
        return {}
    return data


def load_config(extra_files: Iterable[str | Path] | None = None) -> AgentConfig:
    """Load the default config file plus any extra files, later files winning."""
    values = copy.deepcopy(DEFAULT_SETTINGS)
    for path in [CONFIG_PATH, *[Path(item) for item in extra_files or []]]:
        data = read_config_file(Path(path))
        if data:
            log.debug(f"Loaded config file {path}")
            values = merge_settings(values, data)
    return AgentConfig.from_dict(values)
