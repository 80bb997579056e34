"""Labels, file names and well known locations shared across the agent.

Filesystem locations that tests need to redirect are only defaults here; the
effective values live in :class:`kairos_agent.config.settings.Paths`.
"""

# ==============================================================================
# Filesystem labels
# ==============================================================================

ACTIVE_LABEL = "COS_ACTIVE"
PASSIVE_LABEL = "COS_PASSIVE"
SYSTEM_LABEL = "COS_SYSTEM"
RECOVERY_LABEL = "COS_RECOVERY"
STATE_LABEL = "COS_STATE"
PERSISTENT_LABEL = "COS_PERSISTENT"
OEM_LABEL = "COS_OEM"
EFI_LABEL = "COS_GRUB"

# ==============================================================================
# Partition and image names (keys of the install state file)
# ==============================================================================

BIOS_PART_NAME = "bios"
EFI_PART_NAME = "efi"
OEM_PART_NAME = "oem"
RECOVERY_PART_NAME = "recovery"
STATE_PART_NAME = "state"
PERSISTENT_PART_NAME = "persistent"

ACTIVE_IMG_NAME = "active"
PASSIVE_IMG_NAME = "passive"
RECOVERY_IMG_NAME = "recovery"

# ==============================================================================
# Image files and filesystems
# ==============================================================================

ACTIVE_IMG_FILE = "active.img"
PASSIVE_IMG_FILE = "passive.img"
RECOVERY_IMG_FILE = "recovery.img"
RECOVERY_SQUASH_FILE = "recovery.squashfs"
TRANSITION_IMG_FILE = "transition.img"
TRANSITION_SQUASH_FILE = "transition.squashfs"
ISO_ROOT_FILE = "rootfs.squashfs"
INSTALL_STATE_FILE = "state.yaml"
IMAGES_SUBDIR = "cOS"

LINUX_FS = "ext4"
LINUX_IMG_FS = "ext2"
SQUASH_FS = "squashfs"
EFI_FS = "vfat"

IMG_SIZE_MB = 3072
OEM_SIZE_MB = 64
EFI_SIZE_MB = 64
BIOS_SIZE_MB = 1
RECOVERY_SIZE_MB = 8192
STATE_SIZE_MB = 8192

DIR_PERM = 0o755
FILE_PERM = 0o644
CONFIG_PERM = 0o640

# ==============================================================================
# Mount points and paths inside a deployed root
# ==============================================================================

RUN_DIR = "/run/cos"
STATE_DIR = "/run/cos/state"
RECOVERY_DIR = "/run/cos/recovery"
OEM_DIR = "/run/cos/oem"
PERSISTENT_DIR = "/run/cos/persistent"
ACTIVE_DIR = "/run/cos/active"
TRANSITION_DIR = "/run/cos/transition"
EFI_DIR = "/run/cos/efi"
ISO_BASE_TREE = "/run/rootfsbase"

OEM_PATH = "/oem"
USR_LOCAL_PATH = "/usr/local"

GRUB_OEM_ENV = "grub_oem_env"
GRUB_ENV = "grubenv"
GRUB_CONF = "/etc/cos/grub.cfg"

CLOUD_INIT_PATHS = ["/system/oem", "/oem/", "/usr/local/cloud-config/"]

SELINUX_TARGETED_CONTEXT_FILE = "etc/selinux/targeted/contexts/files/file_contexts"
SELINUX_TARGETED_POLICY_PATH = "etc/selinux/targeted/policy"

# Directories every deployed root must contain
SYSTEM_DIRS = ["run", "dev", "boot", "usr/local", "oem"]
API_DIRS = ["proc", "sys"]
NO_WRITE_DIR_PERM = 0o555
TEMP_DIR_PERM = 0o1777

# Paths never copied when syncing a directory source into an image
SYNC_EXCLUDES = ["/mnt", "/proc", "/sys", "/dev", "/tmp", "/host", "/run"]

SQUASHFS_OPTIONS = ["-b", "1024k", "-comp", "gzip"]


# ==============================================================================
# Lifecycle hooks
# ==============================================================================

BEFORE_INSTALL_HOOK = "before-install"
AFTER_INSTALL_CHROOT_HOOK = "after-install-chroot"
AFTER_INSTALL_HOOK = "after-install"
BEFORE_RESET_HOOK = "before-reset"
AFTER_RESET_CHROOT_HOOK = "after-reset-chroot"
AFTER_RESET_HOOK = "after-reset"
BEFORE_UPGRADE_HOOK = "before-upgrade"
AFTER_UPGRADE_CHROOT_HOOK = "after-upgrade-chroot"
AFTER_UPGRADE_HOOK = "after-upgrade"

INSTALL_PRE_STAGE = "kairos-install.pre"
INSTALL_AFTER_STAGE = "kairos-install.after"
INSTALL_PRE_HOOK_SCRIPT = "/usr/bin/kairos-agent.install.pre.hook"
INSTALL_AFTER_HOOK_SCRIPT = "/usr/bin/kairos-agent.install.after.hook"

UKI_UPGRADE_PRE_STAGE = "kairos-uki-upgrade.pre"
UKI_UPGRADE_AFTER_STAGE = "kairos-uki-upgrade.after"
UKI_UPGRADE_PRE_HOOK_SCRIPT = "/usr/bin/kairos-agent.uki.upgrade.pre.hook"
UKI_UPGRADE_AFTER_HOOK_SCRIPT = "/usr/bin/kairos-agent.uki.upgrade.after.hook"
UKI_RESET_PRE_STAGE = "kairos-uki-reset.pre"
UKI_RESET_AFTER_STAGE = "kairos-uki-reset.after"
UKI_RESET_PRE_HOOK_SCRIPT = "/usr/bin/kairos-agent.uki.reset.pre.hook"
UKI_RESET_AFTER_HOOK_SCRIPT = "/usr/bin/kairos-agent.uki.reset.after.hook"

EJECT_SCRIPT = "#!/bin/sh\n/usr/bin/eject -rmF"

POWER_ACTION_DELAY_SECONDS = 5

# ==============================================================================
# Boot entries
# ==============================================================================

UKI_CMDLINE_FLAG = "rd.immucore.uki"
UKI_DEFAULT_MENU_ENTRIES = ["cos", "fallback", "recovery", "statereset"]
DEFAULT_BOOT_ASSESSMENT_TRIES = 3

# ==============================================================================
# System extensions
# ==============================================================================

SYSEXT_SERVICE = "systemd-sysext"
SYSEXT_COMMON_ROLE = "common"
SYSEXT_ROLES = ["active", "passive", "recovery", SYSEXT_COMMON_ROLE]
