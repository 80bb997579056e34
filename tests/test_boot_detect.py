"""Tests for boot/detect.py and the boot entry dispatch in boot/__init__.py."""

from pathlib import Path
from unittest.mock import patch

import pytest

from kairos_agent.boot import list_boot_entries, select_boot_entry
from kairos_agent.boot.detect import (
    UKI_HDD_MODE,
    UKI_REMOVABLE_MEDIA_MODE,
    UNKNOWN_MODE,
    BootRoleDetector,
)
from kairos_agent.domain.models import BootRole


def touch(path, content=""):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)


class TestCurrentRole:
    """Tests for BootRoleDetector.current_role()."""

    @pytest.mark.parametrize(
        "attribute, role",
        [
            ("active_mode_file", BootRole.ACTIVE),
            ("passive_mode_file", BootRole.PASSIVE),
            ("recovery_mode_file", BootRole.RECOVERY),
        ],
    )
    def test_sentinel_files(self, paths, attribute, role):
        """Test the initramfs mode files decide the role."""
        touch(getattr(paths, attribute))

        assert BootRoleDetector(paths).current_role() is role

    @pytest.mark.parametrize(
        "cmdline, role",
        [
            ("root=LABEL=COS_ACTIVE cos-img/filename=/cOS/active.img", BootRole.ACTIVE),
            ("root=LABEL=COS_PASSIVE cos-img/filename=/cOS/passive.img", BootRole.PASSIVE),
            ("root=LABEL=COS_SYSTEM cos-img/filename=/cOS/recovery.squashfs", BootRole.RECOVERY),
        ],
    )
    def test_cmdline_fallback(self, paths, cmdline, role):
        """Test the kernel cmdline is used without mode files."""
        touch(paths.proc_cmdline, cmdline)

        assert BootRoleDetector(paths).current_role() is role

    def test_unknown(self, paths):
        touch(paths.proc_cmdline, "quiet splash")

        assert BootRoleDetector(paths).current_role() is BootRole.UNKNOWN

    def test_missing_cmdline(self, paths):
        assert BootRoleDetector(paths).current_role() is BootRole.UNKNOWN


class TestUki:
    def test_uki_flag(self, paths):
        touch(paths.proc_cmdline, "rd.immucore.uki quiet")

        assert BootRoleDetector(paths).is_uki()

    def test_boot_modes(self, paths):
        """Test UKI boot mode depends on the boot mode sentinel."""
        detector = BootRoleDetector(paths)
        assert detector.uki_boot_mode() == UNKNOWN_MODE

        touch(paths.proc_cmdline, "rd.immucore.uki")
        assert detector.uki_boot_mode() == UKI_REMOVABLE_MEDIA_MODE

        touch(paths.uki_boot_mode_file)
        assert detector.uki_boot_mode() == UKI_HDD_MODE

    def test_booted_from_cd(self, paths):
        touch(paths.proc_cmdline, "cdroot rd.live")

        assert BootRoleDetector(paths).booted_from_cd()


class TestBootEntryDispatch:
    """Tests for choosing GRUB or systemd-boot entries."""

    @patch("kairos_agent.boot.grub.list_entries", return_value=["kairos"])
    def test_grub_listing(self, mock_list, paths, detector):
        assert list_boot_entries(paths, detector) == ["kairos"]
        mock_list.assert_called_once_with(paths)

    @patch("kairos_agent.boot.systemd.list_entries", return_value=["cos"])
    def test_uki_listing(self, mock_list, paths, detector):
        detector.uki = True

        assert list_boot_entries(paths, detector) == ["cos"]
        mock_list.assert_called_once_with(paths.uki_efi_dir)

    @patch("kairos_agent.boot.grub.select_entry")
    def test_grub_select(self, mock_select, paths, detector):
        select_boot_entry(paths, "fallback", detector)

        mock_select.assert_called_once_with(paths, "fallback")

    @patch("kairos_agent.boot.systemd.select_entry")
    def test_uki_select(self, mock_select, paths, detector, mounter):
        detector.uki = True

        select_boot_entry(paths, "fallback", detector, mounter)

        mock_select.assert_called_once_with(paths.uki_efi_dir, "fallback", mounter=mounter)
