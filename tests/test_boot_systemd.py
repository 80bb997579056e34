"""Tests for boot/systemd.py - systemd-boot (UKI) entries.

Covers:
- RoleCodec decoding/encoding and the name round trip
- Listing entries from loader/entries
- Selecting entries with boot counters and the stock menu reduction
- loader.conf handling and the read-write remount scope
- Role rotation copies, sort keys and boot assessment counters
"""

from pathlib import Path

import pytest

from kairos_agent.boot import systemd
from kairos_agent.storage.exceptions import BootEntryError, EntryNotFoundError, MountFailedError


def make_efi(tmp_path, names, loader="timeout 5\ndefault active.conf\n"):
    efi = tmp_path / "efi"
    entries = efi / "loader" / "entries"
    entries.mkdir(parents=True)
    for name in names:
        (entries / name).write_text(f"title Kairos\nefi /EFI/kairos/{name.split('+')[0]}.efi\n")
    if loader is not None:
        (efi / "loader" / "loader.conf").write_text(loader)
    return efi


def loader_default(efi):
    return systemd.read_conf(efi / "loader" / "loader.conf")["default"]


class TestRoleCodec:
    """Tests for decoding and mapping entry file names."""

    @pytest.mark.parametrize(
        "filename, display",
        [
            ("active.conf", "cos"),
            ("passive.conf", "fallback"),
            ("recovery.conf", "recovery"),
            ("statereset.conf", "statereset"),
            ("active+2-1.conf", "cos"),
            ("passive_foo+3.conf", "fallback foo"),
            ("recovery_my_img.conf", "recovery my_img"),
            ("custom_entry.conf", "custom entry"),
        ],
    )
    def test_display_name(self, filename, display):
        assert systemd.conf_to_display_name(filename) == display

    @pytest.mark.parametrize(
        "name, prefix",
        [
            ("cos", "active"),
            ("active", "active"),
            ("fallback", "passive"),
            ("recovery", "recovery"),
            ("statereset", "statereset"),
            ("fallback foo", "passive_foo"),
            ("custom entry", "custom_entry"),
        ],
    )
    def test_conf_prefix(self, name, prefix):
        assert systemd.display_name_to_conf_prefix(name) == prefix

    @pytest.mark.parametrize(
        "filename",
        [
            "active.conf",
            "active+3.conf",
            "passive+2-1.conf",
            "recovery_foo.conf",
            "statereset_bar+1-2.conf",
            "passive_x+0.conf",
        ],
    )
    def test_round_trip_drops_only_the_counter(self, filename):
        """Test name -> menu name -> prefix yields the file name minus counter."""
        decoded = systemd.RoleCodec().decode(filename)
        expected = systemd.RoleCodec().encode(decoded.role, decoded.differentiator)

        result = systemd.display_name_to_conf_prefix(systemd.conf_to_display_name(filename))

        assert result == expected

    def test_decode_parts(self):
        decoded = systemd.RoleCodec().decode("passive_foo+2-1.conf")

        assert decoded == systemd.DecodedConf("passive", "foo", "+2-1")

    def test_decode_rejects_non_conf(self):
        with pytest.raises(BootEntryError):
            systemd.RoleCodec().decode("active.efi")


class TestListEntries:
    """Tests for systemd.list_entries()."""

    def test_missing_directory(self, tmp_path):
        """Test a missing entries dir is an empty, non-error list."""
        assert systemd.list_entries(tmp_path / "efi") == []

    def test_empty_directory(self, tmp_path):
        efi = make_efi(tmp_path, [])

        assert systemd.list_entries(efi) == []

    def test_lists_display_names(self, tmp_path):
        efi = make_efi(tmp_path, ["active.conf", "passive+1.conf", "recovery.conf"])

        assert systemd.list_entries(efi) == ["cos", "fallback", "recovery"]


class TestSelectEntry:
    """Tests for systemd.select_entry()."""

    STOCK = ["active+2-1.conf", "passive+3.conf", "recovery+1-2.conf", "statereset+2-1.conf"]

    def test_fallback_keeps_boot_counter(self, tmp_path, mounter):
        """Test the counter stripped for display is written back."""
        efi = make_efi(tmp_path, self.STOCK)

        systemd.select_entry(efi, "fallback", mounter=mounter)

        assert loader_default(efi) == "passive+3.conf"

    @pytest.mark.parametrize("name", ["cos", "active"])
    def test_cos_and_active_alias(self, tmp_path, mounter, name):
        """Test cos and the active alias select the same file."""
        efi = make_efi(tmp_path, self.STOCK)

        systemd.select_entry(efi, name, mounter=mounter)

        assert loader_default(efi) == "active+2-1.conf"

    def test_stock_menu_with_differentiators(self, tmp_path, mounter):
        """Test four entries map cos/fallback onto differentiated files."""
        efi = make_efi(
            tmp_path,
            ["active_a.conf", "passive_a+1.conf", "recovery_a.conf", "statereset_a.conf"],
        )

        systemd.select_entry(efi, "fallback", mounter=mounter)

        assert loader_default(efi) == "passive_a+1.conf"

    def test_non_stock_count_uses_real_names(self, tmp_path, mounter):
        """Test other entry counts are matched verbatim."""
        efi = make_efi(tmp_path, ["active_a.conf", "active_b.conf", "passive.conf"])

        systemd.select_entry(efi, "cos b", mounter=mounter)
        assert loader_default(efi) == "active_b.conf"

        with pytest.raises(EntryNotFoundError, match="does not exist"):
            systemd.select_entry(efi, "cos", mounter=mounter)

    def test_unknown_entry(self, tmp_path, mounter):
        efi = make_efi(tmp_path, self.STOCK)

        with pytest.raises(EntryNotFoundError, match="entry nope does not exist"):
            systemd.select_entry(efi, "nope", mounter=mounter)
        assert mounter.remounts == []

    def test_remounts_rw_then_ro(self, tmp_path, mounter):
        """Test the EFI partition is writable only while loader.conf is written."""
        efi = make_efi(tmp_path, self.STOCK)

        systemd.select_entry(efi, "recovery", mounter=mounter)

        assert mounter.remounts == [(str(efi), False), (str(efi), True)]

    def test_missing_loader_conf_still_remounts_ro(self, tmp_path, mounter):
        """Test the read-only remount happens even when writing fails."""
        efi = make_efi(tmp_path, self.STOCK, loader=None)

        with pytest.raises(BootEntryError, match="loader.conf"):
            systemd.select_entry(efi, "recovery", mounter=mounter)
        assert mounter.remounts[-1] == (str(efi), True)

    def test_ro_remount_failure_is_logged(self, tmp_path, mounter, mocker):
        efi = make_efi(tmp_path, self.STOCK)
        mocker.patch.object(
            mounter, "remount", side_effect=[None, MountFailedError(str(efi), "busy")]
        )

        assert systemd.select_entry(efi, "recovery", mounter=mounter) == "recovery+1-2.conf"

    def test_other_loader_settings_kept(self, tmp_path, mounter):
        efi = make_efi(tmp_path, self.STOCK)

        systemd.select_entry(efi, "statereset", mounter=mounter)

        loader = systemd.read_conf(efi / "loader" / "loader.conf")
        assert loader == {"timeout": "5", "default": "statereset+2-1.conf"}


class TestConfFiles:
    def test_write_and_read(self, tmp_path):
        path = tmp_path / "entry.conf"

        systemd.write_conf(path, {"title": "Kairos OS", "efi": "/EFI/a.efi", "quiet": ""})

        assert path.read_text() == "title Kairos OS\nefi /EFI/a.efi\nquiet\n"
        assert systemd.read_conf(path) == {"title": "Kairos OS", "efi": "/EFI/a.efi", "quiet": ""}


class TestArtifactMaintenance:
    """Tests for role rotation copies, sort keys and assessment counters."""

    def test_overwrite_artifact_set_role(self, tmp_path):
        """Test passive artifacts become copies of the active ones."""
        (tmp_path / "active.efi").write_text("new kernel")
        (tmp_path / "active.conf").write_text("title Kairos\nefi /EFI/kairos/active.efi\n")
        (tmp_path / "passive.efi").write_text("old kernel")
        (tmp_path / "passive_old.conf").write_text("title Old\n")

        systemd.overwrite_artifact_set_role(tmp_path, "active", "passive")

        assert (tmp_path / "passive.efi").read_text() == "new kernel"
        assert not (tmp_path / "passive_old.conf").exists()
        conf = systemd.read_conf(tmp_path / "passive.conf")
        assert conf == {"title": "Kairos (fallback)", "efi": "/EFI/kairos/passive.efi"}
        assert (tmp_path / "active.efi").read_text() == "new kernel"

    def test_title_for_roles(self):
        assert systemd.boot_title_for_role("recovery", "Kairos (fallback)") == "Kairos recovery"
        assert systemd.boot_title_for_role("active", "Kairos recovery") == "Kairos"
        with pytest.raises(BootEntryError, match="invalid role"):
            systemd.boot_title_for_role("other", "Kairos")

    def test_conf_without_efi_key(self, tmp_path):
        (tmp_path / "active.conf").write_text("title Kairos\n")

        with pytest.raises(BootEntryError, match="no efi entry"):
            systemd.overwrite_artifact_set_role(tmp_path, "active", "recovery")

    def test_remove_artifact_set_with_role(self, tmp_path):
        (tmp_path / "EFI").mkdir()
        (tmp_path / "EFI" / "norole.efi").write_text("kernel")
        (tmp_path / "norole.conf").write_text("title X\n")
        (tmp_path / "active.conf").write_text("title X\n")

        systemd.remove_artifact_set_with_role(tmp_path, "norole")

        remaining = sorted(path.name for path in tmp_path.rglob("*") if path.is_file())
        assert remaining == ["active.conf"]

    def test_install_entry(self, tmp_path):
        """Test a staged unassigned set replaces one existing entry."""
        efi = make_efi(tmp_path, ["recovery.conf"])
        (efi / "EFI" / "kairos").mkdir(parents=True)
        (efi / "EFI" / "kairos" / "recovery.efi").write_text("old")
        staged = tmp_path / "staged"
        (staged / "EFI" / "kairos").mkdir(parents=True)
        (staged / "EFI" / "kairos" / "norole.efi").write_text("new")
        (staged / "loader" / "entries").mkdir(parents=True)
        (staged / "loader" / "entries" / "norole.conf").write_text(
            "title New\nefi /EFI/kairos/norole.efi\n"
        )

        systemd.install_entry(efi, staged, "recovery")

        assert (efi / "EFI" / "kairos" / "recovery.efi").read_text() == "new"
        conf = systemd.read_conf(efi / "loader" / "entries" / "recovery.conf")
        assert conf["efi"] == "/EFI/kairos/recovery.efi"
        assert loader_default(efi) == "active.conf"

    def test_install_entry_requires_existing_target(self, tmp_path):
        efi = make_efi(tmp_path, [])

        with pytest.raises(BootEntryError, match="could not find target efi file"):
            systemd.install_entry(efi, tmp_path / "staged", "recovery")

    def test_add_sort_keys(self, tmp_path):
        """Test sort keys follow role precedence and skip loader.conf."""
        for name in ("active.conf", "passive.conf", "recovery.conf", "statereset.conf",
                     "custom.conf", "loader.conf"):
            (tmp_path / name).write_text("title X\n")

        systemd.add_sort_keys(tmp_path)

        keys = {
            path.name: systemd.read_conf(path).get("sort-key")
            for path in Path(tmp_path).iterdir()
        }
        assert keys == {
            "active.conf": "0001",
            "passive.conf": "0002",
            "recovery.conf": "0003",
            "statereset.conf": "0004",
            "custom.conf": "0010",
            "loader.conf": None,
        }

    def test_add_boot_assessment(self, tmp_path):
        (tmp_path / "active.conf").write_text("title X\n")
        (tmp_path / "passive+1-1.conf").write_text("title X\n")

        systemd.add_boot_assessment(tmp_path)

        names = sorted(path.name for path in tmp_path.iterdir())
        assert names == ["active+3.conf", "passive+1-1.conf"]
