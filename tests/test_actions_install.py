"""Tests for actions/install.py - the install pipeline.

Covers:
- Step ordering for a formatting install
- State file content written to State and Recovery
- Recovery sharing the Active source when copied from it
- No-format installs over an existing deployment (force flag)
- Fail-installation sentinel
- Cleanup unwinding on deployment failure
- Eject script for CD boots
- ISO sources: fetch, release and source rewriting
"""

import os
from pathlib import Path

import pytest
import yaml

from kairos_agent import constants
from kairos_agent.actions.install import InstallAction, check_failed_installation
from kairos_agent.config.specs import build_install_spec
from kairos_agent.domain.models import ImageSource
from kairos_agent.storage.exceptions import DeploymentError, SpecError


SOURCE = "oci:quay.io/kairos/core:v1"


@pytest.fixture
def install(config, elemental, hooks, detector, mounter, mock_grub, mocker):
    """Factory building an InstallAction around the shared fakes."""
    run_hooks = mocker.patch("kairos_agent.actions.install.run_hooks")

    def build(**overrides):
        values = {"device": "/dev/sda", "source": SOURCE}
        values.update(overrides)
        spec = build_install_spec(config, **values)
        action = InstallAction(
            config,
            spec,
            elemental=elemental,
            hooks=hooks,
            detector=detector,
            mounter=mounter,
        )
        action.run_hooks = run_hooks
        return action

    return build


def read_state(path):
    return yaml.safe_load(Path(path).read_text(encoding="utf-8"))


class TestInstallRun:
    """Tests for InstallAction.run() on a fresh disk."""

    def test_formats_then_deploys_all_images(self, install, elemental):
        """Test the disk is partitioned and every slot deployed in order."""
        action = install()

        action.run()

        names = elemental.names()
        assert names.index("deactivate_devices") < names.index("partition_and_format_device")
        deployed = [Path(call[1]).name for call in elemental.calls if call[0] == "deploy_image"]
        assert deployed == ["active.img", "recovery.img", "passive.img"]

    def test_slots_contain_deployed_image(self, install, paths):
        """Test Recovery and Passive are copies of the deployed Active."""
        install().run()

        images = Path(paths.state_dir) / constants.IMAGES_SUBDIR
        active = (images / "active.img").read_text()
        assert active == "deployed:oci://quay.io/kairos/core:v1"
        assert (images / "passive.img").read_text() == active
        recovery = Path(paths.recovery_dir) / constants.IMAGES_SUBDIR / "recovery.img"
        assert recovery.read_text() == active

    def test_hooks_run_in_order(self, install, hooks):
        """Test lifecycle stages run around the deployment."""
        install().run()

        assert hooks.stages == [
            constants.INSTALL_PRE_STAGE,
            Path(constants.INSTALL_PRE_HOOK_SCRIPT).name,
            constants.BEFORE_INSTALL_HOOK,
            constants.AFTER_INSTALL_CHROOT_HOOK,
            constants.AFTER_INSTALL_HOOK,
            constants.INSTALL_AFTER_STAGE,
            Path(constants.INSTALL_AFTER_HOOK_SCRIPT).name,
        ]

    def test_post_install_hook_sets_run_after_cleanup(self, install, mounter):
        """Test Python hook sets run once every partition is unmounted."""
        action = install()

        def check_unmounted(runner, spec, hook_set):
            assert mounter.mounted == {}

        action.run_hooks.side_effect = check_unmounted
        action.run()

        assert action.run_hooks.call_count == 2

    def test_bootloader_installed_on_target(self, install, mock_grub, paths):
        """Test GRUB is installed with the Active root and State boot dir."""
        action = install()
        action.run()

        args, kwargs = mock_grub["install"].call_args
        assert args[1] == "/dev/sda"
        assert args[2] == paths.active_dir
        assert args[3] == paths.state_dir
        assert kwargs["state_label"] == constants.STATE_LABEL
        mock_grub["default_entry"].assert_called_once_with(paths.state_dir, paths.active_dir, "")

    def test_all_partitions_unmounted_after_run(self, install, mounter):
        """Test the cleanup stack releases every mount."""
        install().run()

        assert mounter.mounted == {}


class TestInstallState:
    """Tests for the state.yaml written at the end of an install."""

    def test_state_written_to_state_and_recovery(self, install, paths):
        """Test the same state file lands on both partitions."""
        install().run()

        on_state = Path(paths.state_dir) / constants.INSTALL_STATE_FILE
        on_recovery = Path(paths.recovery_dir) / constants.INSTALL_STATE_FILE
        assert on_state.read_text() == on_recovery.read_text()

    def test_state_records_sources_and_labels(self, install, paths):
        """Test Active and Passive share the source and digest."""
        install().run()

        state = read_state(Path(paths.state_dir) / constants.INSTALL_STATE_FILE)
        images = state["partitions"]["state"]["images"]
        assert images["active"]["source"] == "oci://quay.io/kairos/core:v1"
        assert images["active"]["source_metadata"] == {"digest": "sha256:cafe"}
        assert images["active"]["label"] == constants.ACTIVE_LABEL
        assert images["passive"]["label"] == constants.PASSIVE_LABEL
        assert images["passive"]["source"] == images["active"]["source"]
        assert state["partitions"]["oem"] == {"fslabel": constants.OEM_LABEL}
        assert state["partitions"]["persistent"] == {"fslabel": constants.PERSISTENT_LABEL}

    def test_recovery_copied_from_active_reuses_active_source(self, install, paths):
        """Test a recovery built from active.img records the Active source."""
        install().run()

        state = read_state(Path(paths.recovery_dir) / constants.INSTALL_STATE_FILE)
        recovery = state["partitions"]["recovery"]["images"]["recovery"]
        assert recovery["source"] == "oci://quay.io/kairos/core:v1"
        assert recovery["source_metadata"] == {"digest": "sha256:cafe"}
        assert recovery["label"] == constants.SYSTEM_LABEL

    def test_missing_recovery_partition_is_an_error(self, install):
        """Test state building needs State and Recovery partitions."""
        action = install()
        action.spec.partitions.recovery = None

        with pytest.raises(SpecError, match="undefined state or recovery partition"):
            action.install_state(None, None)


class TestNoFormatInstall:
    """Tests for installs onto an existing partition layout."""

    def test_refuses_to_overwrite_active_deployment(self, install, elemental):
        """Test an existing deployment needs the force flag."""
        elemental.active_deployment = True
        action = install(no_format=True)

        with pytest.raises(SpecError, match="use force flag"):
            action.run()
        assert "deploy_image" not in elemental.names()

    def test_force_installs_over_active_deployment(self, install, elemental):
        """Test force skips the active deployment check."""
        elemental.active_deployment = True
        action = install(no_format=True, force=True)

        action.run()

        assert "partition_and_format_device" not in elemental.names()
        assert "deploy_image" in elemental.names()

    def test_auto_target_uses_preconfigured_device(self, install, elemental):
        """Test 'auto' resolves the disk holding COS_STATE."""
        action = install(no_format=True, device="auto")

        action.run()

        assert action.spec.target == "/dev/sda"
        assert "detect_preconfigured_device" in elemental.names()


class TestInstallFailures:
    """Tests for failure handling and unwinding."""

    def test_fail_sentinel_aborts_install(self, install, paths, mounter):
        """Test the fail-installation file aborts before deployment."""
        sentinel = Path(paths.fail_installation_file)
        sentinel.parent.mkdir(parents=True, exist_ok=True)
        sentinel.write_text("bad config")

        with pytest.raises(DeploymentError, match="Installation failed: bad config"):
            install().run()
        assert mounter.mounted == {}

    def test_deploy_failure_unwinds_mounts(self, install, elemental, mounter):
        """Test partitions are unmounted when deployment fails."""
        elemental.fail_on = "deploy_image"

        with pytest.raises(RuntimeError, match="deploy_image failed"):
            install().run()
        assert mounter.mounted == {}

    def test_bootloader_failure_is_fatal(self, install, mock_grub, mounter, paths):
        """Test a GRUB install failure stops the pipeline."""
        mock_grub["install"].side_effect = DeploymentError("grub-install failed")

        with pytest.raises(DeploymentError, match="grub-install failed"):
            install().run()
        assert mounter.mounted == {}
        assert not (Path(paths.state_dir) / constants.INSTALL_STATE_FILE).exists()

    def test_rebrand_failure_is_fatal(self, install, mock_grub):
        """Test the default entry step is fatal on install."""
        mock_grub["default_entry"].side_effect = OSError("read-only filesystem")

        with pytest.raises(OSError):
            install().run()

    def test_undefined_source_rejected(self, install):
        """Test an install without any source is rejected up front."""
        action = install(source="")

        with pytest.raises(SpecError, match="undefined system source"):
            action.run()


class TestCheckFailedInstallation:
    def test_no_sentinel(self, tmp_path):
        """Test a missing sentinel is fine."""
        check_failed_installation(str(tmp_path / "missing"))

    def test_sentinel_content_in_error(self, tmp_path):
        sentinel = tmp_path / "fail"
        sentinel.write_text("disk too small")

        with pytest.raises(DeploymentError, match="disk too small"):
            check_failed_installation(str(sentinel))


class TestEjectScript:
    """Tests for the CD eject script."""

    def test_written_when_booted_from_cd(self, install, config, detector, paths):
        """Test the eject script is installed for CD boots."""
        config.eject_cd = True
        detector.from_cd = True

        install().run()

        script = Path(paths.eject_script)
        assert script.read_text() == constants.EJECT_SCRIPT
        assert os.stat(script).st_mode & 0o777 == 0o744

    def test_not_written_otherwise(self, install, config, paths):
        """Test no eject script without a CD boot."""
        config.eject_cd = True

        install().run()

        assert not Path(paths.eject_script).exists()


class TestIsoInstall:
    """Tests for installs sourced from an ISO image."""

    ISO = "https://example.com/kairos.iso"

    @pytest.fixture
    def iso_work(self, paths):
        return Path(paths.tmp_dir) / "iso-work"

    def test_iso_fetched_and_released(self, install, elemental):
        """Test the ISO is mounted first and released by the cleanup."""
        install(source="", iso=self.ISO).run()

        names = elemental.names()
        assert names[0] == "get_iso"
        assert elemental.calls[0] == ("get_iso", self.ISO)
        assert names.index("release_iso") > max(
            index for index, name in enumerate(names) if name == "deploy_image"
        )

    def test_iso_released_on_failure(self, install, elemental, iso_work):
        """Test a failed deployment still releases the ISO."""
        elemental.fail_on = "deploy_image"

        with pytest.raises(RuntimeError, match="deploy_image failed"):
            install(source="", iso=self.ISO).run()
        assert ("release_iso", str(iso_work)) in elemental.calls

    def test_sources_rewritten_before_deploy(self, install, paths, iso_work):
        """Test Active deploys the ISO rootfs and Recovery copies Active."""
        action = install(iso=self.ISO)

        action.run()

        rootfs = str(iso_work / "rootfs")
        assert action.spec.active.source == ImageSource.from_dir(rootfs)
        images = Path(paths.state_dir) / constants.IMAGES_SUBDIR
        assert (images / "active.img").read_text() == f"deployed:dir://{rootfs}"
        assert action.spec.recovery.source == ImageSource.from_file(action.spec.active.file)

    def test_recovery_from_iso_squashfs(self, install, elemental, iso_work):
        """Test a squashfs on the ISO becomes the Recovery source."""
        squashed = iso_work / "iso" / constants.RECOVERY_SQUASH_FILE
        squashed.parent.mkdir(parents=True)
        squashed.write_text("squashed recovery")
        action = install(source="", iso=self.ISO)

        action.run()

        assert action.spec.recovery.fs == constants.SQUASH_FS
        assert Path(action.spec.recovery.file).read_text() == "squashed recovery"
