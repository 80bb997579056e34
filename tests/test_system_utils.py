"""Tests for system service and power helpers."""

import subprocess
from unittest.mock import Mock, patch

import pytest

from kairos_agent import system_utils


class TestRunCommand:
    @patch("kairos_agent.system_utils.subprocess.run")
    def test_does_not_raise(self, mock_run):
        mock_run.return_value = Mock(returncode=3, stdout="", stderr="{unit} failed")

        result = system_utils.run_command(["systemctl", "restart", "x"])

        assert result.returncode == 3
        mock_run.assert_called_once_with(
            ["systemctl", "restart", "x"], cwd=None, capture_output=True, text=True, check=False
        )

    @pytest.mark.parametrize("args", [[], [""], ["ls", 3]])
    def test_invalid_args(self, args):
        with pytest.raises(ValueError):
            system_utils.run_command(args)


class TestSystemctl:
    @patch("kairos_agent.system_utils.shutil.which", return_value=None)
    def test_missing_systemctl(self, mock_which):
        result = system_utils.restart_service("systemd-sysext")

        assert result.returncode == 1
        assert result.stderr == "systemctl missing"

    @patch("kairos_agent.system_utils.run_command")
    @patch("kairos_agent.system_utils.shutil.which", return_value="/usr/bin/systemctl")
    def test_restart(self, mock_which, mock_run):
        system_utils.restart_service("systemd-sysext")

        mock_run.assert_called_once_with(["systemctl", "restart", "systemd-sysext"])


class TestPower:
    @patch("kairos_agent.system_utils.time.sleep")
    @patch("kairos_agent.system_utils.run_systemctl_command")
    def test_reboot_after_delay(self, mock_systemctl, mock_sleep):
        mock_systemctl.return_value = subprocess.CompletedProcess(["systemctl"], 0)

        system_utils.reboot_system(5)

        mock_sleep.assert_called_once_with(5)
        mock_systemctl.assert_called_once_with(["reboot"])

    @patch("kairos_agent.system_utils.time.sleep")
    @patch("kairos_agent.system_utils.run_systemctl_command")
    def test_poweroff_without_delay(self, mock_systemctl, mock_sleep):
        system_utils.poweroff_system()

        mock_sleep.assert_not_called()
        mock_systemctl.assert_called_once_with(["poweroff"])

    @patch("kairos_agent.system_utils.os.sync")
    def test_sync(self, mock_sync):
        system_utils.sync()

        mock_sync.assert_called_once()
