"""Tests for storage/tools.py - tool discovery and command execution."""

import subprocess
from unittest.mock import Mock, patch

import pytest

from efi_harness.storage import tools
from efi_harness.storage.exceptions import PreconditionError


class TestRunCommand:
    """Tests for run_command()."""

    @patch("subprocess.run")
    def test_runs_with_captured_text_output(self, mock_run):
        mock_run.return_value = Mock(returncode=0, stdout="ok\n", stderr="")

        result = tools.run_command(["parted", "--version"])

        assert result.stdout == "ok\n"
        mock_run.assert_called_once_with(
            ["parted", "--version"],
            check=True,
            text=True,
            capture_output=True,
            input=None,
            cwd=None,
        )

    @patch("subprocess.run")
    def test_check_false_passed_through(self, mock_run):
        mock_run.return_value = Mock(returncode=1, stdout="", stderr="bad")

        result = tools.run_command(["false"], check=False)

        assert result.returncode == 1
        assert mock_run.call_args.kwargs["check"] is False

    @patch("subprocess.run")
    def test_called_process_error_propagates(self, mock_run):
        mock_run.side_effect = subprocess.CalledProcessError(
            1, ["losetup"], output="", stderr="losetup: failed"
        )

        with pytest.raises(subprocess.CalledProcessError):
            tools.run_command(["losetup", "-f"])


class TestCommandErrorText:
    def test_prefers_stderr(self):
        error = subprocess.CalledProcessError(1, ["x"], output="out", stderr=" err \n")
        assert tools.command_error_text(error) == "err"

    def test_falls_back_to_stdout(self):
        error = subprocess.CalledProcessError(1, ["x"], output="out", stderr="")
        assert tools.command_error_text(error) == "out"

    def test_falls_back_to_exit_status(self):
        error = subprocess.CalledProcessError(32, ["x"])
        assert tools.command_error_text(error) == "exit status 32"


class TestToolAvailability:
    """Tests for ToolAvailability."""

    def test_missing_and_available(self):
        availability = tools.ToolAvailability(
            paths={"parted": "/usr/sbin/parted", "mkfs.fat": None}
        )
        assert availability.missing == ["mkfs.fat"]
        assert availability.available("parted") is True
        assert availability.available("mkfs.fat") is False

    def test_path_falls_back_to_name(self):
        availability = tools.ToolAvailability(paths={"parted": "/usr/sbin/parted"})
        assert availability.path("parted") == "/usr/sbin/parted"
        assert availability.path("losetup") == "losetup"

    def test_require_raises_with_missing_tool_names(self):
        availability = tools.ToolAvailability(
            paths={"parted": "/usr/sbin/parted", "mkfs.fat": None}
        )

        with pytest.raises(PreconditionError) as exc_info:
            availability.require(availability.paths)

        assert exc_info.value.missing_tools == ["mkfs.fat"]
        assert "mkfs.fat" in str(exc_info.value)
        assert "dosfstools" in exc_info.value.guidance

    def test_require_passes_when_all_present(self):
        availability = tools.ToolAvailability(paths={"parted": "/usr/sbin/parted"})
        availability.require(["parted"])


class TestDiscoverTools:
    """Tests for discover_tools()."""

    @patch("efi_harness.storage.tools.needs_escalation", return_value=False)
    @patch("efi_harness.storage.tools.find_tool")
    def test_disk_tools_as_root(self, mock_find, mock_escalation):
        mock_find.side_effect = lambda name: f"/usr/sbin/{name}"

        availability = tools.discover_tools(disk=True)

        assert list(availability.paths) == list(tools.DISK_TOOLS)
        assert availability.missing == []

    @patch("efi_harness.storage.tools.needs_escalation", return_value=True)
    @patch("efi_harness.storage.tools.find_tool")
    def test_sudo_required_when_unprivileged(self, mock_find, mock_escalation):
        mock_find.side_effect = lambda name: None if name == "sudo" else f"/usr/bin/{name}"

        availability = tools.discover_tools(disk=True)

        assert availability.missing == ["sudo"]

    @patch("efi_harness.storage.tools.find_tool", return_value="/usr/bin/tool")
    def test_emulator_and_build_groups(self, mock_find):
        availability = tools.discover_tools(
            emulator=True, build=True, qemu_binary="qemu-system-x86_64"
        )

        assert list(availability.paths) == ["qemu-system-x86_64", "cargo"]

    @patch("efi_harness.storage.tools.find_tool", return_value=None)
    def test_no_groups_requested(self, mock_find):
        assert tools.discover_tools().paths == {}
        mock_find.assert_not_called()


class TestFindTool:
    @patch("shutil.which")
    def test_falls_back_to_sbin(self, mock_which):
        mock_which.side_effect = [None, "/sbin/mkfs.fat"]

        assert tools.find_tool("mkfs.fat") == "/sbin/mkfs.fat"
        assert mock_which.call_args.kwargs["path"] == "/usr/sbin:/sbin"


class TestInstallGuidance:
    def test_lists_packages_for_both_families(self):
        guidance = tools.install_guidance(["parted", "mkfs.fat", "losetup"])

        assert "sudo dnf install dosfstools parted util-linux" in guidance
        assert "sudo apt install dosfstools parted util-linux" in guidance

    def test_cargo_mentions_rustup(self):
        assert "rustup" in tools.install_guidance(["cargo"])
