"""Tests for storage exception classes."""

import pytest

from efi_harness.domain.models import ExitStatus
from efi_harness.storage.exceptions import (
    AllocationError,
    BindConflictError,
    BindError,
    BindTimeoutError,
    BindUnavailableError,
    BuildError,
    EmulatorExitError,
    HarnessError,
    PartitionError,
    PreconditionError,
    ProvisioningError,
)


class TestExceptionHierarchy:
    """Test exception inheritance hierarchy."""

    def test_harness_error_is_base_exception(self):
        """Test that HarnessError is base exception."""
        error = HarnessError("test error")
        assert isinstance(error, Exception)
        assert str(error) == "test error"
        assert error.phase == "harness"

    @pytest.mark.parametrize(
        "error",
        [
            PreconditionError("missing"),
            AllocationError("/tmp/disk.img", "no space"),
            PartitionError("/tmp/disk.img", "bad"),
            BindError("bind failed"),
            ProvisioningError("format", "bad"),
            EmulatorExitError(ExitStatus(returncode=1)),
            BuildError("cargo failed"),
        ],
    )
    def test_phase_errors_inherit_from_harness_error(self, error):
        """Test every phase error is a HarnessError."""
        assert isinstance(error, HarnessError)

    def test_bind_errors_inherit_from_bind_error(self):
        """Test binder failures share the BindError base."""
        assert isinstance(BindTimeoutError("/dev/loop0p1", 5.0), BindError)
        assert isinstance(BindUnavailableError("/tmp/disk.img"), BindError)
        assert isinstance(BindConflictError("/tmp/disk.img", "/dev/loop0"), BindError)


class TestPhaseNames:
    """Test each error reports the phase that failed."""

    @pytest.mark.parametrize(
        "error,phase",
        [
            (PreconditionError("missing"), "preflight"),
            (AllocationError("/tmp/disk.img", "no space"), "allocate"),
            (PartitionError("/tmp/disk.img", "bad"), "partition"),
            (BindTimeoutError("/dev/loop0p1", 5.0), "bind"),
            (ProvisioningError("mount", "busy"), "provision"),
            (EmulatorExitError(ExitStatus(returncode=1)), "emulate"),
            (BuildError("cargo failed"), "build"),
        ],
    )
    def test_phase(self, error, phase):
        assert error.phase == phase

    def test_phase_override(self):
        """Test an explicit phase overrides the class default."""
        assert HarnessError("boom", phase="custom").phase == "custom"


class TestErrorDetails:
    """Test error attributes and messages."""

    def test_precondition_error_carries_tools_and_guidance(self):
        error = PreconditionError(
            "Required tool(s) not installed: parted",
            missing_tools=["parted"],
            guidance="sudo apt install parted",
        )
        assert error.missing_tools == ["parted"]
        assert error.guidance == "sudo apt install parted"
        assert error.missing_path is None

    def test_bind_timeout_message(self):
        error = BindTimeoutError("/dev/loop3p1", 5.0)
        assert error.partition_device == "/dev/loop3p1"
        assert "did not appear within 5.0s" in str(error)

    def test_bind_unavailable_message_with_reason(self):
        error = BindUnavailableError("/tmp/disk.img", "could not find any free loop device")
        assert str(error) == (
            "No loop device available for /tmp/disk.img: "
            "could not find any free loop device"
        )

    def test_bind_unavailable_message_without_reason(self):
        assert str(BindUnavailableError("/tmp/disk.img")) == (
            "No loop device available for /tmp/disk.img"
        )

    def test_provisioning_error_names_step_and_device(self):
        error = ProvisioningError("install-payload", "No space left", "/dev/loop3p1")
        assert error.step == "install-payload"
        assert error.device == "/dev/loop3p1"
        assert str(error) == (
            "Provisioning step 'install-payload' failed on /dev/loop3p1: No space left"
        )

    def test_emulator_exit_error_describes_status(self):
        error = EmulatorExitError(ExitStatus(returncode=-9))
        assert "killed by signal 9" in str(error)
