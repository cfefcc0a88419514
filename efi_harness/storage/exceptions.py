"""Custom exceptions for fixture provisioning and emulator runs.

Every exception carries the name of the pipeline phase that failed so the
command line can report where things went wrong.

Exception Hierarchy:
    HarnessError (base)
        ├── PreconditionError
        ├── AllocationError
        ├── PartitionError
        ├── BindError
        │   ├── BindTimeoutError
        │   ├── BindUnavailableError
        │   └── BindConflictError
        ├── ProvisioningError
        ├── EmulatorExitError
        └── BuildError

Usage:
    from efi_harness.storage.exceptions import BindTimeoutError

    raise BindTimeoutError("/dev/loop3p1", timeout=5.0)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Iterable, Optional

if TYPE_CHECKING:
    from efi_harness.domain.models import ExitStatus


class HarnessError(Exception):
    """Base exception for all harness operations."""

    phase = "harness"

    def __init__(self, message: str, phase: Optional[str] = None):
        if phase is not None:
            self.phase = phase
        super().__init__(message)


class PreconditionError(HarnessError):
    """A required tool or input file is missing; nothing has been touched."""

    phase = "preflight"

    def __init__(
        self,
        message: str,
        *,
        missing_tools: Iterable[str] = (),
        missing_path: Optional[str] = None,
        guidance: str = "",
    ):
        self.missing_tools = list(missing_tools)
        self.missing_path = missing_path
        self.guidance = guidance
        super().__init__(message)


class AllocationError(HarnessError):
    """The raw image file could not be created."""

    phase = "allocate"

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to allocate image {path}: {reason}")


class PartitionError(HarnessError):
    """The partitioning tool rejected the image."""

    phase = "partition"

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to partition {path}: {reason}")


class BindError(HarnessError):
    """Base exception for loop device binding errors."""

    phase = "bind"


class BindTimeoutError(BindError):
    """The partition device node never appeared after binding."""

    def __init__(self, partition_device: str, timeout: float):
        self.partition_device = partition_device
        self.timeout = timeout
        super().__init__(
            f"Partition device {partition_device} did not appear "
            f"within {timeout:.1f}s"
        )


class BindUnavailableError(BindError):
    """No free loop device could be obtained. Retryable by the caller."""

    def __init__(self, image_path: str, reason: str = ""):
        self.image_path = image_path
        self.reason = reason
        msg = f"No loop device available for {image_path}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class BindConflictError(BindError):
    """The image is already bound by this process."""

    def __init__(self, image_path: str, loop_device: str):
        self.image_path = image_path
        self.loop_device = loop_device
        super().__init__(f"Image {image_path} is already bound to {loop_device}")


class ProvisioningError(HarnessError):
    """A formatting, mounting or copying step failed."""

    phase = "provision"

    def __init__(self, step: str, reason: str, device: Optional[str] = None):
        self.step = step
        self.reason = reason
        self.device = device
        target = f" on {device}" if device else ""
        super().__init__(f"Provisioning step '{step}' failed{target}: {reason}")


class EmulatorExitError(HarnessError):
    """The emulator exited non-zero, was killed, or was cancelled."""

    phase = "emulate"

    def __init__(self, status: ExitStatus):
        self.status = status
        super().__init__(f"Emulator finished with {status.describe()}")


class BuildError(HarnessError):
    """Building the test EFI application failed."""

    phase = "build"
