"""Fixture build pipeline and test session runner.

Phases:
    allocate   -> DiskImage          (release: remove image, failure only)
    partition  -> GPT + ESP
    bind       -> LoopBinding        (release: unbind)
    provision  -> FAT32 + payload    (releases handled inside the provisioner)
    unbind

Every acquisition pushes its release onto one CleanupStack, so whichever
phase fails, the loop device is detached before the error reaches the
caller. The finished image is handed to the emulator only after the stack
has fully unwound.
"""

from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional

from efi_harness.domain.models import (
    BootPayload,
    DiskImage,
    ExitStatus,
    PartitionSpec,
    TestSession,
)
from efi_harness.emulator.harness import EmulatorHarness
from efi_harness.logging import LoggerFactory, operation_context
from efi_harness.storage import image as image_ops
from efi_harness.storage import partition
from efi_harness.storage.cleanup import CleanupStack
from efi_harness.storage.loop import BlockDeviceBinder
from efi_harness.storage.privileged import PrivilegedOps, select_privileged_ops
from efi_harness.storage.provision import FilesystemProvisioner
from efi_harness.storage.tools import ToolAvailability


log = LoggerFactory.for_disk(job_id="pipeline")


def _noop(_: str) -> None:
    return None


class DiskPipeline:
    """Builds a bootable fixture image from a payload."""

    def __init__(
        self,
        tools: Optional[ToolAvailability] = None,
        *,
        ops: Optional[PrivilegedOps] = None,
        binder: Optional[BlockDeviceBinder] = None,
        provisioner: Optional[FilesystemProvisioner] = None,
        label: Optional[str] = None,
        remove_image_on_failure: bool = False,
        on_phase: Optional[Callable[[str], None]] = None,
    ):
        self.tools = tools or ToolAvailability()
        self.ops = ops or select_privileged_ops(self.tools)
        self.binder = binder or BlockDeviceBinder(self.ops)
        self.provisioner = provisioner or FilesystemProvisioner(self.ops, label=label)
        self.remove_image_on_failure = remove_image_on_failure
        self.on_phase = on_phase or _noop

    def build(
        self,
        output: Path,
        size_bytes: int,
        payload: BootPayload,
        spec: Optional[PartitionSpec] = None,
    ) -> DiskImage:
        """Run every provisioning phase and return the finished image.

        Raises:
            AllocationError, PartitionError, BindError, ProvisioningError
        """
        spec = spec or PartitionSpec()
        with CleanupStack("disk") as cleanup:
            self.on_phase(f"Allocating {size_bytes // (1024 * 1024)} MiB image")
            with operation_context("allocate", image=str(output)):
                image = image_ops.allocate(output, size_bytes)
            cleanup.push("remove-image", image_ops.remove, image)

            self.on_phase(f"Writing GPT with {spec.name} partition")
            with operation_context("partition", image=str(image.path)):
                partition.plan(image, spec, parted=self.tools.path("parted"))
            if not self.remove_image_on_failure:
                # From here on a failed image is kept for inspection
                cleanup.discard("remove-image")

            self.on_phase("Binding loop device")
            with operation_context("bind", image=str(image.path)):
                binding = self.binder.bind(image)
            cleanup.push("unbind", self.binder.unbind, binding)

            self.on_phase(f"Formatting {binding.partition_device} and installing payload")
            with operation_context("provision", device=binding.partition_device):
                self.provisioner.provision(binding.partition_device, payload)

            self.on_phase(f"Releasing {binding.loop_device}")
            with operation_context("unbind", device=binding.loop_device):
                cleanup.release("unbind")
            cleanup.discard("remove-image")

        log.info(f"Test disk created: {image.path}")
        return image

    def describe(self, image: DiskImage) -> str:
        return partition.describe(image, parted=self.tools.path("parted"))


def run_session(session: TestSession, harness: EmulatorHarness) -> ExitStatus:
    """Run the emulator for ``session`` and return its terminal status."""
    with operation_context(
        "emulate", transport=session.transport.value, rom=str(session.firmware_rom)
    ):
        return harness.run(session)
