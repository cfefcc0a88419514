"""GPT partitioning of fixture images.

Writes a GPT label and a single EFI System Partition with parted. The image
is a regular file, so no privilege is needed here.

Layout:
    - GPT label
    - One partition, named after its role (ESP), type fat32
    - Start at 1MiB for alignment, running to the end of the image
    - esp flag set
"""

from __future__ import annotations

import subprocess
from typing import Optional

from efi_harness.domain.models import MIN_IMAGE_SIZE, DiskImage, PartitionSpec
from efi_harness.logging import LoggerFactory
from efi_harness.storage.exceptions import PartitionError
from efi_harness.storage.tools import run_command


log = LoggerFactory.for_disk()


def partition_commands(
    image: DiskImage, spec: PartitionSpec, parted: str = "parted"
) -> list[list[str]]:
    """The parted invocations that lay out ``spec`` on ``image``."""
    path = str(image.path)
    commands = [
        [parted, "-s", path, "mklabel", "gpt"],
        [
            parted,
            "-s",
            path,
            "mkpart",
            spec.name,
            spec.filesystem,
            spec.start_arg,
            spec.end_arg,
        ],
    ]
    if spec.esp:
        commands.append([parted, "-s", path, "set", "1", "esp", "on"])
    return commands


def plan(
    image: DiskImage,
    spec: Optional[PartitionSpec] = None,
    parted: str = "parted",
) -> None:
    """Write a GPT label with a single partition matching ``spec``.

    Re-running on the same image replaces the existing table.

    Args:
        image: Allocated image
        spec: Partition layout (defaults to a to-end ESP at 1MiB)
        parted: parted executable

    Raises:
        PartitionError: If the image is too small or parted fails
    """
    spec = spec or PartitionSpec()
    if image.size_bytes < MIN_IMAGE_SIZE:
        raise PartitionError(
            str(image.path),
            f"image is {image.size_bytes} bytes; at least {MIN_IMAGE_SIZE} "
            "bytes are needed for GPT and a FAT32 partition",
        )
    if spec.span_bytes is not None:
        end = spec.start_bytes + spec.span_bytes
        # Backup GPT header and entries occupy the last 33 sectors
        if end > image.size_bytes - 33 * 512:
            raise PartitionError(
                str(image.path), f"partition end {end} exceeds usable image space"
            )

    log.debug(f"Writing GPT with {spec.name} partition to {image.path}")
    for command in partition_commands(image, spec, parted):
        try:
            result = run_command(command, check=False, log_command=True)
        except OSError as error:
            raise PartitionError(str(image.path), str(error)) from error
        if result.returncode != 0:
            stderr_msg = result.stderr.strip() if result.stderr else ""
            stdout_msg = result.stdout.strip() if result.stdout else ""
            reason = stderr_msg or stdout_msg or f"exit status {result.returncode}"
            log.error(f"parted failed: {' '.join(command)}: {reason}")
            raise PartitionError(str(image.path), reason)

    log.info(f"Partitioned {image.path}: GPT, {spec.name} {spec.filesystem} from {spec.start_arg}")


def describe(image: DiskImage, parted: str = "parted") -> str:
    """Human-readable partition layout of ``image``."""
    try:
        result = run_command(
            [parted, "-s", str(image.path), "unit", "MiB", "print"],
            log_output=False,
        )
    except (subprocess.CalledProcessError, OSError) as error:
        log.warning(f"Could not read partition layout of {image.path}: {error}")
        return ""
    return result.stdout.strip()
