"""Raw disk image allocation.

The image is built under a temporary name in the destination directory and
renamed over the target only once it has reached its full size, so callers
either get a complete zero-filled file or no new file at all.
"""

from __future__ import annotations

import contextlib
import errno
import os
import shutil
import tempfile
from pathlib import Path

from efi_harness.domain.models import SECTOR_SIZE, DiskImage
from efi_harness.logging import LoggerFactory
from efi_harness.storage.exceptions import AllocationError


log = LoggerFactory.for_disk()

_FALLOCATE_UNSUPPORTED = {errno.EOPNOTSUPP, errno.EINVAL, errno.ENOSYS}


def validate_size(size_bytes: int) -> None:
    if not isinstance(size_bytes, int) or isinstance(size_bytes, bool):
        raise ValueError(f"Image size must be an integer: {size_bytes!r}")
    if size_bytes <= 0:
        raise ValueError(f"Image size must be positive: {size_bytes}")
    if size_bytes % SECTOR_SIZE:
        raise ValueError(
            f"Image size {size_bytes} is not a multiple of the "
            f"{SECTOR_SIZE} byte sector size"
        )


def _reserve(fd: int, size_bytes: int) -> None:
    os.ftruncate(fd, size_bytes)
    if hasattr(os, "posix_fallocate"):
        try:
            os.posix_fallocate(fd, 0, size_bytes)
        except OSError as error:
            if error.errno not in _FALLOCATE_UNSUPPORTED:
                raise
            log.debug(f"posix_fallocate unsupported here ({error}); image stays sparse")
    os.fsync(fd)


def allocate(path: Path | str, size_bytes: int) -> DiskImage:
    """Create (or replace) a zero-filled image of exactly ``size_bytes``.

    Args:
        path: Destination image path
        size_bytes: Image size, a positive multiple of 512

    Returns:
        DiskImage describing the new file

    Raises:
        AllocationError: If the size is invalid, the directory is not
            writable, or the filesystem lacks space
    """
    path = Path(path)
    try:
        validate_size(size_bytes)
    except ValueError as error:
        raise AllocationError(str(path), str(error)) from error

    directory = path.parent if str(path.parent) else Path(".")
    if not directory.is_dir():
        raise AllocationError(str(path), f"directory {directory} does not exist")

    try:
        free_bytes = shutil.disk_usage(directory).free
    except OSError as error:
        raise AllocationError(str(path), str(error)) from error
    existing = path.stat().st_size if path.is_file() else 0
    if size_bytes > free_bytes + existing:
        raise AllocationError(
            str(path),
            f"insufficient space ({free_bytes} bytes free, {size_bytes} needed)",
        )

    log.debug(f"Allocating {size_bytes} byte image at {path}")
    try:
        fd, temp_name = tempfile.mkstemp(
            prefix=f".{path.name}.", suffix=".tmp", dir=directory
        )
    except OSError as error:
        raise AllocationError(str(path), str(error)) from error

    try:
        try:
            _reserve(fd, size_bytes)
        finally:
            os.close(fd)
        os.chmod(temp_name, 0o644)
        os.replace(temp_name, path)
    except OSError as error:
        with contextlib.suppress(FileNotFoundError):
            os.unlink(temp_name)
        raise AllocationError(str(path), error.strerror or str(error)) from error

    log.info(f"Allocated {size_bytes // (1024 * 1024)} MiB image {path}")
    return DiskImage(path=path, size_bytes=size_bytes)


def remove(image: DiskImage) -> None:
    """Delete an image file if it still exists."""
    with contextlib.suppress(FileNotFoundError):
        Path(image.path).unlink()
        log.debug(f"Removed image {image.path}")
