"""FAT32 formatting and payload installation on a bound partition.

Provisioning Steps:
    format:          mkfs.fat -F 32 with a fixed volume label
    mkdtemp:         create a uniquely named mount point directory
    mount:           mount the partition owned by the invoking user
    mkdir:           create the payload directory tree (EFI/BOOT)
    install-payload: write the boot binary
    install-script:  write startup.nsh (only when the payload has one)
    sync:            fsync files and directories, then flush the filesystem
    unmount:         unmount the partition
    rmdir:           remove the mount point directory

Each step that acquires something registers its release on a CleanupStack,
so a failure at any step unmounts and removes the mount point before the
ProvisioningError naming that step reaches the caller.

Example:
    >>> provisioner = FilesystemProvisioner(select_privileged_ops())
    >>> provisioner.provision("/dev/loop3p1", BootPayload(content=b"MZ..."))
"""

from __future__ import annotations

import contextlib
import os
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Generator, Optional

from efi_harness.config.settings import DEFAULT_VOLUME_LABEL, get_setting
from efi_harness.domain.models import STARTUP_SCRIPT_PATH, BootPayload, MountHandle
from efi_harness.logging import LoggerFactory
from efi_harness.storage.cleanup import CleanupStack
from efi_harness.storage.exceptions import ProvisioningError
from efi_harness.storage.privileged import PrivilegedOps
from efi_harness.storage.tools import command_error_text


log = LoggerFactory.for_disk()

MOUNT_PREFIX = "efi-harness-mnt-"
FAT_LABEL_MAX = 11


def validate_label(label: str) -> str:
    """Normalize a FAT volume label (upper case, at most 11 characters)."""
    label = (label or "").strip().upper()
    if not label:
        raise ValueError("Volume label must not be empty")
    if len(label) > FAT_LABEL_MAX:
        raise ValueError(f"Volume label {label!r} exceeds {FAT_LABEL_MAX} characters")
    if any(char in label for char in '"*+,./:;<=>?[\\]|'):
        raise ValueError(f"Volume label {label!r} contains invalid characters")
    return label


def _write_file(path: Path, data: bytes) -> None:
    with open(path, "wb") as handle:
        handle.write(data)
        handle.flush()
        os.fsync(handle.fileno())


def _fsync_dir(path: Path) -> None:
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


class FilesystemProvisioner:
    """Formats a partition as FAT32 and installs a boot payload on it."""

    def __init__(
        self,
        ops: PrivilegedOps,
        *,
        label: Optional[str] = None,
        mount_root: Optional[Path] = None,
    ):
        self.ops = ops
        self.label = validate_label(label or get_setting("volume_label", DEFAULT_VOLUME_LABEL))
        self.mount_root = mount_root

    @contextlib.contextmanager
    def _step(self, name: str, device: str) -> Generator[None, None, None]:
        log.debug(f"Provisioning step: {name}")
        try:
            yield
        except ProvisioningError:
            raise
        except subprocess.CalledProcessError as error:
            raise ProvisioningError(name, command_error_text(error), device) from error
        except (OSError, ValueError) as error:
            raise ProvisioningError(name, str(error), device) from error

    def provision(self, partition_device: str, payload: BootPayload) -> None:
        """Format ``partition_device`` and install ``payload`` on it.

        Raises:
            ProvisioningError: Carrying the name of the step that failed
        """
        device = partition_device
        with CleanupStack("provision") as cleanup:
            with self._step("format", device):
                self.ops.make_fat32(device, self.label)
            log.info(f"Formatted {device} as FAT32 ({self.label})")

            with self._step("mkdtemp", device):
                mount_point = Path(
                    tempfile.mkdtemp(prefix=MOUNT_PREFIX, dir=self.mount_root)
                )
            cleanup.push("rmdir", self._remove_mount_point, mount_point)

            with self._step("mount", device):
                handle = self._mount(device, mount_point)
            cleanup.push("unmount", self._release_mount, handle)

            written: list[Path] = []
            target = mount_point / payload.relative_install_path
            with self._step("mkdir", device):
                target.parent.mkdir(parents=True, exist_ok=True)

            with self._step("install-payload", device):
                _write_file(target, payload.content)
                written.append(target)
            log.info(
                f"Installed {len(payload.content)} byte payload at {payload.install_path}"
            )

            if payload.startup_script is not None:
                script = mount_point / STARTUP_SCRIPT_PATH.lstrip("/")
                with self._step("install-script", device):
                    _write_file(script, payload.startup_script.encode("utf-8"))
                    written.append(script)
                log.info(f"Installed startup script at {STARTUP_SCRIPT_PATH}")

            with self._step("sync", device):
                self._sync(mount_point, written)

            with self._step("unmount", device):
                self._unmount(handle)
            cleanup.discard("unmount")
            with self._step("rmdir", device):
                cleanup.release("rmdir")

    def _mount(self, device: str, mount_point: Path) -> MountHandle:
        options = [f"uid={os.getuid()}", f"gid={os.getgid()}"]
        try:
            self.ops.mount(device, mount_point, options)
        except BaseException:
            # A mount that failed part-way must not stay attached
            if self.ops.is_mounted(mount_point):
                with contextlib.suppress(subprocess.CalledProcessError, OSError):
                    self.ops.unmount(mount_point)
            raise
        log.debug(f"Mounted {device} at {mount_point}")
        return MountHandle(mount_point=mount_point, device=device)

    def _unmount(self, handle: MountHandle) -> None:
        self.ops.unmount(handle.mount_point)
        log.debug(f"Unmounted {handle.device} from {handle.mount_point}")

    def _release_mount(self, handle: MountHandle) -> None:
        # Unwind path: the device must not stay mounted once the loop is detached
        if not self.ops.is_mounted(handle.mount_point):
            return
        try:
            self._unmount(handle)
        except (subprocess.CalledProcessError, OSError) as error:
            log.warning(
                f"Unmount of {handle.mount_point} failed ({error}); detaching lazily"
            )
            self.ops.unmount(handle.mount_point, lazy=True)

    def _remove_mount_point(self, mount_point: Path) -> None:
        if not mount_point.exists():
            return
        if self.ops.is_mounted(mount_point):
            raise OSError(f"Refusing to remove {mount_point}: still mounted")
        try:
            mount_point.rmdir()
        except OSError:
            # Leftovers on the underlying directory (not the volume) are ours
            shutil.rmtree(mount_point)
        log.debug(f"Removed mount point {mount_point}")

    def _sync(self, mount_point: Path, written: list[Path]) -> None:
        directories = {mount_point}
        for path in written:
            directories.update(
                parent for parent in path.parents if mount_point in parent.parents
            )
        for directory in sorted(directories, key=lambda p: len(p.parts), reverse=True):
            _fsync_dir(directory)
        os.sync()
