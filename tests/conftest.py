"""
Pytest configuration and shared fixtures for efi-harness tests.

This module provides common fixtures and utilities used across all test modules.
"""

import os
import tempfile
from pathlib import Path
from typing import Dict, List, Optional

import pytest
from loguru import logger


# Keep the suite away from the user's real settings and log directory.
# Must happen before efi_harness.config.settings is imported.
_TEST_STATE = Path(tempfile.gettempdir()) / "efi-harness-tests"
os.environ["EFI_HARNESS_SETTINGS_PATH"] = str(_TEST_STATE / "settings.json")
os.environ["EFI_HARNESS_LOG_DIR"] = str(_TEST_STATE / "logs")

from efi_harness.domain.models import MIB, BootPayload, DiskImage  # noqa: E402
from efi_harness.storage import loop as loop_module  # noqa: E402
from efi_harness.storage.privileged import PrivilegedOps  # noqa: E402


# ==============================================================================
# Privileged Operation Fakes
# ==============================================================================


class FakePrivilegedOps(PrivilegedOps):
    """In-memory stand-in for the root-only block device operations.

    Records every call in ``calls``. Assign an exception to
    ``failures[method_name]`` to make that operation fail. On unmount the
    files written under the mount point are snapshotted into ``volume``.
    A lazy unmount is recorded as ``unmount_lazy``.
    """

    def __init__(self, loop_device: str = "/dev/loop7"):
        self.loop_device = loop_device
        self.calls: List[tuple] = []
        self.failures: Dict[str, BaseException] = {}
        self.attached: set = set()
        self.backing: Dict[str, str] = {}
        self.mounted: set = set()
        self.volume: Dict[str, bytes] = {}
        self.mount_options: Optional[tuple] = None

    def _record(self, name: str, *args) -> None:
        self.calls.append((name, *args))
        error = self.failures.get(name)
        if error is not None:
            raise error

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    @property
    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]

    def attach_loop(self, image_path: Path) -> str:
        self._record("attach_loop", image_path)
        self.attached.add(self.loop_device)
        self.backing[self.loop_device] = os.path.realpath(image_path)
        return self.loop_device

    def detach_loop(self, loop_device: str) -> None:
        self._record("detach_loop", loop_device)
        self.attached.discard(loop_device)
        self.backing.pop(loop_device, None)

    def loop_backing_file(self, loop_device: str) -> Optional[str]:
        return self.backing.get(loop_device)

    def make_fat32(self, device: str, label: str) -> None:
        self._record("make_fat32", device, label)

    def mount(self, device: str, mount_point: Path, options=()) -> None:
        self._record("mount", device, mount_point)
        self.mount_options = tuple(options)
        self.mounted.add(Path(mount_point))

    def unmount(self, mount_point: Path, lazy: bool = False) -> None:
        self._record("unmount_lazy" if lazy else "unmount", mount_point)
        self.mounted.discard(Path(mount_point))
        for path in Path(mount_point).rglob("*"):
            if path.is_file():
                self.volume[path.relative_to(mount_point).as_posix()] = path.read_bytes()

    def is_mounted(self, mount_point: Path) -> bool:
        return Path(mount_point) in self.mounted


@pytest.fixture
def fake_ops() -> FakePrivilegedOps:
    """
    Fixture providing a fake privileged operations layer.

    Returns:
        FakePrivilegedOps that binds images to /dev/loop7.
    """
    return FakePrivilegedOps()


# ==============================================================================
# Domain Fixtures
# ==============================================================================


@pytest.fixture
def disk_image(tmp_path) -> DiskImage:
    """
    Fixture providing a DiskImage handle for a 64 MiB image.

    The file itself is not created; binder tests never read it.
    """
    return DiskImage(path=tmp_path / "test-disk.img", size_bytes=64 * MIB)


@pytest.fixture
def boot_payload() -> BootPayload:
    """
    Fixture providing a small boot payload with a startup script.

    Returns:
        BootPayload with PE-looking content and a one-line script.
    """
    return BootPayload(
        content=b"MZ\x90\x00test-application",
        startup_script="@echo -off\nmap -r\n",
    )


# ==============================================================================
# Registry Isolation
# ==============================================================================


@pytest.fixture(autouse=True)
def reset_loop_registry():
    """Clear the process-wide loop binding registry around each test."""
    with loop_module._lock:
        loop_module._active.clear()
    yield
    with loop_module._lock:
        loop_module._active.clear()


@pytest.fixture(autouse=True)
def remove_log_sinks():
    """Drop sinks a test added so none outlives the stream it was bound to."""
    yield
    logger.remove()


class FakeClock:
    """Deterministic monotonic clock whose sleep advances time."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    """Fixture providing a FakeClock starting at zero."""
    return FakeClock()
