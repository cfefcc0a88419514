"""Privileged block-device operations behind a swappable interface.

Attaching loop devices, creating filesystems and mounting all need root.
The pipeline only talks to ``PrivilegedOps``; which implementation it gets
depends on how the harness was started:

    DirectPrivilegedOps:  running as root, tools are invoked as-is
    SudoPrivilegedOps:    running unprivileged, tools are prefixed with sudo

Both raise ``subprocess.CalledProcessError`` when a tool fails; callers turn
that into the error of the phase they are in.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional, Sequence

from efi_harness.logging import LoggerFactory
from efi_harness.storage.tools import ToolAvailability, needs_escalation, run_command


log = LoggerFactory.for_loop()

_LOOP_NAME = re.compile(r"^/dev/loop\d+$")
_DELETED_SUFFIX = " (deleted)"


class PrivilegedOps:
    """Capability interface for operations that need root."""

    escalates = False

    def attach_loop(self, image_path: Path) -> str:
        """Attach ``image_path`` to a free loop device with partition scan.

        Returns:
            Loop device path (e.g., "/dev/loop3")
        """
        raise NotImplementedError

    def detach_loop(self, loop_device: str) -> None:
        raise NotImplementedError

    def loop_backing_file(self, loop_device: str) -> Optional[str]:
        """Resolved path of the file behind ``loop_device``, or None if detached."""
        name = Path(loop_device).name
        try:
            text = Path(f"/sys/block/{name}/loop/backing_file").read_text().strip()
        except OSError:
            return None
        if text.endswith(_DELETED_SUFFIX):
            text = text[: -len(_DELETED_SUFFIX)]
        return os.path.realpath(text) if text else None

    def loop_attached(self, loop_device: str) -> bool:
        """Whether ``loop_device`` still has a backing file."""
        return self.loop_backing_file(loop_device) is not None

    def make_fat32(self, device: str, label: str) -> None:
        raise NotImplementedError

    def mount(self, device: str, mount_point: Path, options: Sequence[str] = ()) -> None:
        raise NotImplementedError

    def unmount(self, mount_point: Path, lazy: bool = False) -> None:
        """Unmount ``mount_point``; ``lazy`` detaches it even while busy."""
        raise NotImplementedError

    def is_mounted(self, mount_point: Path) -> bool:
        return os.path.ismount(mount_point)


class CommandPrivilegedOps(PrivilegedOps):
    """Runs the util-linux / dosfstools tools, optionally through a prefix."""

    def __init__(
        self,
        prefix: Sequence[str] = (),
        tools: Optional[ToolAvailability] = None,
    ):
        self.prefix = list(prefix)
        self.tools = tools or ToolAvailability()

    def _run(self, tool: str, *args: str):
        command = [*self.prefix, self.tools.path(tool), *args]
        return run_command(command)

    def attach_loop(self, image_path: Path) -> str:
        result = self._run("losetup", "--find", "--show", "--partscan", str(image_path))
        loop_device = result.stdout.strip().splitlines()[-1] if result.stdout else ""
        if not _LOOP_NAME.match(loop_device):
            raise ValueError(f"losetup returned an unexpected device: {loop_device!r}")
        log.debug(f"Attached {image_path} to {loop_device}")
        return loop_device

    def detach_loop(self, loop_device: str) -> None:
        self._run("losetup", "-d", loop_device)
        log.debug(f"Detached {loop_device}")

    def make_fat32(self, device: str, label: str) -> None:
        self._run("mkfs.fat", "-F", "32", "-n", label, device)

    def mount(self, device: str, mount_point: Path, options: Sequence[str] = ()) -> None:
        args = ["mount"]
        if options:
            args.extend(["-o", ",".join(options)])
        args.extend([device, str(mount_point)])
        self._run(*args)

    def unmount(self, mount_point: Path, lazy: bool = False) -> None:
        if lazy:
            self._run("umount", "-l", str(mount_point))
        else:
            self._run("umount", str(mount_point))


class DirectPrivilegedOps(CommandPrivilegedOps):
    """Used when the harness already runs as root."""

    def __init__(self, tools: Optional[ToolAvailability] = None):
        super().__init__(prefix=(), tools=tools)


class SudoPrivilegedOps(CommandPrivilegedOps):
    """Escalates each privileged command through sudo."""

    escalates = True

    def __init__(self, tools: Optional[ToolAvailability] = None):
        tools = tools or ToolAvailability()
        super().__init__(prefix=(tools.path("sudo"),), tools=tools)


def select_privileged_ops(tools: Optional[ToolAvailability] = None) -> PrivilegedOps:
    """Pick the implementation matching the current privileges."""
    if needs_escalation():
        log.debug("Not running as root; privileged commands go through sudo")
        return SudoPrivilegedOps(tools)
    return DirectPrivilegedOps(tools)
