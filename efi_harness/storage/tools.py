"""External tool discovery and command execution.

All external programs the harness drives are looked up once, up front, by
``discover_tools()``. The resulting ``ToolAvailability`` map is consulted
before any side effect happens, so a missing tool aborts the run without
leaving an image file or loop device behind.

Tool Groups:
    disk:     parted, mkfs.fat, losetup, mount, umount
    emulator: qemu-system-x86_64
    build:    cargo

Privilege escalation (sudo) is added to the disk group when the harness is
not running as root.
"""

from __future__ import annotations

import os
import shutil
import subprocess
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional, Sequence

from efi_harness.logging import LoggerFactory
from efi_harness.storage.exceptions import PreconditionError


log = LoggerFactory.for_system()

# Some distributions do not add /sbin to the default PATH, where mkfs lives
EXTRA_SEARCH_DIRS = ("/usr/sbin", "/sbin")

DISK_TOOLS = ("parted", "mkfs.fat", "losetup", "mount", "umount")
EMULATOR_TOOLS = ("qemu-system-x86_64",)
BUILD_TOOLS = ("cargo",)

# tool -> (Fedora/RHEL package, Debian/Ubuntu package)
TOOL_PACKAGES: dict[str, tuple[str, str]] = {
    "parted": ("parted", "parted"),
    "mkfs.fat": ("dosfstools", "dosfstools"),
    "losetup": ("util-linux", "util-linux"),
    "mount": ("util-linux", "mount"),
    "umount": ("util-linux", "mount"),
    "sudo": ("sudo", "sudo"),
    "qemu-system-x86_64": ("qemu-system-x86", "qemu-system-x86"),
    "cargo": ("cargo", "cargo"),
}


def run_command(
    command: Sequence[str],
    check: bool = True,
    log_output: bool = True,
    log_command: bool = True,
    input_text: Optional[str] = None,
    cwd: Optional[os.PathLike | str] = None,
) -> subprocess.CompletedProcess:
    if log_command:
        log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(
            list(command),
            check=check,
            text=True,
            capture_output=True,
            input=input_text,
            cwd=cwd,
        )
    except subprocess.CalledProcessError as error:
        log.debug(f"Command failed: {' '.join(command)}")
        if error.stdout:
            log.debug(f"stdout: {error.stdout.strip()}")
        if error.stderr:
            log.debug(f"stderr: {error.stderr.strip()}")
        raise
    if result.stdout and (log_output or result.returncode != 0):
        log.debug(f"stdout: {result.stdout.strip()}")
    if result.stderr and (log_output or result.returncode != 0):
        log.debug(f"stderr: {result.stderr.strip()}")
    if log_command:
        log.debug(f"Command completed with return code {result.returncode}")
    return result


def command_error_text(error: subprocess.CalledProcessError) -> str:
    """Best human-readable reason from a failed command."""
    stderr = (error.stderr or "").strip() if isinstance(error.stderr, str) else ""
    stdout = (error.stdout or "").strip() if isinstance(error.stdout, str) else ""
    return stderr or stdout or f"exit status {error.returncode}"


def find_tool(name: str) -> Optional[str]:
    """Locate a tool on PATH, falling back to the sbin directories."""
    path = shutil.which(name)
    if path:
        return path
    extra_path = os.pathsep.join(EXTRA_SEARCH_DIRS)
    return shutil.which(name, path=extra_path)


def needs_escalation() -> bool:
    return os.geteuid() != 0


@dataclass(frozen=True)
class ToolAvailability:
    """Resolved location of every tool that was asked for."""

    paths: Mapping[str, Optional[str]] = field(default_factory=dict)

    @property
    def missing(self) -> list[str]:
        return [name for name, path in self.paths.items() if not path]

    def available(self, name: str) -> bool:
        return bool(self.paths.get(name))

    def path(self, name: str) -> str:
        """Absolute path of a tool, or its bare name when not resolved."""
        return self.paths.get(name) or name

    def require(self, names: Iterable[str]) -> None:
        """Raise PreconditionError if any of ``names`` is missing."""
        missing = [name for name in names if not self.available(name)]
        if missing:
            raise PreconditionError(
                f"Required tool(s) not installed: {', '.join(missing)}",
                missing_tools=missing,
                guidance=install_guidance(missing),
            )


def discover_tools(
    *,
    disk: bool = False,
    emulator: bool = False,
    build: bool = False,
    qemu_binary: Optional[str] = None,
    extra: Iterable[str] = (),
) -> ToolAvailability:
    """Look up every tool needed for the requested phases.

    Args:
        disk: Include the image/partition/format/mount tools
        emulator: Include the emulator binary
        build: Include the cargo toolchain
        qemu_binary: Override the emulator binary name
        extra: Additional tool names to resolve

    Returns:
        ToolAvailability map of tool name to absolute path (or None)
    """
    names: list[str] = []
    if disk:
        names.extend(DISK_TOOLS)
        if needs_escalation():
            names.append("sudo")
    if emulator:
        names.append(qemu_binary or EMULATOR_TOOLS[0])
    if build:
        names.extend(BUILD_TOOLS)
    names.extend(extra)

    paths: dict[str, Optional[str]] = {}
    for name in names:
        if name in paths:
            continue
        paths[name] = find_tool(name)
        log.debug(f"Tool {name}: {paths[name] or 'not found'}")
    return ToolAvailability(paths=paths)


def install_guidance(missing: Iterable[str]) -> str:
    """Package installation hint for the given missing tools."""
    missing = list(missing)
    fedora = sorted({TOOL_PACKAGES.get(name, (name, name))[0] for name in missing})
    debian = sorted({TOOL_PACKAGES.get(name, (name, name))[1] for name in missing})
    lines = [
        f"  On Fedora/RHEL: sudo dnf install {' '.join(fedora)}",
        f"  On Debian/Ubuntu: sudo apt install {' '.join(debian)}",
    ]
    if "cargo" in missing:
        lines.append("  Or install the Rust toolchain from https://rustup.rs")
    return "\n".join(lines)
