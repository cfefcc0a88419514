"""Domain model for disk fixtures and emulator sessions.

These frozen dataclasses are the handles passed between pipeline phases.
Each resource-owning handle (image, loop binding, mount) records exactly
what is needed to release it again.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Optional


SECTOR_SIZE = 512
MIB = 1024 * 1024
PARTITION_ALIGNMENT = 1 * MIB
MIN_IMAGE_SIZE = 16 * MIB

CANONICAL_PAYLOAD_PATH = "/EFI/BOOT/BOOTX64.EFI"
STARTUP_SCRIPT_PATH = "/startup.nsh"


# ==============================================================================
# Disk Image Domain
# ==============================================================================


class PartitionTableKind(Enum):
    """Partition table written to the image."""

    GPT = "gpt"


@dataclass(frozen=True)
class DiskImage:
    """A raw disk image file produced by the allocator."""

    path: Path
    size_bytes: int
    table: PartitionTableKind = PartitionTableKind.GPT

    @property
    def size_mib(self) -> float:
        """Size in mebibytes."""
        return self.size_bytes / MIB

    @property
    def sectors(self) -> int:
        return self.size_bytes // SECTOR_SIZE


@dataclass(frozen=True)
class PartitionSpec:
    """The single partition laid out on a fixture image.

    ``span_bytes`` of ``None`` means the partition runs to the end of the image.
    """

    name: str = "ESP"
    filesystem: str = "fat32"
    start_bytes: int = PARTITION_ALIGNMENT
    span_bytes: Optional[int] = None
    esp: bool = True

    def __post_init__(self) -> None:
        if self.start_bytes < PARTITION_ALIGNMENT:
            raise ValueError(
                f"Partition start {self.start_bytes} is below the "
                f"{PARTITION_ALIGNMENT} byte alignment"
            )
        if self.span_bytes is not None and self.span_bytes <= 0:
            raise ValueError(f"Partition span must be positive: {self.span_bytes}")

    @property
    def start_arg(self) -> str:
        """Start offset as understood by parted (e.g., "1MiB")."""
        if self.start_bytes % MIB == 0:
            return f"{self.start_bytes // MIB}MiB"
        return f"{self.start_bytes}B"

    @property
    def end_arg(self) -> str:
        """End offset as understood by parted ("100%" when spanning to end)."""
        if self.span_bytes is None:
            return "100%"
        return f"{self.start_bytes + self.span_bytes - 1}B"


# ==============================================================================
# Provisioning Handles
# ==============================================================================


@dataclass(frozen=True)
class LoopBinding:
    """An image attached to a loop device with partition scanning."""

    loop_device: str  # e.g., "/dev/loop3"
    partition_device: str  # e.g., "/dev/loop3p1"
    image: DiskImage

    @property
    def image_key(self) -> str:
        return str(Path(self.image.path).resolve())


@dataclass(frozen=True)
class MountHandle:
    """A mounted partition on an ephemeral mount point."""

    mount_point: Path
    device: str


@dataclass(frozen=True)
class BootPayload:
    """Boot binary plus optional startup script installed on the ESP."""

    content: bytes
    install_path: str = CANONICAL_PAYLOAD_PATH
    startup_script: Optional[str] = None
    source: Optional[Path] = None

    def __post_init__(self) -> None:
        if not self.install_path.startswith("/"):
            raise ValueError(f"Install path must be absolute: {self.install_path}")

    @property
    def relative_install_path(self) -> PurePosixPath:
        """Install path relative to the volume root."""
        return PurePosixPath(self.install_path.lstrip("/"))

    @classmethod
    def from_file(
        cls,
        path: Path,
        *,
        install_path: str = CANONICAL_PAYLOAD_PATH,
        startup_script: Optional[str] = None,
    ) -> BootPayload:
        path = Path(path)
        return cls(
            content=path.read_bytes(),
            install_path=install_path,
            startup_script=startup_script,
            source=path,
        )


# ==============================================================================
# Emulator Domain
# ==============================================================================


class TransportKind(Enum):
    """Storage controller wiring presented to the emulated machine."""

    USB_XHCI = "usb-xhci"
    NVME = "nvme"

    @classmethod
    def parse(cls, value: str | TransportKind) -> TransportKind:
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower().replace("_", "-")
        aliases = {"usb": "usb-xhci", "xhci": "usb-xhci"}
        normalized = aliases.get(normalized, normalized)
        for kind in cls:
            if kind.value == normalized:
                return kind
        raise ValueError(f"Unknown transport: {value}")


@dataclass(frozen=True)
class ExitStatus:
    """Terminal status of an emulator process."""

    returncode: Optional[int]
    cancelled: bool = False

    @property
    def signal(self) -> Optional[int]:
        """Signal number when the process was killed by a signal."""
        if self.returncode is not None and self.returncode < 0:
            return -self.returncode
        return None

    @property
    def ok(self) -> bool:
        return not self.cancelled and self.returncode == 0

    def describe(self) -> str:
        if self.cancelled:
            return "cancelled"
        if self.signal is not None:
            return f"killed by signal {self.signal}"
        return f"exit status {self.returncode}"


@dataclass
class TestSession:
    """One emulator invocation against a finished fixture image."""

    __test__ = False  # not a pytest test class

    firmware_rom: Path
    image: DiskImage
    transport: TransportKind = TransportKind.NVME
    memory: str = "512M"
    acceleration: bool = True
    guest_errors: bool = False
    status: Optional[ExitStatus] = None
    serial_output: bytearray = field(default_factory=bytearray)
