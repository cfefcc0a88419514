"""Storage transport wiring for the emulated machine.

Each transport maps to a fixed, disjoint set of QEMU device/drive arguments.
The functions here are pure; they only build argument lists.

Transports:
    usb-xhci:  qemu-xhci controller + raw drive + usb-storage on that controller
    nvme:      raw drive + nvme controller with a fixed serial
"""

from __future__ import annotations

from typing import Optional

from efi_harness.domain.models import TransportKind


NVME_SERIAL = "deadbeef"
XHCI_CONTROLLER_ID = "xhci"

DEFAULT_DRIVE_IDS = {
    TransportKind.USB_XHCI: "usbdisk",
    TransportKind.NVME: "nvme0",
}


def default_drive_id(kind: TransportKind) -> str:
    return DEFAULT_DRIVE_IDS[TransportKind.parse(kind)]


def _raw_drive(drive_id: str, disk_path: str) -> list[str]:
    return ["-drive", f"file={disk_path},if=none,id={drive_id},format=raw"]


def args_for(
    kind: TransportKind | str,
    drive_id: Optional[str] = None,
    disk_path: str = "",
) -> list[str]:
    """Emulator arguments attaching ``disk_path`` over the ``kind`` transport.

    Args:
        kind: Transport to wire up
        drive_id: Drive identifier (defaults to the transport's own id)
        disk_path: Raw disk image backing the drive

    Returns:
        Ordered list of emulator arguments

    Raises:
        ValueError: For an unknown transport or invalid identifiers
    """
    kind = TransportKind.parse(kind)
    drive_id = drive_id or default_drive_id(kind)
    if not disk_path:
        raise ValueError("A disk path is required")
    if "," in drive_id or "=" in drive_id:
        raise ValueError(f"Invalid drive id: {drive_id!r}")
    if "," in str(disk_path):
        # QEMU option syntax would need ",," escaping; keep paths simple
        raise ValueError(f"Disk path may not contain commas: {disk_path}")

    if kind is TransportKind.USB_XHCI:
        return [
            "-device",
            f"qemu-xhci,id={XHCI_CONTROLLER_ID}",
            *_raw_drive(drive_id, disk_path),
            "-device",
            f"usb-storage,drive={drive_id},bus={XHCI_CONTROLLER_ID}.0",
        ]
    if kind is TransportKind.NVME:
        return [
            *_raw_drive(drive_id, disk_path),
            "-device",
            f"nvme,serial={NVME_SERIAL},drive={drive_id}",
        ]
    raise ValueError(f"Unsupported transport: {kind}")
