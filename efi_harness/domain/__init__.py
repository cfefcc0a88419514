"""Domain models for disk fixtures and emulator sessions."""

from __future__ import annotations

from .models import (
    BootPayload,
    DiskImage,
    ExitStatus,
    LoopBinding,
    MountHandle,
    PartitionSpec,
    PartitionTableKind,
    TestSession,
    TransportKind,
)


__all__ = [
    "BootPayload",
    "DiskImage",
    "ExitStatus",
    "LoopBinding",
    "MountHandle",
    "PartitionSpec",
    "PartitionTableKind",
    "TestSession",
    "TransportKind",
]
