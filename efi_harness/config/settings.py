"""Settings storage for harness configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "EFI_HARNESS_SETTINGS_PATH",
        Path.home() / ".config" / "efi-harness" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_DISK_SIZE_MIB = 64
DEFAULT_VOLUME_LABEL = "ESP"
DEFAULT_MEMORY = "512M"
DEFAULT_TRANSPORT = "nvme"
DEFAULT_COREBOOT_ROM = str(Path.home() / "src" / "coreboot" / "build" / "coreboot.rom")
DEFAULT_QEMU_BINARY = "qemu-system-x86_64"
DEFAULT_BIND_POLL_INTERVAL = 0.05
DEFAULT_BIND_TIMEOUT = 5.0

DEFAULT_SETTINGS: dict[str, Any] = {
    "disk_size_mib": DEFAULT_DISK_SIZE_MIB,
    "volume_label": DEFAULT_VOLUME_LABEL,
    "memory": DEFAULT_MEMORY,
    "transport": DEFAULT_TRANSPORT,
    "coreboot_rom": DEFAULT_COREBOOT_ROM,
    "qemu_binary": DEFAULT_QEMU_BINARY,
    "bind_poll_interval": DEFAULT_BIND_POLL_INTERVAL,
    "bind_timeout": DEFAULT_BIND_TIMEOUT,
    "kvm_enabled": True,
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings() -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    if not SETTINGS_PATH.exists():
        return
    try:
        data = json.loads(SETTINGS_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def get_bool(key: str, default: bool = False) -> bool:
    return bool(get_setting(key, default))


def get_float(key: str, default: float) -> float:
    try:
        return float(get_setting(key, default))
    except (TypeError, ValueError):
        return default


load_settings()
