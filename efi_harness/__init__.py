"""Build EFI boot-disk fixtures and boot them under coreboot in QEMU."""

from .__version__ import __version__


__all__ = ["__version__"]
