"""Disk fixture provisioning.

Modules:
    - image: Sparse-safe, fully reserved image allocation
    - partition: GPT label with a single EFI System Partition
    - loop: Loop device binding with partition scanning
    - provision: FAT32 format, mount, payload install, unmount
    - privileged: Root-only operations, direct or through sudo
    - cleanup: LIFO release stack shared by the phases above
    - tools: External tool discovery and command execution
    - exceptions: Error hierarchy, one class per failing phase
"""
