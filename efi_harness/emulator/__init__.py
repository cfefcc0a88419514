"""QEMU session harness and storage transport profiles."""
