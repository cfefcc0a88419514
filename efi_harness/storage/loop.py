"""Loop device binding for fixture images.

Binds an image file to a free loop device with partition scanning and waits
for the kernel to publish the first partition node. Partition enumeration is
asynchronous, so the binder polls for the node with a short sleep between
checks and gives up after a bounded timeout.

Active bindings are tracked per process, keyed by the resolved image path,
so the same image can never be bound twice at once.

Usage:
    binder = BlockDeviceBinder(ops)
    with binder.bound(image) as binding:
        provision(binding.partition_device, payload)
"""

from __future__ import annotations

import os
import subprocess
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Generator, Optional

from efi_harness.config.settings import (
    DEFAULT_BIND_POLL_INTERVAL,
    DEFAULT_BIND_TIMEOUT,
    get_float,
)
from efi_harness.domain.models import DiskImage, LoopBinding
from efi_harness.logging import LoggerFactory
from efi_harness.storage.exceptions import (
    BindConflictError,
    BindError,
    BindTimeoutError,
    BindUnavailableError,
)
from efi_harness.storage.privileged import PrivilegedOps
from efi_harness.storage.tools import command_error_text


log = LoggerFactory.for_loop()
poll_log = LoggerFactory.for_poll()

# Lock for thread-safe access to the binding registry
_lock = threading.Lock()

# image key -> active binding, or None while a bind is in progress
_active: dict[str, Optional[LoopBinding]] = {}


def _image_key(image: DiskImage) -> str:
    return str(Path(image.path).resolve())


def partition_node(loop_device: str, number: int = 1) -> str:
    """Partition device node of a loop device (e.g., /dev/loop3p1)."""
    return f"{loop_device}p{number}"


def active_bindings() -> dict[str, LoopBinding]:
    """Snapshot of the bindings currently held by this process."""
    with _lock:
        return {key: binding for key, binding in _active.items() if binding is not None}


def wait_for_node(
    path: str,
    timeout: float = DEFAULT_BIND_TIMEOUT,
    interval: float = DEFAULT_BIND_POLL_INTERVAL,
    *,
    exists: Callable[[str], bool] = os.path.exists,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> bool:
    """Poll until ``path`` exists or ``timeout`` seconds have passed.

    Returns:
        True if the node appeared, False on timeout
    """
    deadline = clock() + timeout
    attempt = 0
    while True:
        attempt += 1
        if exists(path):
            poll_log.trace(f"{path} present after {attempt} check(s)")
            return True
        remaining = deadline - clock()
        if remaining <= 0:
            return False
        poll_log.trace(f"{path} not present yet (check {attempt})")
        sleep(min(interval, remaining))


class BlockDeviceBinder:
    """Attaches images to loop devices and guarantees they are detached."""

    def __init__(
        self,
        ops: PrivilegedOps,
        *,
        poll_interval: Optional[float] = None,
        timeout: Optional[float] = None,
        node_exists: Callable[[str], bool] = os.path.exists,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.ops = ops
        self.poll_interval = (
            poll_interval
            if poll_interval is not None
            else get_float("bind_poll_interval", DEFAULT_BIND_POLL_INTERVAL)
        )
        self.timeout = (
            timeout if timeout is not None else get_float("bind_timeout", DEFAULT_BIND_TIMEOUT)
        )
        self._node_exists = node_exists
        self._sleep = sleep

    def bind(self, image: DiskImage) -> LoopBinding:
        """Attach ``image`` to a loop device and wait for its first partition.

        Raises:
            BindConflictError: If the image is already bound in this process
            BindUnavailableError: If no loop device could be obtained
            BindTimeoutError: If the partition node never appeared
        """
        key = _image_key(image)
        with _lock:
            if key in _active:
                current = _active[key]
                raise BindConflictError(
                    str(image.path), current.loop_device if current else "(binding)"
                )
            _active[key] = None

        try:
            binding = self._attach(image)
        except BaseException:
            with _lock:
                _active.pop(key, None)
            raise

        with _lock:
            _active[key] = binding
        log.info(f"Bound {image.path} to {binding.loop_device}")
        return binding

    def _attach(self, image: DiskImage) -> LoopBinding:
        try:
            loop_device = self.ops.attach_loop(Path(image.path))
        except subprocess.CalledProcessError as error:
            raise BindUnavailableError(
                str(image.path), command_error_text(error)
            ) from error
        except (OSError, ValueError) as error:
            raise BindUnavailableError(str(image.path), str(error)) from error

        part_device = partition_node(loop_device)
        log.debug(
            f"Waiting up to {self.timeout:.1f}s for {part_device} "
            f"(poll every {self.poll_interval * 1000:.0f}ms)"
        )
        try:
            appeared = wait_for_node(
                part_device,
                self.timeout,
                self.poll_interval,
                exists=self._node_exists,
                sleep=self._sleep,
            )
        except BaseException:
            self._detach_quietly(loop_device)
            raise
        if not appeared:
            self._detach_quietly(loop_device)
            raise BindTimeoutError(part_device, self.timeout)

        return LoopBinding(
            loop_device=loop_device, partition_device=part_device, image=image
        )

    def _detach_quietly(self, loop_device: str) -> None:
        try:
            self.ops.detach_loop(loop_device)
        except (subprocess.CalledProcessError, OSError) as error:
            log.error(f"Failed to detach {loop_device} after failed bind: {error}")

    def unbind(self, binding: LoopBinding) -> None:
        """Detach the loop device of ``binding``.

        Safe to call more than once, and after a bind that failed part-way.
        A device is only detached while it still belongs to this image: the
        kernel reuses freed loop devices, so once a binding has been released
        its device may already back a different image.

        Raises:
            BindError: If the loop device is attached and cannot be detached
        """
        key = binding.image_key
        with _lock:
            current = _active.get(key)
        if current is not None and current != binding:
            log.warning(
                f"Stale binding for {binding.image.path}: {binding.loop_device} "
                f"is no longer the active device ({current.loop_device})"
            )
            return

        if current is None:
            owned = self.ops.loop_backing_file(binding.loop_device) == key
        else:
            owned = self.ops.loop_attached(binding.loop_device)

        if owned:
            try:
                self.ops.detach_loop(binding.loop_device)
            except (subprocess.CalledProcessError, OSError) as error:
                reason = (
                    command_error_text(error)
                    if isinstance(error, subprocess.CalledProcessError)
                    else str(error)
                )
                raise BindError(
                    f"Failed to detach {binding.loop_device}: {reason}"
                ) from error
            log.info(f"Unbound {binding.loop_device}")
        else:
            log.debug(f"{binding.loop_device} no longer backs {binding.image.path}")

        with _lock:
            if current is not None and _active.get(key) is current:
                _active.pop(key, None)

    @contextmanager
    def bound(self, image: DiskImage) -> Generator[LoopBinding, None, None]:
        """Context manager pairing ``bind`` with ``unbind``."""
        binding = self.bind(image)
        try:
            yield binding
        finally:
            self.unbind(binding)
