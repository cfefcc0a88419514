"""LIFO release stack for provisioning resources.

Each acquisition pushes its release onto the stack at the moment it
succeeds. Unwinding runs the releases newest-first. A release that raises is
logged and skipped so the remaining releases still run and the error that
triggered the unwind is the one the caller sees.

Usage:
    with CleanupStack("provision") as cleanup:
        handle = mount(device)
        cleanup.push("unmount", unmount, handle)
        ...
        cleanup.release("unmount")  # release early, on the success path
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable

from efi_harness.logging import LoggerFactory


log = LoggerFactory.for_disk(job_id="cleanup")


@dataclass
class _Release:
    name: str
    callback: Callable[..., Any]
    args: tuple
    kwargs: dict


class CleanupStack:
    """Explicit LIFO cleanup list.

    Used as a context manager, the stack unwinds on exit whether or not an
    exception is propagating. Cleanup failures never replace that exception.
    """

    def __init__(self, name: str = "cleanup"):
        self.name = name
        self._releases: list[_Release] = []
        self._lock = threading.Lock()
        self.failures: list[tuple[str, BaseException]] = []

    def __len__(self) -> int:
        return len(self._releases)

    @property
    def pending(self) -> list[str]:
        """Names of pending releases, newest first."""
        return [release.name for release in reversed(self._releases)]

    def push(self, name: str, callback: Callable[..., Any], *args, **kwargs) -> None:
        with self._lock:
            self._releases.append(_Release(name, callback, args, kwargs))
        log.trace(f"[{self.name}] registered release '{name}'")

    def release(self, name: str) -> bool:
        """Run the newest release registered as ``name`` and drop it.

        Errors propagate here: an explicit release is part of the success
        path and a failure there is a real failure of that step. A release
        that fails is put back in its place so the unwind retries it.

        Returns:
            True if a release with that name was pending
        """
        with self._lock:
            for index in range(len(self._releases) - 1, -1, -1):
                if self._releases[index].name == name:
                    release = self._releases.pop(index)
                    break
            else:
                return False
        try:
            release.callback(*release.args, **release.kwargs)
        except BaseException:
            with self._lock:
                self._releases.insert(min(index, len(self._releases)), release)
            raise
        return True

    def discard(self, name: str) -> bool:
        """Drop a pending release without running it."""
        with self._lock:
            for index in range(len(self._releases) - 1, -1, -1):
                if self._releases[index].name == name:
                    del self._releases[index]
                    return True
        return False

    def unwind(self) -> list[tuple[str, BaseException]]:
        """Run every pending release newest-first.

        Returns:
            (name, exception) pairs for releases that failed
        """
        failures: list[tuple[str, BaseException]] = []
        while True:
            with self._lock:
                if not self._releases:
                    break
                release = self._releases.pop()
            try:
                log.debug(f"[{self.name}] releasing '{release.name}'")
                release.callback(*release.args, **release.kwargs)
            except Exception as error:
                log.error(f"[{self.name}] release '{release.name}' failed: {error}")
                failures.append((release.name, error))
        self.failures.extend(failures)
        return failures

    def __enter__(self) -> CleanupStack:
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.unwind()
        return False
