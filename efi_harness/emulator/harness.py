"""QEMU invocation for firmware test sessions.

Builds the emulator command line for a TestSession and runs it, forwarding
the serial console byte stream live while also keeping a copy on the
session.

Command Layout:
    qemu-system-x86_64
        -machine q35 -bios <rom> -m <memory>
        -serial mon:stdio -nographic -no-reboot
        <transport arguments>
        [-d guest_errors]
        -enable-kvm -cpu host      (when /dev/kvm is usable)
        -cpu qemu64                (software emulation fallback)

Cancellation:
    A KeyboardInterrupt (or cancel() from another thread) terminates the
    child, escalating to SIGKILL after a grace period. The run still returns
    an ExitStatus, flagged as cancelled.
"""

from __future__ import annotations

import os
import subprocess
import sys
import threading
from typing import BinaryIO, Optional

from efi_harness.config.settings import DEFAULT_QEMU_BINARY, get_setting
from efi_harness.domain.models import ExitStatus, TestSession
from efi_harness.emulator import transport
from efi_harness.logging import LoggerFactory
from efi_harness.storage.exceptions import EmulatorExitError


log = LoggerFactory.for_emulator()

KVM_DEVICE = "/dev/kvm"
MACHINE_TYPE = "q35"
SOFTWARE_CPU = "qemu64"
READ_CHUNK = 4096


def kvm_available(device: str = KVM_DEVICE) -> bool:
    """Whether the hardware virtualization device exists and is read/write."""
    return os.path.exists(device) and os.access(device, os.R_OK | os.W_OK)


def check_exit(status: ExitStatus) -> ExitStatus:
    """Raise EmulatorExitError unless ``status`` is a clean exit."""
    if not status.ok:
        raise EmulatorExitError(status)
    return status


class EmulatorHarness:
    """Runs QEMU against a finished fixture image."""

    def __init__(
        self,
        qemu_binary: Optional[str] = None,
        *,
        sink: Optional[BinaryIO] = None,
        kvm_device: str = KVM_DEVICE,
        grace_period: float = 5.0,
    ):
        self.qemu_binary = qemu_binary or get_setting("qemu_binary", DEFAULT_QEMU_BINARY)
        self.sink = sink
        self.kvm_device = kvm_device
        self.grace_period = grace_period
        self._process: Optional[subprocess.Popen] = None
        self._cancelled = threading.Event()

    def acceleration_args(self, session: TestSession) -> list[str]:
        if session.acceleration and kvm_available(self.kvm_device):
            log.info("[Using KVM acceleration]")
            return ["-enable-kvm", "-cpu", "host"]
        if session.acceleration:
            log.info("[KVM not available, using software emulation]")
        else:
            log.info("[KVM disabled, using software emulation]")
        return ["-cpu", SOFTWARE_CPU]

    def build_command(self, session: TestSession) -> list[str]:
        """Full emulator command line for ``session``."""
        command = [
            self.qemu_binary,
            "-machine",
            MACHINE_TYPE,
            "-bios",
            str(session.firmware_rom),
            "-m",
            str(session.memory),
            "-serial",
            "mon:stdio",
            "-nographic",
            "-no-reboot",
        ]
        command.extend(
            transport.args_for(session.transport, disk_path=str(session.image.path))
        )
        if session.guest_errors:
            command.extend(["-d", "guest_errors"])
        command.extend(self.acceleration_args(session))
        return command

    def _sink(self) -> BinaryIO:
        if self.sink is not None:
            return self.sink
        return sys.stdout.buffer

    def run(self, session: TestSession) -> ExitStatus:
        """Run the emulator until it exits or the run is cancelled.

        Returns:
            ExitStatus of the emulator process (also stored on the session)
        """
        command = self.build_command(session)
        log.debug(f"Starting emulator: {' '.join(command)}")
        sink = self._sink()

        process = subprocess.Popen(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
        )
        self._process = process
        cancelled = False
        try:
            if self._cancelled.is_set():
                # cancel() arrived before the process existed
                log.warning("Cancelled before start; stopping emulator")
                self._stop(process)
            self._forward(process, session, sink)
            returncode = process.wait()
        except KeyboardInterrupt:
            log.warning("Interrupted; stopping emulator")
            cancelled = True
            returncode = self._stop(process)
        finally:
            if process.stdout is not None:
                process.stdout.close()
            self._process = None

        cancelled = cancelled or self._cancelled.is_set()
        self._cancelled.clear()
        status = ExitStatus(returncode=returncode, cancelled=cancelled)
        session.status = status
        log.info(f"Emulator finished with {status.describe()}")
        return status

    def _forward(self, process: subprocess.Popen, session: TestSession, sink: BinaryIO) -> None:
        stream = process.stdout
        if stream is None:
            return
        while True:
            chunk = stream.read1(READ_CHUNK)
            if not chunk:
                break
            session.serial_output.extend(chunk)
            sink.write(chunk)
            sink.flush()

    def _stop(self, process: subprocess.Popen) -> int:
        try:
            if process.poll() is None:
                process.terminate()
                try:
                    return process.wait(timeout=self.grace_period)
                except subprocess.TimeoutExpired:
                    log.warning(
                        f"Emulator ignored SIGTERM for {self.grace_period}s; killing"
                    )
                    process.kill()
            return process.wait()
        except BaseException:
            # A second interrupt while waiting must not leave the child running
            process.kill()
            process.wait()
            raise

    def cancel(self) -> None:
        """Stop a running session from another thread."""
        self._cancelled.set()
        process = self._process
        if process is not None and process.poll() is None:
            process.terminate()