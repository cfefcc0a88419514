from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "EFI_HARNESS_LOG_DIR",
        Path.home() / ".local" / "state" / "efi-harness" / "logs",
    )
)


def _should_log_poll(record) -> bool:
    """Filter partition-node poll chatter - only show in TRACE mode."""
    tags = record["extra"].get("tags", [])

    if "poll" in tags and record["level"].no < logger.level("WARNING").no:
        return record["level"].no <= logger.level("TRACE").no

    return True


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
    file_logging: bool = True,
) -> Logger:
    """
    Setup console and file sinks for the harness.

    Logging Tiers:
    - ERROR: Failed phases, cleanup failures
    - SUCCESS/INFO: Phase progress, artifacts produced
    - DEBUG: Command lines and tool output
    - TRACE: Partition-node poll iterations

    Log Files:
    - operations.log: INFO+ events (7 day retention)
    - debug.log: DEBUG+ events when --debug is enabled (3 day retention)

    Args:
        debug: Enable DEBUG level logging
        trace: Enable TRACE level logging (very verbose)
        log_dir: Custom log directory (defaults to ~/.local/state/efi-harness/logs)
        file_logging: Write log files in addition to the console sink
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "harness"})

    if trace:
        console_level = "TRACE"
    elif debug:
        console_level = "DEBUG"
    else:
        console_level = "INFO"

    # Console goes to stderr; stdout is reserved for the emulator serial stream.
    logger.add(
        sys.stderr,
        level=console_level,
        backtrace=False,
        diagnose=False,
        filter=_should_log_poll,
        colorize=True,
        format=(
            "<green>{time:HH:mm:ss}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{extra[source]: <10}</cyan> | "
            "{message}"
        ),
    )

    if not file_logging:
        return logger

    log_dir = log_dir or DEFAULT_LOG_DIR
    log_dir.mkdir(parents=True, exist_ok=True)

    logger.add(
        log_dir / "operations.log",
        level="INFO",
        rotation="5 MB",
        retention="7 days",
        compression="zip",
        backtrace=False,
        diagnose=False,
        format=(
            "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
            "{level: <8} | "
            "{extra[source]: <10} | "
            "{extra[job_id]: <15} | "
            "{message}"
        ),
    )

    if debug or trace:
        logger.add(
            log_dir / "debug.log",
            level="TRACE" if trace else "DEBUG",
            rotation="10 MB",
            retention="3 days",
            compression="zip",
            backtrace=True,
            diagnose=True,
            format=(
                "{time:YYYY-MM-DD HH:mm:ss.SSS} | "
                "{level: <8} | "
                "{extra[source]: <10} | "
                "{extra[job_id]: <15} | "
                "{extra[tags]} | "
                "{message}"
            ),
        )

    return logger


@contextmanager
def operation_context(operation: str, **details):
    """
    Context manager for tracking a pipeline phase with automatic timing.

    Logs phase start, completion, and failure with duration tracking.

    Args:
        operation: Phase name (e.g., "allocate", "provision")
        **details: Phase-specific details to log

    Yields:
        Logger bound with job_id and operation context

    Example:
        with operation_context("partition", image="/tmp/disk.img") as log:
            log.debug("Writing GPT label")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"

    with logger.contextualize(job_id=job_id, operation=operation, **details):
        start_time = time.time()
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])

        log.debug(f"{operation.capitalize()} started")

        try:
            yield log
            duration = time.time() - start_time
            log.debug(
                f"{operation.capitalize()} completed in {duration:.2f}s",
            )
        except BaseException as e:
            duration = time.time() - start_time
            log.error(
                f"{operation.capitalize()} failed after {duration:.2f}s: "
                f"{type(e).__name__}: {e}",
            )
            raise


class LoggerFactory:
    """
    Factory for creating domain-specific loggers with automatic context.

    Each factory method returns a logger pre-configured with appropriate
    source and tags for the domain.
    """

    @staticmethod
    def for_disk(job_id: str | None = None) -> Logger:
        """Logger for image allocation, partitioning and provisioning."""
        if job_id is None:
            job_id = f"disk-{uuid.uuid4().hex[:8]}"
        return logger.bind(job_id=job_id, source="disk", tags=["disk", "storage"])

    @staticmethod
    def for_loop() -> Logger:
        """Logger for loop device binding."""
        return logger.bind(source="loop", tags=["loop", "storage"])

    @staticmethod
    def for_poll() -> Logger:
        """Logger for partition-node polling (TRACE-filtered on the console)."""
        return logger.bind(source="loop", tags=["loop", "poll"])

    @staticmethod
    def for_emulator(job_id: str | None = None) -> Logger:
        """Logger for emulator sessions."""
        if job_id is None:
            job_id = f"qemu-{uuid.uuid4().hex[:8]}"
        return logger.bind(job_id=job_id, source="qemu", tags=["qemu", "emulator"])

    @staticmethod
    def for_system() -> Logger:
        """Logger for startup, tool discovery and configuration."""
        return logger.bind(source="system", tags=["system"])
