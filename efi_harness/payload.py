"""Boot payload selection, startup scripts and test application builds."""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from typing import Iterable, Optional

from efi_harness.domain.models import CANONICAL_PAYLOAD_PATH, BootPayload
from efi_harness.logging import LoggerFactory
from efi_harness.storage.exceptions import BuildError, PreconditionError
from efi_harness.storage.tools import command_error_text, run_command


log = LoggerFactory.for_disk(job_id="payload")

PLACEHOLDER_PAYLOAD = b"MZ_PLACEHOLDER\n"
UEFI_TARGET = "x86_64-unknown-uefi"

SHELL_CANDIDATES = (
    Path("/usr/share/edk2/ovmf/Shell.efi"),
    Path("/usr/share/OVMF/Shell.efi"),
    Path("/usr/share/edk2-ovmf/x64/Shell.efi"),
    Path.home() / "src" / "edk2" / "Build" / "Shell" / "RELEASE_GCC5" / "X64" / "Shell.efi",
)

SCRIPT_TEMPLATES = ("shell", "launch", "none")


def default_test_app(project_dir: Optional[Path] = None) -> Path:
    return (project_dir or Path.cwd()) / "test" / "hello.efi"


def startup_script(template: str, title: str = "EFI Harness Test Disk") -> Optional[str]:
    """Fixed startup.nsh text for ``template``.

    shell:  announce the disk and refresh the shell's mapping table
    launch: announce the test and start the installed payload
    none:   no startup script
    """
    if template == "none":
        return None
    if template == "shell":
        return f"@echo -off\necho {title}\necho.\nmap -r\n"
    if template == "launch":
        boot_path = CANONICAL_PAYLOAD_PATH.replace("/", "\\")
        return (
            f"@echo -off\n"
            f"echo {title}\n"
            f"echo {'=' * max(len(title), 10)}\n"
            f"echo.\n"
            f"{boot_path}\n"
        )
    raise ValueError(f"Unknown startup script template: {template}")


def require_file(path: Path, what: str, guidance: str = "") -> Path:
    """Raise PreconditionError unless ``path`` is an existing file."""
    path = Path(path).expanduser()
    if not path.is_file():
        raise PreconditionError(
            f"{what} not found: {path}", missing_path=str(path), guidance=guidance
        )
    return path


def resolve_payload_path(
    explicit: Optional[Path] = None,
    candidates: Optional[Iterable[Path]] = None,
) -> Optional[Path]:
    """Pick the payload binary to install.

    An explicit path must exist. Without one, the first existing candidate
    wins (the project's test app, then known UEFI Shell locations).

    Returns:
        Path of the payload, or None when nothing was found

    Raises:
        PreconditionError: If an explicit path does not exist
    """
    if explicit is not None:
        return require_file(explicit, "Payload binary")

    if candidates is None:
        candidates = (default_test_app(), *SHELL_CANDIDATES)
    for candidate in candidates:
        if Path(candidate).is_file():
            log.debug(f"Using payload candidate {candidate}")
            return Path(candidate)
    return None


def load_payload(
    path: Optional[Path],
    script: Optional[str],
) -> BootPayload:
    """BootPayload from ``path``, or the placeholder when ``path`` is None."""
    if path is None:
        log.warning(
            "No test EFI application found; installing a placeholder. "
            "Create test/hello.efi or install the edk2-ovmf package"
        )
        return BootPayload(content=PLACEHOLDER_PAYLOAD, startup_script=script)
    log.info(f"Installing payload from {path}")
    return BootPayload.from_file(path, startup_script=script)


def build_app(
    project_dir: Path,
    output: Optional[Path] = None,
    cargo: str = "cargo",
) -> Path:
    """Build a UEFI application with cargo and copy the .efi out.

    Args:
        project_dir: Cargo project targeting x86_64-unknown-uefi
        output: Where to copy the binary (defaults to <project>/../<name>.efi)
        cargo: cargo executable

    Returns:
        Path of the copied .efi binary

    Raises:
        PreconditionError: If the project directory has no Cargo.toml
        BuildError: If cargo fails or produces no .efi binary
    """
    project_dir = Path(project_dir).expanduser()
    require_file(project_dir / "Cargo.toml", "Cargo manifest")

    log.info(f"Building EFI application in {project_dir}")
    try:
        run_command([cargo, "build", "--release"], log_output=False, cwd=project_dir)
    except subprocess.CalledProcessError as error:
        raise BuildError(f"cargo build failed: {command_error_text(error)}") from error
    except OSError as error:
        raise BuildError(f"cargo could not be started: {error}") from error

    release_dir = project_dir / "target" / UEFI_TARGET / "release"
    binaries = sorted(
        release_dir.glob("*.efi"), key=lambda path: path.stat().st_mtime, reverse=True
    )
    if not binaries:
        raise BuildError(f"No .efi binary produced in {release_dir}")
    built = binaries[0]

    if output is None:
        output = project_dir.parent / built.name
    output = Path(output)
    output.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(built, output)
    log.info(f"Test application built: {output} ({output.stat().st_size} bytes)")
    return output
