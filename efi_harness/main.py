"""Command line entry point.

Subcommands:
    create-disk  Build a GPT/ESP test disk image with a boot payload
    run          Boot a coreboot ROM in QEMU against an existing test disk
    test         Build (optionally), create the disk and boot it in one go
    build-app    Build a UEFI test application with cargo

Every subcommand checks tools and input files before touching anything, so
a failed precondition leaves no image file, loop device or process behind.
"""

import argparse
import sys
from pathlib import Path

from efi_harness.config.settings import (
    DEFAULT_COREBOOT_ROM,
    DEFAULT_DISK_SIZE_MIB,
    DEFAULT_MEMORY,
    DEFAULT_QEMU_BINARY,
    DEFAULT_TRANSPORT,
    DEFAULT_VOLUME_LABEL,
    get_bool,
    get_setting,
)
from efi_harness.domain.models import MIB, DiskImage, TestSession, TransportKind
from efi_harness.emulator import transport
from efi_harness.emulator.harness import EmulatorHarness, check_exit
from efi_harness.logging import LoggerFactory, setup_logging
from efi_harness.payload import (
    SCRIPT_TEMPLATES,
    build_app,
    load_payload,
    require_file,
    resolve_payload_path,
    startup_script,
)
from efi_harness.pipeline import DiskPipeline, run_session
from efi_harness.progress import PhaseReporter
from efi_harness.storage.exceptions import (
    EmulatorExitError,
    HarnessError,
    PreconditionError,
)
from efi_harness.storage.provision import validate_label
from efi_harness.storage.tools import discover_tools

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_PRECONDITION = 2
EXIT_CANCELLED = 130

COREBOOT_GUIDANCE = """\
Build coreboot with the firmware under test as its payload:
  1. git clone https://review.coreboot.org/coreboot.git ~/src/coreboot
     (then: git submodule update --init --checkout)
  2. make menuconfig
     - Mainboard vendor: Emulation, model: QEMU x86 q35/ich9
     - Payload: An ELF executable payload, pointing at the firmware ELF
  3. make -j$(nproc)
The ROM will be at ~/src/coreboot/build/coreboot.rom,
or pass the ROM path explicitly."""

SERIAL_BANNER = "Serial output (Ctrl+A X to exit QEMU):"


def _add_emulator_args(parser: argparse.ArgumentParser, default_transport: str) -> None:
    parser.add_argument(
        "--transport",
        choices=[kind.value for kind in TransportKind],
        default=default_transport,
        help="Storage transport for the test disk (default: %(default)s)",
    )
    parser.add_argument(
        "--memory",
        default=get_setting("memory", DEFAULT_MEMORY),
        help="Guest memory size (default: %(default)s)",
    )
    parser.add_argument(
        "--no-kvm",
        action="store_true",
        help="Never use KVM acceleration",
    )
    parser.add_argument(
        "--debug-guest",
        dest="guest_errors",
        action="store_true",
        help="Log invalid guest accesses (-d guest_errors)",
    )
    parser.add_argument(
        "--qemu",
        default=get_setting("qemu_binary", DEFAULT_QEMU_BINARY),
        help="Emulator binary (default: %(default)s)",
    )


def _add_disk_args(parser: argparse.ArgumentParser, default_script: str) -> None:
    parser.add_argument(
        "--size-mib",
        type=int,
        default=int(get_setting("disk_size_mib", DEFAULT_DISK_SIZE_MIB)),
        help="Disk image size in MiB (default: %(default)s)",
    )
    parser.add_argument(
        "--label",
        default=get_setting("volume_label", DEFAULT_VOLUME_LABEL),
        help="FAT32 volume label (default: %(default)s)",
    )
    parser.add_argument(
        "--script",
        choices=SCRIPT_TEMPLATES,
        default=default_script,
        help="startup.nsh template (default: %(default)s)",
    )
    parser.add_argument(
        "--title",
        default="EFI Harness Test Disk",
        help="Banner echoed by the startup script",
    )
    parser.add_argument(
        "--remove-on-failure",
        action="store_true",
        help="Delete the image if a later phase fails (default: keep it for inspection)",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="efi-harness",
        description="Build EFI test disks and boot them under coreboot in QEMU",
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Enable trace output")
    parser.add_argument("--log-dir", type=Path, default=None, help="Directory for log files")
    parser.add_argument(
        "--no-log-file", action="store_true", help="Only log to the console"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    create = subparsers.add_parser("create-disk", help="Create a test disk image")
    create.add_argument(
        "output",
        nargs="?",
        type=Path,
        default=Path.cwd() / "test-disk.img",
        help="Output image (default: ./test-disk.img)",
    )
    create.add_argument("--payload", type=Path, default=None, help="EFI binary to install")
    _add_disk_args(create, default_script="shell")

    run = subparsers.add_parser("run", help="Boot a coreboot ROM against a test disk")
    run.add_argument(
        "rom",
        nargs="?",
        type=Path,
        default=Path(get_setting("coreboot_rom", DEFAULT_COREBOOT_ROM)),
        help="coreboot ROM (default: ~/src/coreboot/build/coreboot.rom)",
    )
    run.add_argument(
        "disk",
        nargs="?",
        type=Path,
        default=Path.cwd() / "test-disk.img",
        help="Disk image (default: ./test-disk.img)",
    )
    _add_emulator_args(run, get_setting("transport", DEFAULT_TRANSPORT))

    test = subparsers.add_parser(
        "test", help="Create a disk with a test application and boot it"
    )
    test.add_argument(
        "rom",
        nargs="?",
        type=Path,
        default=Path(get_setting("coreboot_rom", DEFAULT_COREBOOT_ROM)),
        help="coreboot ROM (default: ~/src/coreboot/build/coreboot.rom)",
    )
    source = test.add_mutually_exclusive_group(required=True)
    source.add_argument("--payload", type=Path, help="Prebuilt EFI test application")
    source.add_argument(
        "--build", type=Path, metavar="PROJECT_DIR", help="Build the test application first"
    )
    test.add_argument(
        "--disk",
        type=Path,
        default=Path.cwd() / "test-security-disk.img",
        help="Disk image to create (default: ./test-security-disk.img)",
    )
    _add_disk_args(test, default_script="launch")
    _add_emulator_args(test, TransportKind.USB_XHCI.value)

    build = subparsers.add_parser("build-app", help="Build a UEFI test application")
    build.add_argument("project", type=Path, help="Cargo project directory")
    build.add_argument("--output", type=Path, default=None, help="Where to copy the .efi")

    return parser


def _print_error(error: HarnessError) -> None:
    print(f"Error: {error}", file=sys.stderr)
    if isinstance(error, PreconditionError) and error.guidance:
        print("", file=sys.stderr)
        print(error.guidance, file=sys.stderr)


def _check_label(label: str) -> str:
    try:
        return validate_label(label)
    except ValueError as error:
        raise PreconditionError(
            str(error), guidance="Use 1 to 11 characters and no punctuation such as , . / :"
        ) from error


def _check_disk_path(kind: str, disk_path: Path) -> None:
    try:
        transport.args_for(kind, disk_path=str(disk_path))
    except ValueError as error:
        raise PreconditionError(str(error)) from error


def _print_image_summary(pipeline: DiskPipeline, image: DiskImage) -> None:
    print(f"Test disk created: {image.path}")
    layout = pipeline.describe(image)
    if layout:
        print("")
        print("Partition layout:")
        print(layout)
    print(f"Size: {image.size_bytes} bytes ({image.size_mib:.0f} MiB)")


def _status_exit_code(status) -> int:
    if status.cancelled:
        return EXIT_CANCELLED
    if status.signal is not None:
        return 128 + status.signal
    return status.returncode or 0


def _session(args, disk: DiskImage) -> TestSession:
    return TestSession(
        firmware_rom=args.rom.expanduser(),
        image=disk,
        transport=TransportKind.parse(args.transport),
        memory=args.memory,
        acceleration=not args.no_kvm and get_bool("kvm_enabled", True),
        guest_errors=args.guest_errors,
    )


def _boot(args, disk: DiskImage) -> int:
    print("")
    print("=" * 42)
    print(SERIAL_BANNER)
    print("=" * 42)
    print("", flush=True)
    session = _session(args, disk)
    check_exit(run_session(session, EmulatorHarness(args.qemu)))
    return EXIT_OK


def cmd_create_disk(args) -> int:
    reporter = PhaseReporter(total=3)

    reporter.step("Checking required tools")
    tools = discover_tools(disk=True)
    tools.require(tools.paths)
    args.label = _check_label(args.label)
    payload_path = resolve_payload_path(args.payload)

    reporter.step(f"Creating test disk image: {args.output}")
    payload = load_payload(payload_path, startup_script(args.script, args.title))
    pipeline = DiskPipeline(
        tools,
        label=args.label,
        remove_image_on_failure=args.remove_on_failure,
        on_phase=reporter.detail,
    )
    image = pipeline.build(args.output, args.size_mib * MIB, payload)

    reporter.step("Done")
    _print_image_summary(pipeline, image)
    return EXIT_OK


def cmd_run(args) -> int:
    tools = discover_tools(emulator=True, qemu_binary=args.qemu)
    tools.require(tools.paths)
    rom = require_file(args.rom, "coreboot ROM", guidance=COREBOOT_GUIDANCE)
    disk_path = require_file(
        args.disk,
        "Disk image",
        guidance="Create one with: efi-harness create-disk",
    )
    _check_disk_path(args.transport, disk_path)
    args.rom = rom
    args.qemu = tools.path(args.qemu)

    print(f"coreboot ROM: {rom}")
    print(f"Disk image:   {disk_path}")
    print(f"Transport:    {args.transport}")
    disk = DiskImage(path=disk_path, size_bytes=disk_path.stat().st_size)
    return _boot(args, disk)


def cmd_test(args) -> int:
    total = 4 if args.build else 3
    reporter = PhaseReporter(total=total)

    tools = discover_tools(
        disk=True, emulator=True, build=bool(args.build), qemu_binary=args.qemu
    )
    tools.require(tools.paths)
    if args.build:
        require_file(args.build / "Cargo.toml", "Cargo manifest")
    else:
        require_file(args.payload, "Test application")
    rom = require_file(args.rom, "coreboot ROM", guidance=COREBOOT_GUIDANCE)
    args.label = _check_label(args.label)
    _check_disk_path(args.transport, args.disk)

    if args.build:
        reporter.step("Building test application...")
        args.payload = build_app(args.build, cargo=tools.path("cargo"))
        reporter.detail(f"Built: {args.payload}")
        reporter.detail(f"Size: {args.payload.stat().st_size} bytes")
        reporter.blank()

    reporter.step("Checking coreboot ROM...")
    args.rom = require_file(rom, "coreboot ROM", guidance=COREBOOT_GUIDANCE)
    reporter.detail(f"Found: {args.rom}")
    reporter.blank()

    reporter.step("Creating test disk with test application...")
    payload = load_payload(
        require_file(args.payload, "Test application"),
        startup_script(args.script, args.title),
    )
    pipeline = DiskPipeline(
        tools,
        label=args.label,
        remove_image_on_failure=args.remove_on_failure,
        on_phase=reporter.detail,
    )
    disk = pipeline.build(args.disk, args.size_mib * MIB, payload)
    reporter.detail(f"Created: {disk.path}")
    reporter.blank()

    reporter.step("Starting QEMU...")
    args.qemu = tools.path(args.qemu)
    return _boot(args, disk)


def cmd_build_app(args) -> int:
    tools = discover_tools(build=True)
    tools.require(tools.paths)
    output = build_app(args.project, args.output, cargo=tools.path("cargo"))
    print(f"Test application built: {output}")
    return EXIT_OK


COMMANDS = {
    "create-disk": cmd_create_disk,
    "run": cmd_run,
    "test": cmd_test,
    "build-app": cmd_build_app,
}


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(
        debug=args.debug,
        trace=args.trace,
        log_dir=args.log_dir,
        file_logging=not args.no_log_file,
    )
    log = LoggerFactory.for_system()
    log.debug(f"Running {args.command}")

    try:
        return COMMANDS[args.command](args)
    except PreconditionError as error:
        _print_error(error)
        return EXIT_PRECONDITION
    except EmulatorExitError as error:
        print(f"Error ({error.phase}): {error}", file=sys.stderr)
        return _status_exit_code(error.status)
    except HarnessError as error:
        log.debug(f"{type(error).__name__} in phase {error.phase}")
        print(f"Error ({error.phase}): {error}", file=sys.stderr)
        return EXIT_ERROR
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return EXIT_CANCELLED


if __name__ == "__main__":
    sys.exit(main())
