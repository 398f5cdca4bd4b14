"""
kdload - Kendryte Mask ROM Loader Command-Line Interface
========================================================

This module implements the command-line interface for the USB mask ROM
loader. It talks to a Kendryte K230/K230D booted in USB mode.

Usage Examples
--------------
List attached devices:
    $ kdload devices

Print the CPU identification:
    $ kdload cpu-info

Load a binary into SRAM and run it:
    $ kdload run u-boot-spl.bin
    $ kdload run --space dram firmware.bin
    $ kdload run --address 0x80360000 u-boot-spl.bin

Load without running:
    $ kdload load --address 0x80380000 payload.bin

Jump back to the mask ROM:
    $ kdload rom

Every command first prints what the device reports for GET_CPU_INFO.

Hardware Setup
--------------
Before using kdload, ensure:
1. The board's boot straps select USB boot (or no boot medium is present)
2. The USB device port is connected to the host
3. The user can access 29f1:0230 (udev rule on Linux)

Exit Codes
----------
0 - Success
1 - Device, claim, transfer or protocol error
2 - Invalid arguments or unreadable image file
3 - Internal error
"""

import logging
from typing import Optional

import click

from kendryte_loader import __version__
from kendryte_loader.cli.errors import handle_cli_exception
from kendryte_loader.comms import (
    MemoryTarget,
    Request,
    Session,
    SessionResult,
    UsbDevice,
    format_device_list,
    list_devices,
    resolve_target,
)
from kendryte_loader.config import LoaderConfig

# Configure logging
logger = logging.getLogger(__name__)


# =============================================================================
# CLI Context and Utilities
# =============================================================================

class Context:
    """
    Shared context for CLI commands.

    Stores common options like verbosity and the failure policy.
    """

    def __init__(self) -> None:
        self.verbose: bool = False
        self.config: LoaderConfig = LoaderConfig()

    def setup_logging(self) -> None:
        """Configure logging based on verbosity."""
        level = logging.DEBUG if self.verbose else logging.WARNING
        logging.basicConfig(
            level=level,
            format="%(levelname)s: %(message)s" if self.verbose else "%(message)s",
        )


pass_context = click.make_pass_decorator(Context, ensure=True)


class AddressType(click.ParamType):
    """A 32-bit address given in decimal or 0x-prefixed hex."""

    name = "address"

    def convert(self, value, param, ctx):
        if isinstance(value, int):
            address = value
        else:
            try:
                address = int(value.replace("_", ""), 0)
            except ValueError:
                self.fail(f"{value!r} is not a valid address", param, ctx)
        if not 0 <= address <= 0xFFFF_FFFF:
            self.fail(f"{value!r} does not fit in 32 bits", param, ctx)
        return address


ADDRESS = AddressType()


def progress_bar(current: int, total: Optional[int]) -> None:
    """Simple text progress bar for uploads."""
    if not total:
        click.echo(f"\rSent: {current} bytes", nl=False)
        return
    percent = current * 100 // total
    filled = percent // 2
    bar = "=" * filled + "-" * (50 - filled)
    click.echo(f"\r[{bar}] {percent:3d}% ({current}/{total} bytes)", nl=False)
    if current >= total:
        click.echo()  # Newline at end


def resolve_address(space: Optional[str], address: Optional[int]) -> int:
    """Pick the load/run address from --space or --address."""
    if space is not None and address is not None:
        raise click.UsageError("--space and --address are mutually exclusive")
    if address is not None:
        return address
    return resolve_target(MemoryTarget(space or MemoryTarget.SRAM.value))


def run_request(ctx: Context, request: Request, show_progress: bool = False) -> SessionResult:
    """
    Open the device, run a request and report what happened.

    Exits the process on any error.
    """
    config = ctx.config
    try:
        device = UsbDevice.find(
            config.vendor_id, config.product_id, timeout=config.transfer_timeout
        )
        info = device.info
        click.echo(f"Found {info.manufacturer or '?'} {info.product or '?'}")
        packet = info.max_packet_size
        click.echo(
            f"speed {info.speed_name} - max packet size: "
            f"{packet if packet is not None else 'unknown'}"
        )

        try:
            session = Session(
                device,
                config,
                on_identity=lambda text: click.echo(f"Device says: {text}"),
            )
        except Exception:
            device.close()
            raise

        with session:
            logger.debug("Bulk endpoints: out=%s in=%s",
                         session.out_endpoint, session.in_endpoint)
            result = session.run(
                request,
                progress=progress_bar if show_progress else None,
            )

    except Exception as e:
        handle_cli_exception(e, verbose=ctx.verbose)

    for failure in result.failures:
        click.echo(f"Warning: {failure}", err=True)
    return result


# =============================================================================
# Main CLI Group
# =============================================================================

@click.group()
@click.option(
    "-v", "--verbose",
    is_flag=True,
    help="Enable verbose output (logs every transfer)",
)
@click.option(
    "--best-effort",
    is_flag=True,
    help="Continue after failed address/data/start transfers instead of aborting",
)
@click.version_option(version=__version__, prog_name="kdload")
@pass_context
def main(ctx: Context, verbose: bool, best_effort: bool) -> None:
    """
    Kendryte mask ROM loader tool.

    Talks to a Kendryte K230 booted in USB mode (29f1:0230). Every command
    prints the CPU identification reported by the mask ROM first.
    """
    ctx.verbose = verbose
    try:
        config = LoaderConfig.from_env()
    except ValueError as e:
        raise click.UsageError(str(e))
    if best_effort:
        config = config.with_overrides(strict=False)
    ctx.config = config
    ctx.setup_logging()


# =============================================================================
# Devices Command
# =============================================================================

@main.command()
@click.option(
    "--detailed", "-d",
    is_flag=True,
    help="Show detailed device information",
)
@pass_context
def devices(ctx: Context, detailed: bool) -> None:
    """
    List attached mask ROM devices.

    Example:
        kdload devices
        kdload devices --detailed
    """
    try:
        found = list_devices(ctx.config.vendor_id, ctx.config.product_id)
    except Exception as e:
        handle_cli_exception(e, verbose=ctx.verbose)
    if not found:
        click.echo("No devices found.")
        click.echo("\nTips:")
        click.echo("  - Check the boot straps select USB boot")
        click.echo("  - On Linux, ensure you have permission (udev rule)")
        return

    click.echo("Attached devices:")
    click.echo(format_device_list(found, verbose=detailed))


# =============================================================================
# CPU Info Command
# =============================================================================

@main.command("cpu-info")
@pass_context
def cpu_info(ctx: Context) -> None:
    """
    Print CPU info.

    Example:
        kdload cpu-info
    """
    run_request(ctx, Request.info())


# =============================================================================
# ROM Command
# =============================================================================

@main.command()
@pass_context
def rom(ctx: Context) -> None:
    """
    Jump back to mask ROM.

    Example:
        kdload rom
    """
    run_request(ctx, Request.rom())
    click.echo("Jumped to mask ROM.")


# =============================================================================
# Load / Run Commands
# =============================================================================

def _image_options(func):
    func = click.argument(
        "file", type=click.Path(exists=True, dir_okay=False)
    )(func)
    func = click.option(
        "--address", "-a",
        type=ADDRESS,
        default=None,
        help="Load address, decimal or 0x hex (overrides --space)",
    )(func)
    func = click.option(
        "--space", "-s",
        type=click.Choice([MemoryTarget.SRAM.value, MemoryTarget.DRAM.value]),
        default=None,
        help="Memory to load into (default: sram)",
    )(func)
    return func


@main.command()
@_image_options
@pass_context
def load(ctx: Context, space: Optional[str], address: Optional[int], file: str) -> None:
    """
    Load binary from file to memory.

    FILE is the raw binary image to upload. Nothing is started.

    Example:
        kdload load payload.bin
        kdload load --address 0x80380000 payload.bin
    """
    target = resolve_address(space, address)
    result = run_request(ctx, Request.load(file, address=target), show_progress=True)
    click.echo(f"Loaded {result.bytes_loaded} bytes at 0x{target:08X}.")


@main.command()
@_image_options
@pass_context
def run(ctx: Context, space: Optional[str], address: Optional[int], file: str) -> None:
    """
    Run binary code from file.

    FILE is uploaded to the selected memory and started at its first byte.

    Example:
        kdload run u-boot-spl.bin
        kdload run --space dram firmware.bin
    """
    target = resolve_address(space, address)
    result = run_request(ctx, Request.run(file, address=target), show_progress=True)
    click.echo(f"Started {result.bytes_loaded} bytes at 0x{target:08X}.")


# =============================================================================
# Entry Point
# =============================================================================

if __name__ == "__main__":
    main()
