"""
Unified CLI Error Handling
==========================

Provides consistent error reporting and exit codes for the CLI.
"""

import sys
import traceback
from enum import IntEnum
from typing import NoReturn

import click


class ExitCode(IntEnum):
    """Exit codes for the CLI."""
    SUCCESS = 0
    DEVICE_ERROR = 1     # Device not found, claim, transfer or protocol error
    INVALID_ARGS = 2     # Invalid arguments or unreadable files
    INTERNAL_ERROR = 3   # Unexpected internal error


def handle_cli_exception(error: Exception, verbose: bool = False) -> NoReturn:
    """
    Report an exception and exit with the matching exit code.

    Args:
        error: The exception that was raised
        verbose: If True, print full traceback for internal errors

    Raises:
        SystemExit: Always exits with a non-zero exit code
    """
    import usb.core

    from kendryte_loader.errors import FileOpenError, KendryteError

    if isinstance(error, FileOpenError):
        click.echo(f"Error: {error}", err=True)
        sys.exit(ExitCode.INVALID_ARGS)

    elif isinstance(error, KendryteError):
        click.echo(f"Error: {error}", err=True)
        sys.exit(ExitCode.DEVICE_ERROR)

    elif isinstance(error, usb.core.USBError):
        # Raw libusb failure outside a timed transfer (e.g. descriptor reads)
        click.echo(f"USB error: {error}", err=True)
        if getattr(error, "errno", None) == 13:
            click.echo(
                "hint: no permission to access the device; add a udev rule "
                "for 29f1:0230 or run as root",
                err=True,
            )
        sys.exit(ExitCode.DEVICE_ERROR)

    elif isinstance(error, usb.core.NoBackendError):
        click.echo("Error: no libusb backend available, install libusb-1.0", err=True)
        sys.exit(ExitCode.DEVICE_ERROR)

    elif isinstance(error, OSError):
        # Image file failing while it is being read
        click.echo(f"Error: cannot read image: {error}", err=True)
        sys.exit(ExitCode.INVALID_ARGS)

    else:
        click.echo(f"Internal error: {error}", err=True)
        if verbose:
            traceback.print_exc()
        sys.exit(ExitCode.INTERNAL_ERROR)
