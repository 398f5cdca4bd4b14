"""
Kendryte Loader - USB mask ROM loader for the Kendryte K230
===========================================================

This package talks to the Kendryte K230/K230D mask ROM when the chip boots
in USB mode. The mask ROM enumerates as a vendor-specific device
(29f1:0230) and accepts a handful of vendor control requests that let the
host read the CPU identification, write data into on-chip memory over a
bulk endpoint, and jump to it.

Main Components
---------------
- **comms**: USB transport, command protocol, image upload and session
- **config**: Loader configuration and protocol timing constants
- **errors**: Exception hierarchy
- **cli**: The `kdload` command-line tool

Quick Start
-----------
    >>> from kendryte_loader import Session, Request
    >>> with Session.open() as session:
    ...     session.run(Request.run("u-boot-spl.bin"))

Or use the command-line tool:
    $ kdload cpu-info
    $ kdload run --space sram u-boot-spl.bin
    $ kdload rom
"""

__version__ = "0.2.0"

# =============================================================================
# Public API Exports
# =============================================================================

from kendryte_loader.config import LoaderConfig
from kendryte_loader.errors import (
    KendryteError,
    CommsError,
    DeviceNotFoundError,
    InterfaceClaimError,
    InterfaceReleasedError,
    ProtocolError,
    ResponseDecodeError,
    TransferError,
    TransferTimeoutError,
    TransferIOError,
    FileOpenError,
)
from kendryte_loader.comms import (
    Command,
    CommandProtocol,
    ImageLoader,
    MemoryTarget,
    Operation,
    Request,
    Session,
    SessionResult,
    SessionState,
    TransferRunner,
)

__all__ = [
    "__version__",
    # Configuration
    "LoaderConfig",
    # Errors
    "KendryteError",
    "CommsError",
    "DeviceNotFoundError",
    "InterfaceClaimError",
    "InterfaceReleasedError",
    "ProtocolError",
    "ResponseDecodeError",
    "TransferError",
    "TransferTimeoutError",
    "TransferIOError",
    "FileOpenError",
    # Comms
    "Command",
    "CommandProtocol",
    "ImageLoader",
    "MemoryTarget",
    "Operation",
    "Request",
    "Session",
    "SessionResult",
    "SessionState",
    "TransferRunner",
]
