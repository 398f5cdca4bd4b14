"""
Kendryte Communication Module
=============================

This module drives the Kendryte K230 mask ROM over USB: it claims the
device's vendor interface, sends the mask ROM's vendor commands, uploads
images into on-chip memory and starts them.

Module Structure
----------------
- **usb**: pyusb transport binding (enumeration, endpoints, transfers)
- **claim**: interface acquisition with a bounded fixed-cadence retry
- **timed**: per-transfer deadline race (TransferRunner)
- **protocol**: vendor command encoding and memory target table
- **loader**: chunked image upload
- **session**: request state machine tying the above together

Quick Start
-----------
**Run an image from SRAM**:

    from kendryte_loader.comms import Request, Session

    with Session.open() as session:
        result = session.run(Request.run("u-boot-spl.bin"))
        print(f"Device says: {result.cpu_info}")

**Jump back to the mask ROM**:

    with Session.open() as session:
        session.run(Request.rom())

Error Handling
--------------
All communication errors inherit from `CommsError`:

- `DeviceNotFoundError`: no device with the expected VID/PID
- `InterfaceClaimError`: the interface stayed busy for the whole window
- `TransferTimeoutError`: a transfer missed its deadline
- `TransferIOError`: the device or transport reported a failure

These exceptions are defined in `kendryte_loader.errors`.

Thread Safety
-------------
The communication classes are NOT thread-safe. One session, one thread.
"""

# =============================================================================
# Public API Exports
# =============================================================================

# Transport
from kendryte_loader.comms.usb import (
    MAX_PACKET_SIZES,
    DeviceInfo,
    Direction,
    Endpoint,
    Speed,
    UsbDevice,
    UsbInterface,
    format_device_list,
    list_devices,
    max_packet_size,
    resolve_endpoints,
)

# Interface acquisition
from kendryte_loader.comms.claim import acquire_interface

# Deadline race
from kendryte_loader.comms.timed import TransferRunner

# Command protocol
from kendryte_loader.comms.protocol import (
    COMMAND_TABLE,
    DRAM_RUN_BASE,
    MASK_ROM_BASE,
    MEMORY_TARGETS,
    SRAM_RUN_BASE,
    Command,
    CommandProtocol,
    CommandEntry,
    MemoryTarget,
    decode_cpu_info,
    decode_param,
    encode_param,
    resolve_target,
)

# Image upload
from kendryte_loader.comms.loader import (
    ImageLoader,
    ProgressCallback,
    iter_chunks,
    open_image,
)

# Session
from kendryte_loader.comms.session import (
    Operation,
    Request,
    Session,
    SessionResult,
    SessionState,
)

__all__ = [
    # Transport
    "MAX_PACKET_SIZES",
    "DeviceInfo",
    "Direction",
    "Endpoint",
    "Speed",
    "UsbDevice",
    "UsbInterface",
    "format_device_list",
    "list_devices",
    "max_packet_size",
    "resolve_endpoints",
    # Acquisition
    "acquire_interface",
    # Deadline race
    "TransferRunner",
    # Protocol
    "COMMAND_TABLE",
    "DRAM_RUN_BASE",
    "MASK_ROM_BASE",
    "MEMORY_TARGETS",
    "SRAM_RUN_BASE",
    "Command",
    "CommandProtocol",
    "CommandEntry",
    "MemoryTarget",
    "decode_cpu_info",
    "decode_param",
    "encode_param",
    "resolve_target",
    # Loader
    "ImageLoader",
    "ProgressCallback",
    "iter_chunks",
    "open_image",
    # Session
    "Operation",
    "Request",
    "Session",
    "SessionResult",
    "SessionState",
]
