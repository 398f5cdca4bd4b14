"""
Mask ROM Command Protocol
=========================

This module implements the vendor command set spoken by the Kendryte mask
ROM over the USB default control pipe.

Command Encoding
----------------
Every command is a vendor-type, device-recipient control transfer:

    bmRequestType  vendor | device | direction
    bRequest       command opcode (0-4)
    wValue         parameter bits 31..16
    wIndex         parameter bits 15..0
    wLength        response buffer size (0 for out-transfers)

Commands
--------
| Opcode | Command          | Direction | Parameter             |
|--------|------------------|-----------|-----------------------|
| 0      | GET_CPU_INFO     | in        | 0, 32-byte text reply |
| 1      | SET_DATA_ADDRESS | out       | load address          |
| 2      | SET_DATA_LENGTH  | out       | data length           |
| 3      | FLUSH_CACHES     | out       | 0                     |
| 4      | PROG_START       | out       | entry address         |

The protocol is stateless per command: repeating SET_DATA_ADDRESS with the
same address leaves the device in the same state as sending it once.

Memory Targets
--------------
| Target   | Address    | Use                                   |
|----------|------------|---------------------------------------|
| SRAM     | 0x80360000 | Default load/run address              |
| DRAM     | 0x00000000 | Run from DDR (initialised by earlier  |
|          |            | stage)                                |
| MASK_ROM | 0x91200000 | Jump back into the mask ROM           |
"""

import logging
from dataclasses import dataclass
from enum import Enum, IntEnum
from types import MappingProxyType
from typing import Final, Mapping, Optional

from kendryte_loader.comms.timed import TransferRunner
from kendryte_loader.config import CPU_INFO_LENGTH
from kendryte_loader.errors import ProtocolError, ResponseDecodeError

logger = logging.getLogger(__name__)


# =============================================================================
# Protocol Constants
# =============================================================================

class Command(IntEnum):
    """Vendor command opcodes (bRequest)."""

    GET_CPU_INFO = 0x0
    SET_DATA_ADDRESS = 0x1
    SET_DATA_LENGTH = 0x2
    FLUSH_CACHES = 0x3
    PROG_START = 0x4


@dataclass(frozen=True)
class CommandEntry:
    """
    How a command is put on the wire.

    Attributes:
        name: Human-readable command name for logs
        data_in: True for control-in (the device returns data)
        response_length: wLength for control-in commands
    """

    name: str
    data_in: bool = False
    response_length: int = 0


COMMAND_TABLE: Final[Mapping[Command, CommandEntry]] = MappingProxyType({
    Command.GET_CPU_INFO: CommandEntry("GetCpuInfo", data_in=True, response_length=CPU_INFO_LENGTH),
    Command.SET_DATA_ADDRESS: CommandEntry("SetDataAddress"),
    Command.SET_DATA_LENGTH: CommandEntry("SetDataLength"),
    Command.FLUSH_CACHES: CommandEntry("FlushCaches"),
    Command.PROG_START: CommandEntry("ProgStart"),
})


SRAM_RUN_BASE: Final[int] = 0x8036_0000
DRAM_RUN_BASE: Final[int] = 0x0000_0000
MASK_ROM_BASE: Final[int] = 0x9120_0000


class MemoryTarget(Enum):
    """Named destinations for uploads and program starts."""

    SRAM = "sram"
    DRAM = "dram"
    MASK_ROM = "rom"


MEMORY_TARGETS: Final[Mapping[MemoryTarget, int]] = MappingProxyType({
    MemoryTarget.SRAM: SRAM_RUN_BASE,
    MemoryTarget.DRAM: DRAM_RUN_BASE,
    MemoryTarget.MASK_ROM: MASK_ROM_BASE,
})

# Largest 32-bit parameter
PARAM_MAX: Final[int] = 0xFFFF_FFFF


# =============================================================================
# Parameter Packing
# =============================================================================

def encode_param(param: int) -> tuple[int, int]:
    """
    Split a 32-bit parameter into (wValue, wIndex).

    Args:
        param: Parameter in the range 0..0xFFFFFFFF.

    Returns:
        Tuple of (value, index): the high and low 16 bits.

    Raises:
        ValueError: If param does not fit in 32 bits.

    Example:
        >>> encode_param(0x80360000)
        (32822, 0)
    """
    if not 0 <= param <= PARAM_MAX:
        raise ValueError(f"Parameter out of 32-bit range: {param:#x}")
    return (param >> 16) & 0xFFFF, param & 0xFFFF


def decode_param(value: int, index: int) -> int:
    """Rebuild a 32-bit parameter from (wValue, wIndex)."""
    if not (0 <= value <= 0xFFFF and 0 <= index <= 0xFFFF):
        raise ValueError(f"value/index out of 16-bit range: {value:#x}/{index:#x}")
    return (value << 16) | index


def resolve_target(target: MemoryTarget, table: Mapping[MemoryTarget, int] = MEMORY_TARGETS) -> int:
    """Return the address of a memory target."""
    return table[target]


def decode_cpu_info(data: bytes) -> str:
    """
    Decode the GET_CPU_INFO reply.

    The device returns a fixed-size buffer: text followed by NUL (or other
    padding) bytes. Trailing NULs and whitespace are stripped.

    Raises:
        ResponseDecodeError: If the text part is not valid UTF-8.
    """
    try:
        text = bytes(data).decode("utf-8")
    except UnicodeDecodeError as e:
        raise ResponseDecodeError(data) from e
    return text.rstrip("\x00").rstrip()


# =============================================================================
# Protocol Implementation
# =============================================================================

class CommandProtocol:
    """
    Encodes vendor commands as control transfers on a claimed interface.

    All transfers go through a TransferRunner, so every command either
    returns the device's result or fails with TransferTimeoutError or
    TransferIOError. No command is retried.

    Example:
        protocol = CommandProtocol(iface, runner)
        print(protocol.get_cpu_info())
        protocol.prog_start(MASK_ROM_BASE)
    """

    def __init__(
        self,
        interface,
        runner: TransferRunner,
        commands: Mapping[Command, CommandEntry] = COMMAND_TABLE,
    ):
        """
        Args:
            interface: Claimed interface providing `control_in`,
                       `control_out` and `bulk_out` coroutines.
            runner: Transfer runner applying the per-transfer deadline.
            commands: Command table (substitutable for testing).
        """
        self.interface = interface
        self.runner = runner
        self.commands = commands

    def _entry(self, command: Command) -> CommandEntry:
        try:
            return self.commands[command]
        except KeyError:
            raise ProtocolError(f"Unknown command: {command!r}") from None

    def send_in(self, command: Command, param: int = 0, length: Optional[int] = None) -> bytes:
        """
        Send a control-in command and return the response bytes.

        Args:
            command: Command opcode.
            param: 32-bit parameter.
            length: Response buffer size (default: from the command table).
        """
        entry = self._entry(command)
        if length is None:
            length = entry.response_length
        value, index = encode_param(param)

        logger.debug(
            "TX: %s (in) value=0x%04X index=0x%04X length=%d",
            entry.name, value, index, length,
        )
        data = self.runner.run(
            lambda: self.interface.control_in(int(command), value, index, length),
            entry.name,
        )
        logger.debug("RX: %s %d bytes: %s", entry.name, len(data), bytes(data).hex())
        return bytes(data)

    def send_out(self, command: Command, param: int = 0) -> None:
        """Send a control-out command with no payload."""
        entry = self._entry(command)
        value, index = encode_param(param)

        logger.debug(
            "TX: %s (out) value=0x%04X index=0x%04X", entry.name, value, index
        )
        self.runner.run(
            lambda: self.interface.control_out(int(command), value, index),
            entry.name,
        )

    def send(self, command: Command, param: int = 0) -> Optional[bytes]:
        """Send any command, dispatching on its direction in the table."""
        if self._entry(command).data_in:
            return self.send_in(command, param)
        self.send_out(command, param)
        return None

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def get_cpu_info(self, length: Optional[int] = None) -> str:
        """
        Query the device identification string.

        Args:
            length: Reply buffer size (default: from the command table).
        """
        return decode_cpu_info(self.send_in(Command.GET_CPU_INFO, 0, length=length))

    def set_data_address(self, address: int) -> None:
        """Set the destination address for subsequent bulk data."""
        self.send_out(Command.SET_DATA_ADDRESS, address)

    def set_data_length(self, length: int) -> None:
        self.send_out(Command.SET_DATA_LENGTH, length)

    def flush_caches(self) -> None:
        self.send_out(Command.FLUSH_CACHES, 0)

    def prog_start(self, address: int) -> None:
        """Transfer control to *address* on the device."""
        self.send_out(Command.PROG_START, address)

    def bulk_out(self, endpoint: int, data: bytes) -> int:
        """Send one bulk-out transfer under the deadline."""
        logger.debug("TX: bulk-out ep=0x%02X len=%d", endpoint, len(data))
        return self.runner.run(
            lambda: self.interface.bulk_out(endpoint, data),
            "bulk-out",
        )
