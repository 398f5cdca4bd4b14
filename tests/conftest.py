"""
Kendryte Loader - Test Configuration
====================================

Shared fixtures and test doubles for the loader tests.

It provides:
- FakeInterface: a claimed interface whose transfers are coroutines that
  record a transfer trace and can be told to fail or stall
- FakeDevice: an open device offering claim/endpoint/info methods
- Fast configuration with short deadlines
"""

import asyncio
from dataclasses import dataclass, field
from typing import Optional

import pytest
import usb.core

from kendryte_loader.comms.protocol import Command
from kendryte_loader.comms.timed import TransferRunner
from kendryte_loader.comms.usb import DeviceInfo, Direction, Endpoint
from kendryte_loader.config import LoaderConfig


# ═══════════════════════════════════════════════════════════════════════════════
# TEST DOUBLES
# ═══════════════════════════════════════════════════════════════════════════════

CPU_INFO_TEXT = b"K230D"
CPU_INFO_REPLY = CPU_INFO_TEXT + b"\x00" * (32 - len(CPU_INFO_TEXT))

OUT_EP = Endpoint(0x01, Direction.OUT)
IN_EP = Endpoint(0x81, Direction.IN)


@dataclass
class FakeInterface:
    """
    Claimed interface double.

    Every transfer appends an entry to `trace`:
        ("in", request, value, index, length)
        ("out", request, value, index)
        ("bulk", endpoint, data)

    Attributes:
        cpu_info: Reply returned for control-in transfers
        delay: Seconds each transfer takes (simulated with asyncio.sleep)
        fail_on: Trace kinds (or opcode ints) whose transfer raises USBError
    """

    cpu_info: bytes = CPU_INFO_REPLY
    delay: float = 0.0
    fail_on: set = field(default_factory=set)
    trace: list = field(default_factory=list)
    number: int = 0
    released: bool = False

    async def _transfer(self, entry: tuple, key) -> None:
        self.trace.append(entry)
        if self.delay:
            await asyncio.sleep(self.delay)
        if key in self.fail_on or entry[0] in self.fail_on:
            raise usb.core.USBError("Pipe error", errno=32)

    async def control_in(self, request, value, index, length):
        await self._transfer(("in", request, value, index, length), request)
        return self.cpu_info[:length]

    async def control_out(self, request, value, index, data=b""):
        await self._transfer(("out", request, value, index), request)
        return len(data)

    async def bulk_out(self, endpoint, data):
        await self._transfer(("bulk", endpoint, bytes(data)), "bulk")
        return len(data)

    def release(self):
        self.released = True

    # Trace helpers

    def commands(self) -> list:
        """Trace entries reduced to (kind, decoded parameter or size)."""
        out = []
        for entry in self.trace:
            if entry[0] == "bulk":
                out.append(("bulk", len(entry[2])))
            else:
                out.append((Command(entry[1]), (entry[2] << 16) | entry[3]))
        return out

    def bulk_sizes(self) -> list:
        return [len(e[2]) for e in self.trace if e[0] == "bulk"]


class FakeDevice:
    """Open device double handing out a FakeInterface."""

    def __init__(
        self,
        interface: Optional[FakeInterface] = None,
        claim_failures: int = 0,
        info: Optional[DeviceInfo] = None,
    ):
        self.interface = interface or FakeInterface()
        self.claim_failures = claim_failures
        self.claim_attempts = 0
        self.closed = False
        self.info = info or DeviceInfo(
            bus=1, address=7, vid=0x29F1, pid=0x0230,
            manufacturer="Canaan Inc.", product="Kendryte Usb Boot",
            speed=3,
        )

    def first_interface_number(self) -> int:
        return 0

    def claim_interface(self, number: int):
        self.claim_attempts += 1
        if self.claim_attempts <= self.claim_failures:
            raise usb.core.USBError("Resource busy", errno=16)
        self.interface.number = number
        return self.interface

    def resolve_endpoints(self):
        return OUT_EP, IN_EP

    def close(self):
        self.closed = True


# ═══════════════════════════════════════════════════════════════════════════════
# FIXTURES
# ═══════════════════════════════════════════════════════════════════════════════


@pytest.fixture
def fast_config() -> LoaderConfig:
    """Configuration with short deadlines so timeout tests run quickly."""
    return LoaderConfig(transfer_timeout=0.2, claim_timeout=0.05, claim_period=0.001)


@pytest.fixture
def runner():
    """Transfer runner with a short deadline, closed after the test."""
    r = TransferRunner(deadline=0.2)
    yield r
    r.close()


@pytest.fixture
def fake_interface() -> FakeInterface:
    return FakeInterface()


@pytest.fixture
def fake_device(fake_interface: FakeInterface) -> FakeDevice:
    return FakeDevice(fake_interface)
