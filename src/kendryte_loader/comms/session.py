"""
Loader Session
==============

Drives one device from discovery to a terminal state.

State Machine
-------------
    DISCOVERING
        |  device found, opened, interface claimed
    INTERFACE_CLAIMED
        |  GET_CPU_INFO (always)
    IDENTITY_QUERIED
        |-- INFO --------------------------------> IDLE
        |-- ROM  -- PROG_START(mask ROM) --------> REBOOTING_TO_ROM
        |-- LOAD -- upload ----------------------> LOADED
        '-- RUN  -- upload -- PROG_START(addr) --> RUNNING

All end states are terminal. A session is used for exactly one request;
there is no state carried across invocations.

Failure Policy
--------------
Device-not-found, claim failure and an undecodable CPU-info reply are
always fatal. Failed SET_DATA_ADDRESS, PROG_START and chunk transfers are
fatal in strict mode (the default). In best-effort mode they are logged
and the sequence carries on, which can leave a corrupted image in device
memory.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Callable, Optional, Union

from kendryte_loader.comms.claim import acquire_interface
from kendryte_loader.comms.loader import ImageLoader, ProgressCallback, open_image
from kendryte_loader.comms.protocol import (
    MASK_ROM_BASE,
    CommandProtocol,
    MemoryTarget,
    resolve_target,
)
from kendryte_loader.comms.timed import TransferRunner
from kendryte_loader.comms.usb import DeviceInfo, Endpoint, UsbDevice
from kendryte_loader.config import LoaderConfig
from kendryte_loader.errors import ProtocolError, TransferError

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Session state machine states."""

    DISCOVERING = "discovering"
    INTERFACE_CLAIMED = "interface-claimed"
    IDENTITY_QUERIED = "identity-queried"
    IDLE = "idle"
    LOADING = "loading"
    LOADED = "loaded"
    RUNNING = "running"
    REBOOTING_TO_ROM = "rebooting-to-rom"


TERMINAL_STATES = frozenset({
    SessionState.IDLE,
    SessionState.LOADED,
    SessionState.RUNNING,
    SessionState.REBOOTING_TO_ROM,
})


class Operation(Enum):
    """What the operator asked for."""

    INFO = "cpu-info"
    ROM = "rom"
    LOAD = "load"
    RUN = "run"


@dataclass(frozen=True)
class Request:
    """
    A single session request.

    Attributes:
        operation: Requested operation
        address: Load/run address (LOAD and RUN)
        source: Image path or open binary stream (LOAD and RUN)
    """

    operation: Operation
    address: Optional[int] = None
    source: Union[str, Path, BinaryIO, None] = None

    @classmethod
    def info(cls) -> "Request":
        return cls(Operation.INFO)

    @classmethod
    def rom(cls) -> "Request":
        return cls(Operation.ROM)

    @classmethod
    def load(cls, source, address: Optional[int] = None,
             target: MemoryTarget = MemoryTarget.SRAM) -> "Request":
        return cls(Operation.LOAD, _pick_address(address, target), source)

    @classmethod
    def run(cls, source, address: Optional[int] = None,
            target: MemoryTarget = MemoryTarget.SRAM) -> "Request":
        return cls(Operation.RUN, _pick_address(address, target), source)


def _pick_address(address: Optional[int], target: MemoryTarget) -> int:
    if address is not None:
        return address
    return resolve_target(target)


@dataclass
class SessionResult:
    """
    Outcome of a session.

    Attributes:
        state: Terminal state reached
        cpu_info: Device identification string
        bytes_loaded: Image bytes sent (LOAD and RUN)
        failures: Transfer failures skipped in best-effort mode
    """

    state: SessionState
    cpu_info: str
    bytes_loaded: int = 0
    failures: list[TransferError] = field(default_factory=list)


class Session:
    """
    One loader session against one device.

    Example:
        with Session.open(LoaderConfig()) as session:
            result = session.run(Request.run("u-boot-spl.bin"))
            print(result.cpu_info)
    """

    def __init__(
        self,
        device,
        config: Optional[LoaderConfig] = None,
        runner: Optional[TransferRunner] = None,
        on_identity: Optional[Callable[[str], None]] = None,
    ):
        """
        Claim the device's interface and resolve its endpoints.

        Args:
            device: Open device (UsbDevice or a test double with the same
                    methods).
            config: Loader configuration.
            runner: Transfer runner (default: one using the configured
                    deadline).
            on_identity: Called with the CPU-info string as soon as it is
                         known, before the requested operation proceeds.

        Raises:
            InterfaceClaimError: If the interface cannot be claimed.
        """
        self.config = config or LoaderConfig()
        self.device = device
        self.runner = runner or TransferRunner(self.config.transfer_timeout)
        self.on_identity = on_identity
        self.history: list[SessionState] = [SessionState.DISCOVERING]
        self.cpu_info: Optional[str] = None
        self._used = False

        number = self.config.interface_number
        if number is None:
            number = device.first_interface_number()

        self.interface = acquire_interface(
            device,
            number,
            timeout=self.config.claim_timeout,
            period=self.config.claim_period,
        )
        self._enter(SessionState.INTERFACE_CLAIMED)

        self.out_endpoint: Endpoint
        self.in_endpoint: Optional[Endpoint]
        try:
            self.out_endpoint, self.in_endpoint = device.resolve_endpoints()
        except Exception:
            self.interface.release()
            raise

        self.protocol = CommandProtocol(self.interface, self.runner)

    @classmethod
    def open(cls, config: Optional[LoaderConfig] = None, **kwargs) -> "Session":
        """
        Find the device and start a session on it.

        Raises:
            DeviceNotFoundError: If no matching device is attached.
            InterfaceClaimError: If the interface cannot be claimed.
        """
        config = config or LoaderConfig()
        device = UsbDevice.find(
            config.vendor_id, config.product_id, timeout=config.transfer_timeout
        )
        try:
            return cls(device, config, **kwargs)
        except Exception:
            device.close()
            raise

    @property
    def state(self) -> SessionState:
        return self.history[-1]

    @property
    def device_info(self) -> DeviceInfo:
        return self.device.info

    def _enter(self, state: SessionState) -> None:
        logger.debug("Session state: %s -> %s", self.state.value, state.value)
        self.history.append(state)

    # -------------------------------------------------------------------------
    # Request Execution
    # -------------------------------------------------------------------------

    def run(
        self,
        request: Request,
        progress: Optional[ProgressCallback] = None,
    ) -> SessionResult:
        """
        Execute a request and return its result.

        Raises:
            ProtocolError: If the session was already used, or the request
                is missing its address/source.
            ResponseDecodeError: If the CPU-info reply is not valid text.
            TransferError: On failed transfers in strict mode.
            FileOpenError: If the image file cannot be opened.
        """
        if self._used:
            raise ProtocolError(f"Session already finished ({self.state.value})")
        self._used = True

        if request.operation in (Operation.LOAD, Operation.RUN):
            if request.address is None or request.source is None:
                raise ProtocolError(f"{request.operation.value} needs an address and an image")

        self.cpu_info = self.protocol.get_cpu_info(self.config.cpu_info_length)
        self._enter(SessionState.IDENTITY_QUERIED)
        logger.info("Device says: %s", self.cpu_info)
        if self.on_identity:
            self.on_identity(self.cpu_info)

        result = SessionResult(state=self.state, cpu_info=self.cpu_info)

        if request.operation is Operation.INFO:
            self._enter(SessionState.IDLE)

        elif request.operation is Operation.ROM:
            self._start(MASK_ROM_BASE, result)
            self._enter(SessionState.REBOOTING_TO_ROM)

        else:
            self._enter(SessionState.LOADING)
            result.bytes_loaded = self._load(request, result, progress)
            if request.operation is Operation.RUN:
                self._start(request.address, result)
                self._enter(SessionState.RUNNING)
            else:
                self._enter(SessionState.LOADED)

        result.state = self.state
        return result

    def _load(
        self,
        request: Request,
        result: SessionResult,
        progress: Optional[ProgressCallback],
    ) -> int:
        loader = ImageLoader(
            self.protocol,
            self.out_endpoint,
            chunk_size=self.config.chunk_size,
            strict=self.config.strict,
        )
        try:
            if isinstance(request.source, (str, Path)):
                with open_image(request.source) as source:
                    return loader.load(request.address, source, progress=progress)
            return loader.load(request.address, request.source, progress=progress)
        finally:
            result.failures.extend(loader.failures)

    def _start(self, address: int, result: SessionResult) -> None:
        logger.info("Starting program at 0x%08X", address)
        try:
            self.protocol.prog_start(address)
        except TransferError as e:
            if self.config.strict:
                raise
            logger.warning("ProgStart failed, continuing: %s", e)
            result.failures.append(e)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Release the interface, the transfer runner and the device."""
        self.interface.release()
        self.runner.close()
        self.device.close()

    def __enter__(self) -> "Session":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
