"""
USB Transport Binding
=====================

This module wraps pyusb for the loader. It handles:

- Enumeration of attached mask-ROM devices
- Opening a device and resolving its bulk endpoints
- Single claim attempts on an interface (retry lives in `claim`)
- Control-in, control-out and bulk-out transfers as awaitables

Transfers
---------
pyusb transfers are blocking libusb calls. `UsbInterface` runs each one on
a dedicated single worker thread and hands the caller an awaitable, so the
transfer can be raced against a timer by `TransferRunner`. The worker is
single-threaded: a transfer abandoned at its deadline still occupies the
worker until libusb gives up on it, and the next transfer queues behind it
rather than overtaking it on the wire.

Permissions
-----------
On Linux the device node must be accessible to the user, typically via a
udev rule such as:

    SUBSYSTEM=="usb", ATTR{idVendor}=="29f1", MODE="0666"
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Final, Optional

import usb.core
import usb.util

from kendryte_loader.config import K230D_PID, KENDRYTE_VID, TRANSFER_TIMEOUT
from kendryte_loader.errors import (
    CommsError,
    DeviceNotFoundError,
    InterfaceReleasedError,
    ProtocolError,
    TransferIOError,
)

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

# bmRequestType for vendor requests addressed to the whole device
VENDOR_DEVICE_OUT: Final[int] = usb.util.build_request_type(
    usb.util.CTRL_OUT, usb.util.CTRL_TYPE_VENDOR, usb.util.CTRL_RECIPIENT_DEVICE
)
VENDOR_DEVICE_IN: Final[int] = usb.util.build_request_type(
    usb.util.CTRL_IN, usb.util.CTRL_TYPE_VENDOR, usb.util.CTRL_RECIPIENT_DEVICE
)


class Speed(IntEnum):
    """USB bus speeds as reported by libusb."""

    UNKNOWN = 0
    LOW = 1
    FULL = 2
    HIGH = 3
    SUPER = 4
    SUPER_PLUS = 5


# Max packet size for bulk endpoints at each bus speed
MAX_PACKET_SIZES: Final[dict[Speed, int]] = {
    Speed.LOW: 64,
    Speed.FULL: 64,
    Speed.HIGH: 512,
    Speed.SUPER: 1024,
    Speed.SUPER_PLUS: 1024,
}


def max_packet_size(speed: Optional[int]) -> Optional[int]:
    """
    Return the bulk max packet size for a bus speed.

    Returns None when the backend does not report the speed or reports a
    value this table does not know.
    """
    try:
        return MAX_PACKET_SIZES.get(Speed(speed))
    except (TypeError, ValueError):
        return None


# =============================================================================
# Endpoints
# =============================================================================

class Direction(Enum):
    """Endpoint direction, seen from the host."""

    IN = "in"
    OUT = "out"


@dataclass(frozen=True)
class Endpoint:
    """
    A resolved USB endpoint.

    Attributes:
        address: bEndpointAddress (direction bit included)
        direction: IN or OUT
    """

    address: int
    direction: Direction

    def __str__(self) -> str:
        return f"0x{self.address:02x} ({self.direction.value})"


def resolve_endpoints(device: "usb.core.Device") -> tuple[Endpoint, Optional[Endpoint]]:
    """
    Resolve the bulk OUT and IN endpoints of a device.

    Looks at the first alt-setting of the active configuration, the same
    place the mask ROM exposes its single vendor interface.

    Returns:
        Tuple of (out_endpoint, in_endpoint). The IN endpoint may be None.

    Raises:
        ProtocolError: If no OUT endpoint exists.
    """
    cfg = device.get_active_configuration()
    alt = next(iter(cfg.interfaces()), None)
    if alt is None:
        raise ProtocolError("Device configuration has no interfaces")

    ep_out = usb.util.find_descriptor(
        alt,
        custom_match=lambda e: usb.util.endpoint_direction(e.bEndpointAddress)
        == usb.util.ENDPOINT_OUT,
    )
    ep_in = usb.util.find_descriptor(
        alt,
        custom_match=lambda e: usb.util.endpoint_direction(e.bEndpointAddress)
        == usb.util.ENDPOINT_IN,
    )

    if ep_out is None:
        raise ProtocolError("Device has no OUT endpoint")

    out = Endpoint(ep_out.bEndpointAddress, Direction.OUT)
    inp = Endpoint(ep_in.bEndpointAddress, Direction.IN) if ep_in is not None else None
    logger.debug("Endpoints: out=%s in=%s", out, inp)
    return out, inp


# =============================================================================
# Device Information
# =============================================================================

@dataclass(frozen=True)
class DeviceInfo:
    """
    Information about an attached USB device.

    Attributes:
        bus: USB bus number
        address: Device address on the bus
        vid: USB Vendor ID
        pid: USB Product ID
        manufacturer: Manufacturer string (if readable)
        product: Product string (if readable)
        serial_number: Serial number string (if readable)
        speed: Bus speed (if reported by the backend)
    """

    bus: Optional[int]
    address: Optional[int]
    vid: int
    pid: int
    manufacturer: Optional[str] = None
    product: Optional[str] = None
    serial_number: Optional[str] = None
    speed: Optional[int] = None

    @property
    def max_packet_size(self) -> Optional[int]:
        """Bulk max packet size implied by the bus speed."""
        return max_packet_size(self.speed)

    @property
    def speed_name(self) -> str:
        try:
            return Speed(self.speed).name.replace("_", "")
        except (TypeError, ValueError):
            return "UNKNOWN"

    def __str__(self) -> str:
        parts = [f"{self.vid:04x}:{self.pid:04x}"]
        if self.bus is not None:
            parts.append(f"bus {self.bus} addr {self.address}")
        name = " ".join(s for s in (self.manufacturer, self.product) if s)
        if name:
            parts.append(f"- {name}")
        return " ".join(parts)


def _get_string(device: "usb.core.Device", index: int) -> Optional[str]:
    """Read a string descriptor, returning None if it cannot be read."""
    if not index:
        return None
    try:
        return usb.util.get_string(device, index)
    except (usb.core.USBError, ValueError, NotImplementedError) as e:
        logger.debug("Cannot read string descriptor %d: %s", index, e)
        return None


def describe_device(device: "usb.core.Device") -> DeviceInfo:
    """Build a DeviceInfo from a pyusb device."""
    return DeviceInfo(
        bus=getattr(device, "bus", None),
        address=getattr(device, "address", None),
        vid=device.idVendor,
        pid=device.idProduct,
        manufacturer=_get_string(device, device.iManufacturer),
        product=_get_string(device, device.iProduct),
        serial_number=_get_string(device, device.iSerialNumber),
        speed=getattr(device, "speed", None),
    )


def list_devices(
    vendor_id: int = KENDRYTE_VID,
    product_id: int = K230D_PID,
) -> list[DeviceInfo]:
    """
    List attached devices matching the vendor/product pair.

    Returns:
        List of DeviceInfo objects, possibly empty.
    """
    devices = []
    for device in usb.core.find(find_all=True, idVendor=vendor_id, idProduct=product_id):
        info = describe_device(device)
        devices.append(info)
        logger.debug("Found device: %s", info)
    return devices


def format_device_list(devices: list[DeviceInfo], verbose: bool = False) -> str:
    """Format a device list for display, one device per line."""
    if not devices:
        return "No devices found."

    lines = []
    for info in devices:
        if verbose:
            line = f"  {info}"
            line += f"\n    Speed: {info.speed_name}"
            if info.max_packet_size:
                line += f" (max packet size {info.max_packet_size})"
            if info.serial_number:
                line += f"\n    Serial: {info.serial_number}"
            lines.append(line)
        else:
            lines.append(f"  {info}")
    return "\n".join(lines)


# =============================================================================
# Device Handle
# =============================================================================

class UsbDevice:
    """
    An open mask-ROM device.

    Owns the pyusb device object and disposes of its resources on close.

    Example:
        device = UsbDevice.find()
        iface = device.claim_interface(device.first_interface_number())
        ...
        device.close()
    """

    def __init__(self, device: "usb.core.Device", timeout: float = TRANSFER_TIMEOUT):
        self._dev = device
        self._timeout = timeout
        self._info: Optional[DeviceInfo] = None

    @classmethod
    def find(
        cls,
        vendor_id: int = KENDRYTE_VID,
        product_id: int = K230D_PID,
        timeout: float = TRANSFER_TIMEOUT,
    ) -> "UsbDevice":
        """
        Find and open the first device matching the vendor/product pair.

        Raises:
            DeviceNotFoundError: If no matching device is attached.
            CommsError: If the device cannot be configured.
        """
        dev = usb.core.find(idVendor=vendor_id, idProduct=product_id)
        if dev is None:
            raise DeviceNotFoundError(vendor_id, product_id)

        try:
            dev.get_active_configuration()
        except usb.core.USBError:
            # Unconfigured device: select its first configuration
            try:
                dev.set_configuration()
            except usb.core.USBError as e:
                raise CommsError(f"Cannot configure device: {e}") from e

        logger.info("Opened device %04x:%04x", vendor_id, product_id)
        return cls(dev, timeout)

    @property
    def info(self) -> DeviceInfo:
        if self._info is None:
            self._info = describe_device(self._dev)
        return self._info

    def first_interface_number(self) -> int:
        """Return the number of the active configuration's first interface."""
        cfg = self._dev.get_active_configuration()
        alt = next(iter(cfg.interfaces()), None)
        if alt is None:
            raise ProtocolError("Device configuration has no interfaces")
        return alt.bInterfaceNumber

    def resolve_endpoints(self) -> tuple[Endpoint, Optional[Endpoint]]:
        return resolve_endpoints(self._dev)

    def claim_interface(self, number: int) -> "UsbInterface":
        """
        Make a single attempt to claim an interface.

        Raises:
            usb.core.USBError: If the claim fails (e.g. the interface is
                still held by another process or a kernel driver).
        """
        try:
            if self._dev.is_kernel_driver_active(number):
                self._dev.detach_kernel_driver(number)
                logger.debug("Detached kernel driver from interface %d", number)
        except NotImplementedError:
            # Not supported on this platform/backend
            pass

        usb.util.claim_interface(self._dev, number)
        return UsbInterface(self._dev, number, timeout=self._timeout)

    def close(self) -> None:
        """Release all resources held for the device."""
        usb.util.dispose_resources(self._dev)
        logger.debug("Device resources disposed")

    def __enter__(self) -> "UsbDevice":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


# =============================================================================
# Claimed Interface
# =============================================================================

class UsbInterface:
    """
    An exclusively claimed interface on an open device.

    Transfer methods are coroutines; each runs the blocking pyusb call on
    the interface's single worker thread.

    Attributes:
        number: Interface number
    """

    def __init__(
        self,
        device: "usb.core.Device",
        number: int,
        timeout: float = TRANSFER_TIMEOUT,
    ):
        self._dev = device
        self.number = number
        self._timeout_ms = int(timeout * 1000)
        self._executor = ThreadPoolExecutor(
            max_workers=1, thread_name_prefix=f"usb-if{number}"
        )
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def _check_claimed(self) -> None:
        if self._released:
            raise InterfaceReleasedError(f"Interface {self.number} has been released")

    async def _call(self, func, *args, **kwargs):
        self._check_claimed()
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, lambda: func(*args, **kwargs))

    async def control_in(self, request: int, value: int, index: int, length: int) -> bytes:
        """Vendor/device control-in transfer returning up to *length* bytes."""
        data = await self._call(
            self._dev.ctrl_transfer,
            VENDOR_DEVICE_IN,
            request,
            value,
            index,
            length,
            timeout=self._timeout_ms,
        )
        return bytes(data)

    async def control_out(
        self, request: int, value: int, index: int, data: bytes = b""
    ) -> int:
        """Vendor/device control-out transfer. Returns bytes written."""
        return await self._call(
            self._dev.ctrl_transfer,
            VENDOR_DEVICE_OUT,
            request,
            value,
            index,
            data,
            timeout=self._timeout_ms,
        )

    async def bulk_out(self, endpoint: int, data: bytes) -> int:
        """
        Bulk-out transfer of *data* to *endpoint*.

        Raises:
            TransferIOError: If the device accepted fewer bytes than sent.
        """
        written = await self._call(
            self._dev.write, endpoint, data, timeout=self._timeout_ms
        )
        if written != len(data):
            raise TransferIOError(
                f"short bulk write: {written} of {len(data)} bytes",
                operation="bulk-out",
            )
        return written

    def release(self) -> None:
        """Release the interface. Further transfers raise InterfaceReleasedError."""
        if self._released:
            return
        self._released = True
        self._executor.shutdown(wait=False)
        try:
            usb.util.release_interface(self._dev, self.number)
        except usb.core.USBError as e:
            logger.warning("Error releasing interface %d: %s", self.number, e)
        logger.debug("Interface %d released", self.number)
