"""
Kendryte Loader Error Hierarchy
===============================

This module defines the exception hierarchy for the whole loader. All
exceptions inherit from KendryteError, allowing callers to catch every
loader-related error with a single except clause.

Exception Hierarchy
-------------------
KendryteError (base)
├── CommsError (USB communication)
│   ├── DeviceNotFoundError - no device with the expected VID/PID
│   ├── InterfaceClaimError - interface could not be claimed in time
│   ├── InterfaceReleasedError - interface used after release
│   ├── ProtocolError - unexpected device response or session misuse
│   │   └── ResponseDecodeError - device reply is not valid text
│   └── TransferError - a single control/bulk transfer failed
│       ├── TransferTimeoutError - transfer lost the race to its deadline
│       └── TransferIOError - device-reported status or transport fault
└── FileOpenError - image file could not be opened
"""

from typing import Optional


# =============================================================================
# Base Exception Class
# =============================================================================

class KendryteError(Exception):
    """
    Base exception for all loader errors.

        try:
            session.run(request)
        except KendryteError as e:
            print(f"Error: {e}")
    """
    pass


# =============================================================================
# Communication Exceptions
# =============================================================================

class CommsError(KendryteError):
    """Base exception for USB communication errors."""
    pass


class DeviceNotFoundError(CommsError):
    """
    No USB device matches the expected vendor/product pair.

    Usually the board is not connected, or it is not in USB boot mode
    (the mask ROM only enumerates when the boot straps select USB).
    """

    def __init__(self, vendor_id: int, product_id: int, message: str = ""):
        self.vendor_id = vendor_id
        self.product_id = product_id
        if not message:
            message = (
                f"Device {vendor_id:04x}:{product_id:04x} not found, "
                "is it connected and in the right mode?"
            )
        super().__init__(message)


class InterfaceClaimError(CommsError):
    """
    The USB interface could not be claimed before the claim timeout.

    Attributes:
        interface_number: Interface that was being claimed
        attempts: Number of claim attempts made
        cause: Last exception raised by the claim primitive (if any)
    """

    def __init__(
        self,
        interface_number: int,
        attempts: int = 0,
        cause: Optional[BaseException] = None,
    ):
        self.interface_number = interface_number
        self.attempts = attempts
        self.cause = cause
        message = f"failure claiming USB interface {interface_number}"
        if attempts:
            message += f" after {attempts} attempt(s)"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)


class InterfaceReleasedError(CommsError):
    """A transfer was attempted on an interface that has been released."""
    pass


class ProtocolError(CommsError):
    """
    Protocol error.

    Raised when the device sends an unexpected response or the session
    state machine is driven into an invalid state.
    """
    pass


class ResponseDecodeError(ProtocolError):
    """
    The device response could not be decoded as text.

    Attributes:
        data: The raw response bytes
    """

    def __init__(self, data: bytes, message: str = ""):
        self.data = bytes(data)
        if not message:
            message = f"cannot decode device response: {self.data.hex()}"
        super().__init__(message)


class TransferError(CommsError):
    """
    A single USB transfer did not complete successfully.

    Attributes:
        operation: Short description of the transfer (e.g. "control-out")
    """

    def __init__(self, message: str = "", operation: Optional[str] = None):
        self.operation = operation
        super().__init__(message or "USB transfer failed")


class TransferTimeoutError(TransferError):
    """
    The transfer did not finish before its deadline.

    The in-flight transfer is abandoned on the host side; nothing is sent
    to the device to cancel it.
    """

    def __init__(
        self,
        deadline: float,
        operation: Optional[str] = None,
        message: str = "",
    ):
        self.deadline = deadline
        if not message:
            what = operation or "transfer"
            message = f"{what} timed out after {deadline:g}s"
        super().__init__(message, operation=operation)


class TransferIOError(TransferError):
    """
    The device reported a non-success status, or the transport failed.

    Attributes:
        cause: Underlying transport exception (if any)
    """

    def __init__(
        self,
        message: str = "",
        operation: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        self.cause = cause
        if not message:
            what = operation or "transfer"
            message = f"{what} failed: {cause}" if cause else f"{what} failed"
        super().__init__(message, operation=operation)


# =============================================================================
# Input Exceptions
# =============================================================================

class FileOpenError(KendryteError):
    """
    The image file could not be opened for reading.

    Attributes:
        path: Path that was being opened
    """

    def __init__(self, path: str, cause: Optional[BaseException] = None):
        self.path = str(path)
        self.cause = cause
        message = f"cannot open {self.path}"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)
