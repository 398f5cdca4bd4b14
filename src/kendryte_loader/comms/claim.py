"""
Interface Acquisition
=====================

Claims the mask ROM's USB interface, retrying at a fixed short cadence.

Right after enumeration, or after a previous loader process exits, the OS
can still hold the interface for a moment. The claim is therefore retried
every CLAIM_INTERFACE_PERIOD until CLAIM_INTERFACE_TIMEOUT has elapsed since
the first attempt. There is no backoff: the contention window is a short
handle release, not a remote call with variable latency.
"""

import logging
import time
from typing import Any, Callable, Optional, Protocol

import usb.core

from kendryte_loader.config import CLAIM_INTERFACE_PERIOD, CLAIM_INTERFACE_TIMEOUT
from kendryte_loader.errors import CommsError, InterfaceClaimError

logger = logging.getLogger(__name__)


class Claimable(Protocol):
    """Anything offering a single-attempt interface claim."""

    def claim_interface(self, number: int) -> Any:
        ...


def acquire_interface(
    device: Claimable,
    interface_number: int,
    *,
    timeout: float = CLAIM_INTERFACE_TIMEOUT,
    period: float = CLAIM_INTERFACE_PERIOD,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> Any:
    """
    Claim an interface, retrying until the timeout expires.

    Args:
        device: Device offering `claim_interface(number)`.
        interface_number: Interface to claim.
        timeout: Total retry window in seconds, measured from the first
                 attempt.
        period: Sleep between attempts in seconds.
        clock: Monotonic clock (injectable for tests).
        sleep: Sleep function (injectable for tests).

    Returns:
        The claimed interface.

    Raises:
        InterfaceClaimError: If no attempt succeeded within the window.
    """
    start = clock()
    attempts = 0
    last_error: Optional[BaseException] = None

    while clock() - start <= timeout:
        attempts += 1
        try:
            claimed = device.claim_interface(interface_number)
        except (usb.core.USBError, CommsError) as e:
            last_error = e
            logger.debug(
                "Claim attempt %d on interface %d failed: %s",
                attempts, interface_number, e,
            )
            sleep(period)
            continue

        logger.info(
            "Claimed interface %d (attempt %d)", interface_number, attempts
        )
        return claimed

    raise InterfaceClaimError(interface_number, attempts=attempts, cause=last_error)
