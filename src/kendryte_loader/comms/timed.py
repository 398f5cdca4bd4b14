"""
Timed Transfer Execution
========================

Every USB transfer made by the loader is raced against a fixed deadline so
that a hung device can never block the host indefinitely.

Race Semantics
--------------
`TransferRunner.run()` schedules two tasks on a private asyncio event loop:
the transfer itself and a timer. Whichever finishes first decides the
outcome:

- transfer first, with a value   -> the value is returned
- transfer first, with an error  -> TransferTimeoutError / TransferIOError
- timer first                    -> TransferTimeoutError

The losing task is cancelled locally. Nothing is sent to the device, so a
transfer that lost to the timer is simply abandoned. The caller decides
whether to retry; the runner never does.

The runner does not care about direction: control-in, control-out and
bulk-out transfers all go through the same `run()` call.

Example:
    with TransferRunner(deadline=5.0) as runner:
        data = runner.run(lambda: iface.control_in(0, 0, 0, 32), "GetCpuInfo")
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import usb.core

from kendryte_loader.config import TRANSFER_TIMEOUT
from kendryte_loader.errors import TransferError, TransferIOError, TransferTimeoutError

logger = logging.getLogger(__name__)

# Zero-argument callable producing the transfer awaitable
TransferFactory = Callable[[], Awaitable[Any]]


class TransferRunner:
    """
    Runs transfers to completion or to their deadline, whichever is first.

    The runner owns one event loop for its whole lifetime and is reused for
    every transfer of a session. It is NOT thread-safe and NOT re-entrant:
    `run()` must not be called from inside a running event loop.

    Attributes:
        deadline: Per-transfer deadline in seconds
    """

    def __init__(self, deadline: float = TRANSFER_TIMEOUT):
        if deadline <= 0:
            raise ValueError(f"Deadline must be positive: {deadline}")
        self.deadline = deadline
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._closed:
            raise RuntimeError("TransferRunner is closed")
        if self._loop is None:
            self._loop = asyncio.new_event_loop()
        return self._loop

    def run(self, transfer: TransferFactory, operation: str = "transfer") -> Any:
        """
        Run one transfer under the deadline.

        Args:
            transfer: Callable returning the transfer awaitable.
            operation: Description used in log and error messages.

        Returns:
            Whatever the transfer returned.

        Raises:
            TransferTimeoutError: The deadline expired first, or the
                transport itself reported a timeout.
            TransferIOError: The transfer failed with a device-reported
                status or a transport fault.
        """
        loop = self._get_loop()
        return loop.run_until_complete(self._race(transfer, operation))

    async def _race(self, transfer: TransferFactory, operation: str) -> Any:
        transfer_task = asyncio.ensure_future(transfer())
        timer_task = asyncio.ensure_future(asyncio.sleep(self.deadline))

        done, _pending = await asyncio.wait(
            {transfer_task, timer_task},
            return_when=asyncio.FIRST_COMPLETED,
        )

        if transfer_task in done:
            await _discard(timer_task)
            try:
                result = transfer_task.result()
            except TransferError:
                raise
            except usb.core.USBTimeoutError as e:
                raise TransferTimeoutError(self.deadline, operation=operation) from e
            except (usb.core.USBError, OSError) as e:
                raise TransferIOError(operation=operation, cause=e) from e
            logger.debug("%s completed", operation)
            return result

        # Timer won: stop waiting on the transfer
        await _discard(transfer_task)
        logger.debug("%s abandoned after %gs", operation, self.deadline)
        raise TransferTimeoutError(self.deadline, operation=operation)

    def close(self) -> None:
        """Close the event loop. Abandoned transfers are not awaited."""
        self._closed = True
        if self._loop is not None and not self._loop.is_closed():
            self._loop.close()

    def __enter__(self) -> "TransferRunner":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


async def _discard(task: "asyncio.Future[Any]") -> None:
    """Cancel a losing task and let the loop process it without waiting on it."""
    task.cancel()
    # timeout=0 never blocks, even if the task ignores cancellation
    await asyncio.wait({task}, timeout=0)
