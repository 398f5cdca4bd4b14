"""
Image Loader
============

Streams an executable image into device memory.

Upload Sequence
---------------
1. SET_DATA_ADDRESS(address)
2. Read the image CHUNK_SIZE bytes at a time
3. Send each non-empty chunk as one bulk-out transfer
4. Stop at the first zero-length read

The device has no flow control beyond per-transfer completion status, so
chunks are sent strictly one at a time: chunk N+1 is not started until the
outcome of chunk N is known.
"""

import io
import logging
from pathlib import Path
from typing import BinaryIO, Callable, Iterator, Optional, Union

from kendryte_loader.comms.protocol import CommandProtocol
from kendryte_loader.comms.usb import Endpoint
from kendryte_loader.config import CHUNK_SIZE
from kendryte_loader.errors import FileOpenError, TransferError

logger = logging.getLogger(__name__)

# Progress callback: (bytes_sent, total_bytes or None if unknown)
ProgressCallback = Callable[[int, Optional[int]], None]


def iter_chunks(source: BinaryIO, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
    """
    Yield successive chunks read from a binary stream.

    Every chunk is at most chunk_size bytes; only the last may be shorter.
    Iteration ends at the first zero-length read.
    """
    while True:
        chunk = source.read(chunk_size)
        if not chunk:
            return
        yield bytes(chunk)


def _stream_size(source: BinaryIO) -> Optional[int]:
    """Remaining bytes in a seekable stream, or None."""
    try:
        if not source.seekable():
            return None
        pos = source.tell()
        end = source.seek(0, 2)
        source.seek(pos)
        return end - pos
    except (AttributeError, OSError):
        return None


def open_image(path: Union[str, Path]) -> BinaryIO:
    """
    Open an image file for reading.

    Raises:
        FileOpenError: If the file cannot be opened.
    """
    try:
        return open(path, "rb")
    except OSError as e:
        raise FileOpenError(str(path), cause=e) from e


class ImageLoader:
    """
    Uploads images through a CommandProtocol.

    Example:
        loader = ImageLoader(protocol, out_endpoint)
        with open("u-boot-spl.bin", "rb") as f:
            loader.load(SRAM_RUN_BASE, f)
    """

    def __init__(
        self,
        protocol: CommandProtocol,
        out_endpoint: Union[Endpoint, int],
        chunk_size: int = CHUNK_SIZE,
        strict: bool = True,
    ):
        if chunk_size <= 0:
            raise ValueError(f"Chunk size must be positive: {chunk_size}")
        self.protocol = protocol
        self.endpoint = (
            out_endpoint.address if isinstance(out_endpoint, Endpoint) else out_endpoint
        )
        self.chunk_size = chunk_size
        self.strict = strict
        self.failures: list[TransferError] = []

    def load(
        self,
        address: int,
        source: BinaryIO,
        progress: Optional[ProgressCallback] = None,
    ) -> int:
        """
        Upload the contents of *source* to *address*.

        Args:
            address: Destination address in device memory.
            source: Binary stream positioned at the start of the image.
            progress: Optional callback (bytes_sent, total).

        Returns:
            Number of bytes sent.

        Raises:
            TransferError: If SET_DATA_ADDRESS or any chunk fails. Nothing
                after the failed transfer is sent. When the loader is not
                strict, failures are logged, recorded in `failures` and the
                upload continues.
        """
        total = _stream_size(source)
        logger.info(
            "Loading %s bytes to 0x%08X",
            total if total is not None else "?", address,
        )

        self._attempt(lambda: self.protocol.set_data_address(address), "SetDataAddress")

        sent = 0
        count = 0
        for chunk in iter_chunks(source, self.chunk_size):
            self._attempt(
                lambda: self.protocol.bulk_out(self.endpoint, chunk),
                f"chunk {count}",
            )
            sent += len(chunk)
            count += 1
            if progress:
                progress(sent, total)

        logger.info("Loaded %d bytes in %d chunk(s)", sent, count)
        return sent

    def _attempt(self, transfer: Callable[[], object], what: str) -> None:
        try:
            transfer()
        except TransferError as e:
            if self.strict:
                raise
            logger.warning("%s failed, continuing: %s", what, e)
            self.failures.append(e)

    def load_bytes(
        self,
        address: int,
        data: bytes,
        progress: Optional[ProgressCallback] = None,
    ) -> int:
        """Upload an in-memory image."""
        return self.load(address, io.BytesIO(data), progress=progress)

    def load_file(
        self,
        address: int,
        path: Union[str, Path],
        progress: Optional[ProgressCallback] = None,
    ) -> int:
        """
        Upload a file.

        Raises:
            FileOpenError: If the file cannot be opened.
        """
        with open_image(path) as source:
            return self.load(address, source, progress=progress)
