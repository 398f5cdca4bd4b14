"""
Kendryte Loader - Configuration
===============================

Loader configuration: USB identification, transfer deadlines and the
fire-and-forget failure policy. Configuration can come from:
- Default values (defined here)
- Environment variables (identification and policy only)

Timing values are protocol constants. They can be changed by library
callers (tests use much shorter deadlines) but are deliberately not exposed
as command-line options or environment variables.
"""

import os
from dataclasses import dataclass, replace
from typing import Final, Optional


# =============================================================================
# Constants
# =============================================================================

# Kendryte mask ROM USB identification
KENDRYTE_VID: Final[int] = 0x29F1
K230D_PID: Final[int] = 0x0230

# Per-transfer deadline for control and bulk transfers (seconds)
TRANSFER_TIMEOUT: Final[float] = 5.0

# Interface claim retry window (seconds)
CLAIM_INTERFACE_TIMEOUT: Final[float] = 1.0
CLAIM_INTERFACE_PERIOD: Final[float] = 200e-6

# Bulk-out chunk size in bytes
CHUNK_SIZE: Final[int] = 512

# GetCpuInfo response buffer size in bytes
CPU_INFO_LENGTH: Final[int] = 0x20

_TRUE_VALUES: Final[frozenset] = frozenset({"1", "true", "yes", "on"})
_FALSE_VALUES: Final[frozenset] = frozenset({"0", "false", "no", "off"})


@dataclass(frozen=True)
class LoaderConfig:
    """
    Configuration for one loader session.

    Attributes:
        vendor_id: USB vendor ID to match (default: 0x29F1)
        product_id: USB product ID to match (default: 0x0230)
        interface_number: Interface to claim (None: first interface)
        transfer_timeout: Deadline for each control/bulk transfer (5 s)
        claim_timeout: Total window for claiming the interface (1 s)
        claim_period: Sleep between claim attempts (200 us)
        chunk_size: Bulk-out chunk size in bytes (512)
        cpu_info_length: GetCpuInfo response buffer size (32)
        strict: Escalate failed SetDataAddress/ProgStart/chunk transfers
                to fatal errors. When False they are logged and skipped.
    """

    vendor_id: int = KENDRYTE_VID
    product_id: int = K230D_PID
    interface_number: Optional[int] = None

    transfer_timeout: float = TRANSFER_TIMEOUT
    claim_timeout: float = CLAIM_INTERFACE_TIMEOUT
    claim_period: float = CLAIM_INTERFACE_PERIOD

    chunk_size: int = CHUNK_SIZE
    cpu_info_length: int = CPU_INFO_LENGTH

    strict: bool = True

    def __post_init__(self) -> None:
        if not 0 <= self.vendor_id <= 0xFFFF:
            raise ValueError(f"Invalid vendor ID: {self.vendor_id:#x}")
        if not 0 <= self.product_id <= 0xFFFF:
            raise ValueError(f"Invalid product ID: {self.product_id:#x}")
        if self.chunk_size <= 0:
            raise ValueError(f"Chunk size must be positive: {self.chunk_size}")
        if not 0 < self.cpu_info_length <= 0xFFFF:
            raise ValueError(f"Invalid CPU info length: {self.cpu_info_length}")
        if self.transfer_timeout <= 0 or self.claim_timeout <= 0:
            raise ValueError("Timeouts must be positive")

    def with_overrides(self, **changes) -> "LoaderConfig":
        """Return a copy with the given fields replaced."""
        return replace(self, **changes)

    @classmethod
    def from_env(cls) -> "LoaderConfig":
        """
        Create a LoaderConfig from environment variables.

        Environment variables (all optional):
            KDLOAD_VID: USB vendor ID (decimal or 0x-prefixed hex)
            KDLOAD_PID: USB product ID (decimal or 0x-prefixed hex)
            KDLOAD_STRICT: "0"/"false" to continue past failed transfers
        """
        kwargs = {}

        if "KDLOAD_VID" in os.environ:
            kwargs["vendor_id"] = int(os.environ["KDLOAD_VID"], 0)
        if "KDLOAD_PID" in os.environ:
            kwargs["product_id"] = int(os.environ["KDLOAD_PID"], 0)

        strict = os.environ.get("KDLOAD_STRICT")
        if strict is not None:
            value = strict.strip().lower()
            if value in _TRUE_VALUES:
                kwargs["strict"] = True
            elif value in _FALSE_VALUES:
                kwargs["strict"] = False
            else:
                raise ValueError(f"Invalid KDLOAD_STRICT value: {strict!r}")

        return cls(**kwargs)
