#!/usr/bin/env python3
"""
Kendryte Loader Library Demo
============================

This script shows how to drive the loader from Python instead of kdload:
1. Find the board and claim its interface
2. Read the CPU identification
3. Upload an image to SRAM and start it

Usage:
    python examples/load_and_run.py u-boot-spl.bin
"""

import logging
import sys

from kendryte_loader import KendryteError, LoaderConfig, MemoryTarget, Request, Session


def main():
    if len(sys.argv) != 2:
        print(f"usage: {sys.argv[0]} IMAGE")
        return 2

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    # ==========================================================================
    # 1. Open a session
    # ==========================================================================
    # Session.open() finds 29f1:0230 and claims its first interface,
    # retrying for up to a second while the OS lets go of it.
    config = LoaderConfig(strict=True)

    try:
        with Session.open(config) as session:
            info = session.device_info
            print(f"Found {info.manufacturer} {info.product} ({info.speed_name})")

            # ==================================================================
            # 2-3. Identify, upload and start
            # ==================================================================
            # GET_CPU_INFO is always sent before the upload
            def progress(sent, total):
                print(f"\r{sent}/{total or '?'} bytes", end="")

            result = session.run(
                Request.run(sys.argv[1], target=MemoryTarget.SRAM),
                progress=progress,
            )
            print()
            print(f"Device says: {result.cpu_info}")
            print(f"Started {result.bytes_loaded} bytes, session {result.state.value}")
    except KendryteError as e:
        print(f"Error: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
