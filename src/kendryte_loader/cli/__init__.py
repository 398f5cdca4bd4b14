"""
Kendryte Loader Command-Line Interface
======================================

This package provides the command-line tool for the loader:

- **kdload**: USB mask ROM loader (cpu-info, rom, load, run)

The tool is a Click-based CLI application with help text and consistent
error reporting (see `errors`).
"""

__all__ = ["kdload"]
