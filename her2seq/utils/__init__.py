"""
Utilities module for her2seq.

- Logging configuration (plain stdout for library use, rich for the CLI)
"""

from .logger import get_logger, setup_logging

__all__ = [
    "get_logger",
    "setup_logging",
]
