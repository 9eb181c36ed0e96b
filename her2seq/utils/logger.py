"""
Logging configuration for her2seq.

Module loggers share one format. When the CLI has installed a RichHandler on
the root logger, module loggers propagate to it instead of printing on their
own.
"""

import logging
import sys

from rich.console import Console
from rich.logging import RichHandler

LOG_FORMAT = "[%(asctime)s] %(levelname)s - [%(name)s] - %(message)s"


def _root_has_rich_handler() -> bool:
    return any(
        isinstance(handler, RichHandler) for handler in logging.getLogger().handlers
    )


def setup_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """
    Configure a logger with consistent formatting.

    Handles two scenarios:
    1. CLI usage: setup_logging() put a RichHandler on the root logger.
       Logs propagate to root (single output).
    2. Direct usage (library, tests): we add our own StreamHandler and
       disable propagation to prevent duplicate output.

    Args:
        name: Name of the logger
        level: Logging level (default: INFO)

    Returns:
        logging.Logger: Configured logger instance
    """
    logger = logging.getLogger(name)

    if not logger.handlers:
        logger.setLevel(level)

        if not _root_has_rich_handler():
            handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(logging.Formatter(LOG_FORMAT))
            logger.addHandler(handler)
            logger.propagate = False

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger with the given name.

    Args:
        name: Name of the logger

    Returns:
        logging.Logger: Logger instance
    """
    return setup_logger(name)


def setup_logging(level: int = logging.WARNING, console: Console = None) -> None:
    """
    Route all her2seq logging through a RichHandler on the root logger.

    Loggers created before this call had their own stdout handler; those are
    removed so every record is printed once, by rich.

    Args:
        level: Root logging level
        console: Optional rich Console to write to (stderr by default)
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    if not _root_has_rich_handler():
        handler = RichHandler(
            console=console or Console(stderr=True),
            show_path=False,
            rich_tracebacks=True,
        )
        root_logger.addHandler(handler)

    for handler in root_logger.handlers:
        handler.setLevel(level)

    for name, logger in logging.Logger.manager.loggerDict.items():
        if not name.startswith("her2seq") or not isinstance(logger, logging.Logger):
            continue
        for handler in list(logger.handlers):
            if isinstance(handler, logging.StreamHandler):
                logger.removeHandler(handler)
        logger.propagate = True
        logger.setLevel(level)
