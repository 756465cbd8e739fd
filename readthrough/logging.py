"""
Console logging setup for the command line.
"""

import logging
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler


def setup_logging(level: str = "INFO", console: Optional[Console] = None) -> logging.Logger:
    """
    Route the package's log records to a rich console handler.

    Args:
        level: Logging level name
        console: Console to write to, stderr by default

    Returns:
        logging.Logger: The package logger
    """
    logger = logging.getLogger("readthrough")
    logger.setLevel(level.upper())

    for handler in list(logger.handlers):
        if isinstance(handler, RichHandler):
            logger.removeHandler(handler)

    handler = RichHandler(
        console=console or Console(stderr=True),
        show_time=True,
        show_level=True,
        show_path=False,
        markup=False,
        rich_tracebacks=True,
        log_time_format="[%H:%M:%S]",
    )
    handler.setLevel(level.upper())
    logger.addHandler(handler)
    logger.propagate = False
    return logger
