"""
Logging setup for the CLI.

Library modules log through the standard logging module; the CLI routes
those records into a loguru stderr sink.
"""

from __future__ import annotations

import logging
import sys

from loguru import logger


class InterceptHandler(logging.Handler):
    """Intercept standard logging messages toward Loguru sinks."""
    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(verbose: bool = False) -> None:
    """Send prp logs to stderr; DEBUG when verbose, WARNING otherwise."""
    level = "DEBUG" if verbose else "WARNING"

    logger.remove()
    if verbose:
        logger.add(sys.stderr, level=level, format="<level>{message}</level>")
    else:
        logger.add(sys.stderr, level=level, format="<level>{level}</level>: {message}")

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    # Keep transport chatter out of verbose output
    for name in ("urllib3", "requests"):
        logging.getLogger(name).setLevel(logging.WARNING)
