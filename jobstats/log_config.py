"""Logging setup shared by the CLI and the collection loop."""

import logging

from rich.logging import RichHandler

PACKAGE_LOGGER = "jobstats"


def configure_logging(level: str | int = "INFO") -> logging.Logger:
    """Attach a rich console handler to the package logger.

    Safe to call more than once; the handler is only installed on first use.
    """
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level)
    if not any(isinstance(h, RichHandler) for h in logger.handlers):
        handler = RichHandler(rich_tracebacks=True, show_path=False)
        handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
        logger.addHandler(handler)
    logger.propagate = False
    return logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
