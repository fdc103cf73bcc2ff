"""Logging setup for skiff commands."""

from __future__ import annotations

import logging
import sys

ROOT_LOGGER = "skiff"
LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def get_logger(name: str) -> logging.Logger:
    """Return a module logger nested under the skiff root logger."""
    if name == ROOT_LOGGER or name.startswith(f"{ROOT_LOGGER}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER}.{name}")


def setup_logging(verbose: bool = False, quiet: bool = False) -> None:
    """Configure the skiff root logger.

    Args:
        verbose: Emit DEBUG records
        quiet: Only emit errors
    """
    if quiet:
        level = logging.ERROR
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.WARNING

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(level)

    if not any(getattr(h, "_skiff", False) for h in logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._skiff = True  # type: ignore[attr-defined]
        logger.addHandler(handler)

    logger.propagate = False
