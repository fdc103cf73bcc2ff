"""Small logging helpers shared by retrying operations."""

from __future__ import annotations

import logging


def log_retry(
    logger: logging.Logger,
    operation: str,
    *,
    attempt: int,
    max_attempts: int,
    delay: float,
    error: BaseException,
) -> None:
    """Log a retryable failure before the next attempt."""
    logger.warning(
        f"{operation} failed (attempt {attempt}/{max_attempts}), "
        f"retrying in {delay:.1f}s: {error}"
    )
