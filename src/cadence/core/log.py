"""Loguru sink configuration shared by the CLI, the worker and the in-process runner."""

import sys

from loguru import logger


def configure_logging(level: str = "INFO", json: bool = False) -> None:
    """Replace loguru's default sink with a single stderr sink.

    Args:
        level: Minimum level to emit
        json: Serialize records as JSON lines (for worker log shipping)
    """
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        serialize=json,
        backtrace=False,
        diagnose=False,
        enqueue=False,
    )
    logger.debug(f"Logging configured (level={level.upper()}, json={json})")
