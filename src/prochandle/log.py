"""Logging setup for prochandle.

Library code logs through loguru but stays silent until an application
calls :func:`setup_logger`.
"""

import sys
from pathlib import Path
from typing import TextIO

from loguru import logger

logger.disable("prochandle")


def setup_logger(level: str = "INFO", sink: TextIO | Path | str | None = None) -> None:
    """
    Route prochandle logs to a sink and enable them.

    Args:
        level: Minimum level to emit.
        sink: File path or stream. Defaults to stderr.
    """
    logger.remove()
    logger_format = (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "
        "<level>{message}</level>"
    )
    if level.upper() == "DEBUG":
        logger_format += " | {extra}"

    logger.add(
        sink if sink is not None else sys.stderr,
        level=level.upper(),
        format=logger_format,
    )
    logger.enable("prochandle")


__all__ = ["logger", "setup_logger"]
