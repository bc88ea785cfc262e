"""Configure loguru for the command-line entrypoint."""

from __future__ import annotations

import sys

from loguru import logger

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
    "{message}"
)


def configure_logging(level: str = "INFO", *, json_mode: bool = False) -> None:
    """Send log records to stderr at ``level``.

    In JSON mode stdout carries exactly one document, so anything below
    WARNING is dropped unless DEBUG was asked for explicitly.
    """
    level = level.upper()
    if json_mode and level not in {"DEBUG", "TRACE"}:
        level = "WARNING"
    logger.remove()
    logger.add(sys.stderr, level=level, format=LOG_FORMAT)
