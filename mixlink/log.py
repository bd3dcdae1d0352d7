"""Logging setup shared by the mixlink tools."""

from __future__ import annotations

import os

import structlog


def configure_logging(level: str | None = None) -> None:
    """Configure structlog for console output.

    Args:
        level: Level name; defaults to MIXLINK_LOG_LEVEL, then "info".
    """
    level_name = (level or os.environ.get("MIXLINK_LOG_LEVEL", "info")).lower()
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            structlog.stdlib.NAME_TO_LEVEL.get(level_name, 20)
        ),
    )
