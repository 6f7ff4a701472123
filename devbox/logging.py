"""Logging configuration for devbox.

Structured logging via loguru. Logging is disabled by default (library
behavior) and enabled by the entry points (``devbox``, ``devbox-connect``,
``devbox-idle-monitor``) through :func:`setup_logging`.

Example:
    from devbox.logging import LogConfig, setup_logging

    setup_logging(LogConfig(level="DEBUG", file="/var/log/devbox-idle-shutdown.log"))
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Literal

from loguru import logger

logger.disable("devbox")

type LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<level>{message}</level>"
)

FILE_FORMAT = "[{time:YYYY-MM-DD HH:mm:ss}] {level: <8} | {name}:{function}:{line} - {message}"


@dataclass(frozen=True, slots=True)
class LogConfig:
    """Logging configuration.

    Attributes:
        level: Minimum console log level.
        file: Path to an append-only log file. Never rotated or truncated.
        console: Whether to log to stderr. stdout is never used because the
            connect bridge carries the SSH byte stream on it.
    """

    level: LogLevel = "INFO"
    file: str | None = None
    console: bool = True


def setup_logging(config: LogConfig) -> list[int]:
    """Enable devbox logging and return handler IDs for cleanup."""
    logger.enable("devbox")
    logger.remove()
    handler_ids: list[int] = []

    if config.console:
        handler_ids.append(logger.add(
            sys.stderr,
            level=config.level,
            format=CONSOLE_FORMAT,
            colorize=True,
            filter="devbox",
        ))

    if config.file:
        handler_ids.append(logger.add(
            config.file,
            level="DEBUG",
            format=FILE_FORMAT,
            mode="a",
            diagnose=False,
            filter="devbox",
        ))

    return handler_ids


def teardown_logging(handler_ids: list[int]) -> None:
    for hid in handler_ids:
        logger.remove(hid)
    logger.disable("devbox")
