"""Logging for Flotilla.

Library modules log through loguru with a bound ``component``
(``membership``, ``lifecycle``, ``swarm`` ...). Nothing is emitted until a
caller opts in: the CLI does it from ``-v`` and ``--log-file``, embedding
code calls ``setup_logging`` itself.

Example:
    from flotilla.logging import LogConfig, setup_logging, teardown_logging

    handler_ids = setup_logging(LogConfig(level="DEBUG", file="flotilla.log"))
    ...
    teardown_logging(handler_ids)
"""

from __future__ import annotations

import sys
from dataclasses import dataclass
from typing import Literal

from loguru import logger

# Silent unless enabled
logger.disable("flotilla")

type LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> "
    "<level>{level: <7}</level> "
    "<cyan>{extra[component]: <12}</cyan> "
    "<level>{message}</level>"
)

FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[component]} | "
    "{name}:{function}:{line} - {message}"
)

_VERBOSITY: tuple[LogLevel, ...] = ("WARNING", "INFO", "DEBUG")


@dataclass(frozen=True, slots=True)
class LogConfig:
    """Where and how much to log.

    Attributes:
        level: Console threshold. The file sink always records DEBUG.
        file: Optional log file, rotated at ``rotation`` and pruned to
            ``retention`` old files.
        console: Whether to log to stderr.
    """

    level: LogLevel = "WARNING"
    file: str | None = None
    console: bool = True
    rotation: str = "50 MB"
    retention: int = 10

    @classmethod
    def from_verbosity(cls, verbose: int, file: str | None = None) -> LogConfig:
        """Map a repeated ``-v`` count onto a console level."""
        return cls(level=_VERBOSITY[min(verbose, len(_VERBOSITY) - 1)], file=file)


def setup_logging(config: LogConfig) -> list[int]:
    """Enable flotilla logging; returns the handler ids for ``teardown_logging``."""
    logger.configure(extra={"component": "flotilla"})
    logger.enable("flotilla")
    sinks: list[int] = []

    if config.console:
        sinks.append(logger.add(
            sys.stderr,
            level=config.level,
            format=CONSOLE_FORMAT,
            colorize=True,
            filter="flotilla",
        ))

    if config.file:
        sinks.append(logger.add(
            config.file,
            level="DEBUG",
            format=FILE_FORMAT,
            rotation=config.rotation,
            retention=config.retention,
            compression="zip",
            diagnose=False,  # join tokens must not end up in tracebacks
            enqueue=True,
            filter="flotilla",
        ))

    return sinks


def teardown_logging(handler_ids: list[int]) -> None:
    for hid in handler_ids:
        logger.remove(hid)
    logger.disable("flotilla")
