"""Logging configuration for kloud.

The library logs to the ``kloud`` logger hierarchy and installs no handlers
until :func:`setup_logging` is called, usually once at process start.

Example:
    from kloud.observability import LogConfig, setup_logging

    handler_ids = setup_logging(LogConfig(level="DEBUG", console=True))
    ...
    teardown_logging(handler_ids)
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from kloud.observability.logger import logger

type LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "TRACE"]

_CONTEXT_KEYS = (
    "component", "provider", "operation", "machine_id", "instance_id", "eventer",
)


def _format_context(record: logging.LogRecord) -> str:
    extra: dict[str, object] = getattr(record, "extras", {})
    parts = [f"{k}={extra[k]}" for k in _CONTEXT_KEYS if k in extra]
    return f" [{' '.join(parts)}]" if parts else ""


def _patch(record: logging.LogRecord) -> None:
    record._ctx = _format_context(record)  # type: ignore[attr-defined]


@dataclass(frozen=True, slots=True)
class LogConfig:
    """Logging configuration.

    Attributes:
        level: Minimum log level (TRACE, DEBUG, INFO, WARNING, ERROR).
        file: Path to log file. Empty string disables file output.
        console: Whether to log to stderr through rich.
        rotation: File rotation size (e.g., "50 MB").
        retention: Number of rotated files to keep.
        compression: Gzip rotated files when set to "gz".
    """

    level: LogLevel = "INFO"
    file: str = ".kloud/kloud.log"
    console: bool = False
    rotation: str = "50 MB"
    retention: int = 10
    compression: str | None = None


def setup_logging(config: LogConfig) -> list[int]:
    """Install handlers for ``config`` and return their ids for later removal."""
    logger.remove()
    logger.enable("kloud")
    logger.configure(patcher=_patch)

    handler_ids: list[int] = []

    if config.console:
        handler_ids.append(logger.add(sys.stderr, level=config.level, filter="kloud"))

    if config.file:
        Path(config.file).parent.mkdir(parents=True, exist_ok=True)
        handler_ids.append(
            logger.add(
                config.file,
                level=config.level,
                rotation=config.rotation,
                retention=config.retention,
                compression=config.compression,
            )
        )

    return handler_ids


def teardown_logging(handler_ids: list[int]) -> None:
    """Remove handlers previously installed by :func:`setup_logging`."""
    for hid in handler_ids:
        logger.remove(hid)
    logger.configure(patcher=None)
