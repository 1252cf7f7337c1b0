"""Logging for kloud."""

from .logger import logger
from .logging import LogConfig, LogLevel, setup_logging, teardown_logging

__all__ = [
    "logger",
    "LogConfig",
    "LogLevel",
    "setup_logging",
    "teardown_logging",
]
