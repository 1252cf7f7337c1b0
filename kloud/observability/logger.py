"""Loguru-style logger for kloud, built on stdlib logging and rich.

Records go to the ``kloud`` logger hierarchy under the calling module's
name, so ``logging.getLogger("kloud.kloud")`` sees what :mod:`kloud.kloud`
logs. Bound context travels on the record as attributes and in
``record.extras``.

Usage::

    from kloud.observability.logger import logger

    log = logger.bind(component="kloud", machine_id="m-1")
    log.info("Build started for {machine_id}", machine_id="m-1")
"""

from __future__ import annotations

import gzip
import logging
import logging.handlers
import os
import shutil
import sys
import threading
from collections.abc import Callable
from typing import TextIO

from rich.console import Console
from rich.logging import RichHandler

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

ROOT = "kloud"

FILE_FORMAT = (
    "%(asctime)s.%(msecs)03d | %(levelname)-8s | "
    "%(name)s:%(funcName)s:%(lineno)d%(_ctx)s - %(message)s"
)

_DEFAULT_ROTATION = 50 * 1024 * 1024
_UNITS = {"KB": 1024, "MB": 1024**2, "GB": 1024**3}

type Patcher = Callable[[logging.LogRecord], None]

_root = logging.getLogger(ROOT)


def _render(message: str, args: tuple[object, ...], kwargs: dict[str, object]) -> str:
    try:
        return message.format(*args, **kwargs) if args or kwargs else message
    except (KeyError, IndexError, ValueError):
        # remote status strings can contain braces
        return message


def _rotation_bytes(rotation: str | None) -> int:
    match (rotation or "").upper().split():
        case [size, unit] if unit in _UNITS and size.isdigit():
            return int(size) * _UNITS[unit]
        case _:
            return _DEFAULT_ROTATION


def _gzip_rotator(source: str, dest: str) -> None:
    with open(source, "rb") as src, gzip.open(dest, "wb") as dst:
        shutil.copyfileobj(src, dst)
    os.remove(source)


# =============================================================================
# Sinks
# =============================================================================


class _Sinks:
    """Handlers installed on the ``kloud`` root, addressed by integer id."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._handlers: dict[int, logging.Handler] = {}
        self._next_id = 0
        self.patcher: Patcher | None = None

    def add(self, handler: logging.Handler) -> int:
        handler.addFilter(self._patch)
        with self._lock:
            self._next_id += 1
            self._handlers[self._next_id] = handler
            _root.addHandler(handler)
            return self._next_id

    def remove(self, handler_id: int | None) -> None:
        with self._lock:
            if handler_id is None:
                removed = list(self._handlers.values())
                self._handlers.clear()
            else:
                handler = self._handlers.pop(handler_id, None)
                removed = [handler] if handler else []
        for handler in removed:
            _root.removeHandler(handler)
            handler.close()

    def _patch(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "_ctx"):
            record._ctx = ""  # type: ignore[attr-defined]
        if self.patcher is not None:
            self.patcher(record)
        return True


_sinks = _Sinks()


def _file_handler(
    path: str,
    level: int,
    rotation: str | None,
    retention: int | None,
    compression: str | None,
) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=_rotation_bytes(rotation),
        backupCount=10 if retention is None else retention,
    )
    if compression:
        handler.namer = lambda name: f"{name}.{compression}"
        handler.rotator = _gzip_rotator
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    return handler


def _console_handler(stream: TextIO, level: int) -> logging.Handler:
    handler = RichHandler(
        level=level,
        console=Console(file=stream),
        show_path=True,
        markup=False,
        rich_tracebacks=True,
    )
    handler.setLevel(level)
    return handler


# =============================================================================
# Logger
# =============================================================================


class BoundLogger:
    """A logger carrying keyword context.

    ``bind`` returns a new logger with the merged context; sink management
    (``add``, ``remove``, ``configure``) is global, as in loguru.
    """

    __slots__ = ("_extras",)

    def __init__(self, extras: dict[str, object] | None = None) -> None:
        self._extras = extras or {}

    @property
    def extras(self) -> dict[str, object]:
        return dict(self._extras)

    def bind(self, **kwargs: object) -> BoundLogger:
        return BoundLogger({**self._extras, **kwargs})

    def _emit(
        self,
        level: int,
        message: str,
        args: tuple[object, ...],
        kwargs: dict[str, object],
        exc_info: bool = False,
    ) -> None:
        # 0: _emit, 1: the level method, 2: the caller
        frame = sys._getframe(2)
        target = logging.getLogger(frame.f_globals.get("__name__", ROOT))
        if not target.isEnabledFor(level):
            return
        record = target.makeRecord(
            target.name,
            level,
            frame.f_code.co_filename,
            frame.f_lineno,
            _render(message, args, kwargs),
            (),
            sys.exc_info() if exc_info else None,
            func=frame.f_code.co_name,
        )
        for key, value in self._extras.items():
            setattr(record, key, value)
        record.extras = self._extras  # type: ignore[attr-defined]
        target.handle(record)

    def trace(self, message: str, /, *args: object, **kwargs: object) -> None:
        self._emit(TRACE, message, args, kwargs)

    def debug(self, message: str, /, *args: object, **kwargs: object) -> None:
        self._emit(logging.DEBUG, message, args, kwargs)

    def info(self, message: str, /, *args: object, **kwargs: object) -> None:
        self._emit(logging.INFO, message, args, kwargs)

    def warning(self, message: str, /, *args: object, **kwargs: object) -> None:
        self._emit(logging.WARNING, message, args, kwargs)

    def error(self, message: str, /, *args: object, **kwargs: object) -> None:
        self._emit(logging.ERROR, message, args, kwargs)

    def exception(self, message: str, /, *args: object, **kwargs: object) -> None:
        self._emit(logging.ERROR, message, args, kwargs, exc_info=True)

    # -------------------------------------------------------------------------
    # Sinks
    # -------------------------------------------------------------------------

    def add(
        self,
        sink: str | TextIO,
        *,
        level: str = "DEBUG",
        filter: str | None = None,  # noqa: A002
        rotation: str | None = None,
        retention: int | None = None,
        compression: str | None = None,
    ) -> int:
        """Install a file (path) or console (stream) sink and return its id."""
        numeric = logging.getLevelName(level.upper())
        if not isinstance(numeric, int):
            numeric = logging.DEBUG

        match sink:
            case str() as path:
                handler = _file_handler(path, numeric, rotation, retention, compression)
            case stream:
                handler = _console_handler(stream, numeric)

        if filter:
            handler.addFilter(logging.Filter(filter))
        return _sinks.add(handler)

    def remove(self, handler_id: int | None = None) -> None:
        """Remove one sink, or every sink when ``handler_id`` is None."""
        _sinks.remove(handler_id)

    def enable(self, name: str) -> None:
        target = logging.getLogger(name)
        target.disabled = False
        target.setLevel(TRACE)

    def disable(self, name: str) -> None:
        logging.getLogger(name).disabled = True

    def configure(self, *, patcher: Patcher | None = None) -> None:
        _sinks.patcher = patcher


logger = BoundLogger()

_root.setLevel(TRACE)
_root.propagate = False
_root.addHandler(logging.NullHandler())
