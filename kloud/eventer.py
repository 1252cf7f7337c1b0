"""Per-operation progress events.

Providers push :class:`Event` records while an operation runs; callers read
them back with :meth:`Eventer.events`, :meth:`Eventer.latest` or by iterating
:meth:`Eventer.stream`. An eventer belongs to exactly one operation and is
sealed with :meth:`Eventer.close` when that operation returns.
"""

from __future__ import annotations

import asyncio
import threading
import uuid
from collections import deque
from collections.abc import AsyncIterator
from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field

from kloud.constants import DEFAULT_MAX_EVENTS
from kloud.machinestate import MachineState
from kloud.observability.logger import logger


class EventError(BaseModel):
    """Failure attached to a terminal event."""

    model_config = ConfigDict(frozen=True)

    message: str = Field(description="Human readable error message")
    kind: str = Field(default="KloudError", description="Exception class name")

    @classmethod
    def from_exception(cls, exc: BaseException) -> EventError:
        return cls(message=str(exc), kind=type(exc).__name__)


class Event(BaseModel):
    """A single progress record of an operation."""

    model_config = ConfigDict(frozen=True)

    message: str = Field(default="", description="What is happening right now")
    percentage: int = Field(default=0, ge=0, le=100, description="Overall progress")
    status: MachineState = Field(default=MachineState.UNKNOWN, description="Machine state")
    error: EventError | None = Field(default=None, description="Set on failed terminal events")
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def failed(self) -> bool:
        return self.error is not None


class Eventer:
    """Append-only, bounded event channel for one operation.

    The buffer keeps the newest ``max_events`` records; older ones are
    dropped rather than blocking the pushing operation.
    """

    def __init__(self, id: str | None = None, *, max_events: int = DEFAULT_MAX_EVENTS) -> None:  # noqa: A002
        self.id = id or uuid.uuid4().hex
        self._events: deque[Event] = deque(maxlen=max_events)
        self._pushed = 0
        self._closed = False
        self._lock = threading.Lock()
        self._waiters: set[tuple[asyncio.AbstractEventLoop, asyncio.Event]] = set()
        self._log = logger.bind(component="eventer", eventer=self.id)

    def __repr__(self) -> str:
        return f"Eventer(id={self.id!r}, pushed={self._pushed}, closed={self._closed})"

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def push(self, event: Event) -> None:
        with self._lock:
            if self._closed:
                self._log.debug("Dropping event pushed after close: {msg}", msg=event.message)
                return
            self._events.append(event)
            self._pushed += 1
            waiters = list(self._waiters)
        self._wake(waiters)

    def events(self) -> list[Event]:
        """Everything retained so far, in push order."""
        with self._lock:
            return list(self._events)

    def latest(self) -> Event | None:
        with self._lock:
            return self._events[-1] if self._events else None

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            waiters = list(self._waiters)
        self._wake(waiters)

    async def stream(self) -> AsyncIterator[Event]:
        """Yield retained and future events until the eventer is closed."""
        loop = asyncio.get_running_loop()
        waiter = (loop, asyncio.Event())
        cursor = 0
        with self._lock:
            self._waiters.add(waiter)
        try:
            while True:
                waiter[1].clear()
                batch, cursor, closed = self._since(cursor)
                for event in batch:
                    yield event
                if closed:
                    return
                await waiter[1].wait()
        finally:
            with self._lock:
                self._waiters.discard(waiter)

    def _since(self, cursor: int) -> tuple[list[Event], int, bool]:
        with self._lock:
            first = self._pushed - len(self._events)
            start = max(cursor, first)
            batch = list(self._events)[start - first:]
            return batch, self._pushed, self._closed

    @staticmethod
    def _wake(waiters: list[tuple[asyncio.AbstractEventLoop, asyncio.Event]]) -> None:
        for loop, flag in waiters:
            if not loop.is_closed():
                loop.call_soon_threadsafe(flag.set)


__all__ = ["Event", "EventError", "Eventer"]
