"""One lock per resource id.

Operations on different ids never wait on each other; operations on the
same id run one at a time. Entries are reference counted and removed as
soon as nobody holds or waits on them, so the table does not grow with the
number of ids ever seen.

Example:
    locks = IdLock()

    async with locks.lock(machine_id):
        await provider.stop(options)
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

from kloud.exceptions import LockingInvariantViolation
from kloud.observability.logger import logger

log = logger.bind(component="idlock")


@dataclass(slots=True)
class _Entry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    refs: int = 0


class LockHandle:
    """Proof of holding the lock for ``id``; release it exactly once."""

    __slots__ = ("_entry", "_owner", "_released", "id")

    def __init__(self, owner: IdLock, id: str, entry: _Entry) -> None:  # noqa: A002
        self._owner = owner
        self._entry = entry
        self._released = False
        self.id = id

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._owner._release(self.id, self._entry, held=True)


class IdLock:
    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[str, _Entry] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)

    def __contains__(self, id: object) -> bool:  # noqa: A002
        with self._guard:
            return id in self._entries

    def refs(self, id: str) -> int:  # noqa: A002
        with self._guard:
            entry = self._entries.get(id)
            return entry.refs if entry else 0

    async def acquire(self, id: str) -> LockHandle:  # noqa: A002
        with self._guard:
            entry = self._entries.get(id)
            if entry is None:
                entry = self._entries[id] = _Entry()
            entry.refs += 1

        try:
            await entry.lock.acquire()
        except BaseException:
            self._release(id, entry, held=False)
            raise

        log.trace("Acquired lock for {id}", id=id)
        return LockHandle(self, id, entry)

    @asynccontextmanager
    async def lock(self, id: str) -> AsyncIterator[LockHandle]:  # noqa: A002
        handle = await self.acquire(id)
        try:
            yield handle
        finally:
            handle.release()

    def _release(self, id: str, entry: _Entry, *, held: bool) -> None:  # noqa: A002
        with self._guard:
            if self._entries.get(id) is not entry:
                raise LockingInvariantViolation(f"lock entry for '{id}' vanished while referenced")
            if entry.refs <= 0:
                raise LockingInvariantViolation(f"lock entry for '{id}' has no references left")
            if held:
                entry.lock.release()
            entry.refs -= 1
            if entry.refs == 0:
                del self._entries[id]
        if held:
            log.trace("Released lock for {id}", id=id)


__all__ = ["IdLock", "LockHandle"]
