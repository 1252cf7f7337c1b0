"""A compute cloud that lives in process memory.

Servers move through Nova-style statuses one step per read, so waiting on
them exercises the same polling paths a real cloud does, just without the
network. Failures can be scripted per method with :meth:`MemoryCloud.fail`.
"""

from __future__ import annotations

import asyncio
import itertools
from collections import Counter, deque
from dataclasses import dataclass, field, replace
from typing import Final

from kloud.exceptions import RemoteAPIError, RemoteNotFoundError
from kloud.providers.types import Flavor, Image, KeyPair, Server

_GONE: Final = object()

type _Step = tuple[str, str] | object


@dataclass(slots=True)
class _ServerRecord:
    server: Server
    pending: deque[_Step] = field(default_factory=deque)


class MemoryCloud:
    """In-memory implementation of :class:`kloud.providers.types.ComputeAPI`.

    Args:
        steps: Reads a transition takes to complete (create, reboot,
            snapshot, delete).
        latency: Seconds every call sleeps, to interleave concurrent tasks.
    """

    def __init__(
        self,
        *,
        steps: int = 2,
        latency: float = 0.0,
        images: tuple[Image, ...] = (),
        flavors: tuple[Flavor, ...] = (),
    ) -> None:
        self.steps = max(1, steps)
        self.latency = latency
        self.calls: Counter[str] = Counter()
        self.servers: dict[str, _ServerRecord] = {}
        self.images_by_id: dict[str, Image] = {image.id: image for image in images}
        self.flavor_list: list[Flavor] = list(flavors)
        self.keys: dict[str, KeyPair] = {}
        self._failures: dict[str, deque[Exception]] = {}
        self._ids = itertools.count(1)

    # =========================================================================
    # Scripting
    # =========================================================================

    def fail(self, method: str, error: Exception, *, times: int = 1) -> None:
        """Make the next ``times`` calls to ``method`` raise ``error``."""
        self._failures.setdefault(method, deque()).extend([error] * times)

    def set_status(self, server_id: str, status: str, task_state: str = "", *, hold: bool = False) -> None:
        """Force a server status; ``hold`` drops pending transitions."""
        record = self.servers[server_id]
        record.server = replace(record.server, status=status, task_state=task_state)
        if hold:
            record.pending.clear()

    def add_server(self, name: str, status: str = "ACTIVE") -> Server:
        server = Server(id=self._next_id("srv"), name=name, status=status, ip_address=self._next_ip())
        self.servers[server.id] = _ServerRecord(server)
        return server

    def add_image(self, name: str) -> Image:
        image = Image(id=self._next_id("img"), name=name)
        self.images_by_id[image.id] = image
        return image

    # =========================================================================
    # Internals
    # =========================================================================

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    def _next_ip(self) -> str:
        n = next(self._ids)
        return f"10.0.{n // 256}.{n % 256}"

    async def _enter(self, method: str) -> None:
        self.calls[method] += 1
        if self.latency:
            await asyncio.sleep(self.latency)
        else:
            await asyncio.sleep(0)
        if queue := self._failures.get(method):
            raise queue.popleft()

    def _record(self, server_id: str) -> _ServerRecord:
        record = self.servers.get(server_id)
        if record is None:
            raise RemoteNotFoundError("server", server_id)
        return record

    def _transition(self, record: _ServerRecord, during: tuple[str, str], final: _Step) -> None:
        record.server = replace(record.server, status=during[0], task_state=during[1])
        record.pending = deque([during] * (self.steps - 1) + [final])

    # =========================================================================
    # ComputeAPI
    # =========================================================================

    async def image(self, ref: str) -> Image:
        await self._enter("image")
        if ref in self.images_by_id:
            return self.images_by_id[ref]
        for image in self.images_by_id.values():
            if image.name == ref:
                return image
        raise RemoteNotFoundError("image", ref)

    async def images(self) -> list[Image]:
        await self._enter("images")
        return list(self.images_by_id.values())

    async def flavors(self) -> list[Flavor]:
        await self._enter("flavors")
        return list(self.flavor_list)

    async def show_key(self, name: str) -> KeyPair | None:
        await self._enter("show_key")
        return self.keys.get(name)

    async def create_key(self, name: str, public_key: str) -> KeyPair:
        await self._enter("create_key")
        if name in self.keys:
            raise RemoteAPIError(f"Key pair '{name}' already exists")
        key = self.keys[name] = KeyPair(name=name, public_key=public_key)
        return key

    async def delete_key(self, name: str) -> None:
        await self._enter("delete_key")
        if self.keys.pop(name, None) is None:
            raise RemoteNotFoundError("key pair", name)

    async def create_server(self, name: str, image_id: str, flavor_id: str, key_name: str) -> Server:
        await self._enter("create_server")
        if image_id not in self.images_by_id:
            raise RemoteAPIError(f"Invalid imageRef '{image_id}'")
        if key_name not in self.keys:
            raise RemoteAPIError(f"Invalid key_name '{key_name}'")
        record = _ServerRecord(
            Server(id=self._next_id("srv"), name=name, status="BUILD", ip_address=self._next_ip())
        )
        self._transition(record, ("BUILD", "spawning"), ("ACTIVE", ""))
        self.servers[record.server.id] = record
        return record.server

    async def server(self, server_id: str) -> Server:
        await self._enter("server")
        record = self._record(server_id)
        if record.pending:
            step = record.pending.popleft()
            if step is _GONE:
                del self.servers[server_id]
                raise RemoteNotFoundError("server", server_id)
            status, task_state = step  # type: ignore[misc]
            record.server = replace(record.server, status=status, task_state=task_state)
        return record.server

    async def delete_server(self, server_id: str) -> None:
        await self._enter("delete_server")
        record = self._record(server_id)
        self._transition(record, (record.server.status, "deleting"), _GONE)

    async def reboot_server(self, server_id: str, *, hard: bool = False) -> None:
        await self._enter("reboot_server")
        record = self._record(server_id)
        status = "HARD_REBOOT" if hard else "REBOOT"
        self._transition(record, (status, "rebooting"), ("ACTIVE", ""))

    async def create_image(self, server_id: str, name: str) -> str:
        await self._enter("create_image")
        record = self._record(server_id)
        image = self.add_image(name)
        status = record.server.status
        self._transition(record, (status, "image_uploading"), (status, ""))
        return image.id

    async def delete_image(self, image_id: str) -> None:
        await self._enter("delete_image")
        if self.images_by_id.pop(image_id, None) is None:
            raise RemoteNotFoundError("image", image_id)

    async def close(self) -> None:
        self.calls["close"] += 1


__all__ = ["MemoryCloud"]
