"""Remote compute API capability shape.

:class:`ComputeAPI` is everything the generic compute provider needs from a
cloud: images, flavors, key pairs and servers. Concrete clients (the
OpenStack HTTP client, the in-memory cloud) translate their wire formats
into the small records below.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol, runtime_checkable


@dataclass(frozen=True, slots=True)
class Server:
    id: str
    name: str
    status: str
    task_state: str = ""
    ip_address: str = ""


@dataclass(frozen=True, slots=True)
class Image:
    id: str
    name: str
    status: str = "ACTIVE"


@dataclass(frozen=True, slots=True)
class Flavor:
    id: str
    name: str
    ram_mb: int = 0
    vcpus: int = 0
    disk_gb: int = 0


@dataclass(frozen=True, slots=True)
class KeyPair:
    name: str
    public_key: str
    fingerprint: str = ""


def find_by_name[T: (Image, Flavor)](items: Sequence[T], name: str) -> T | None:
    return next((item for item in items if item.name == name), None)


def has_id(items: Sequence[Flavor] | Sequence[Image], id: str) -> bool:  # noqa: A002
    return any(item.id == id for item in items)


@runtime_checkable
class ComputeAPI(Protocol):
    """Credential-scoped client for one compute cloud.

    ``server`` and ``image`` raise :class:`kloud.exceptions.RemoteNotFoundError`
    when the resource does not exist; every other failure is a
    :class:`kloud.exceptions.RemoteAPIError`.
    """

    async def image(self, ref: str) -> Image: ...

    async def images(self) -> Sequence[Image]: ...

    async def flavors(self) -> Sequence[Flavor]: ...

    async def show_key(self, name: str) -> KeyPair | None: ...

    async def create_key(self, name: str, public_key: str) -> KeyPair: ...

    async def delete_key(self, name: str) -> None: ...

    async def create_server(
        self, name: str, image_id: str, flavor_id: str, key_name: str,
    ) -> Server: ...

    async def server(self, server_id: str) -> Server: ...

    async def delete_server(self, server_id: str) -> None: ...

    async def reboot_server(self, server_id: str, *, hard: bool = False) -> None: ...

    async def create_image(self, server_id: str, name: str) -> str: ...

    async def delete_image(self, image_id: str) -> None: ...

    async def close(self) -> None: ...


__all__ = [
    "ComputeAPI",
    "Flavor",
    "Image",
    "KeyPair",
    "Server",
    "find_by_name",
    "has_id",
]
