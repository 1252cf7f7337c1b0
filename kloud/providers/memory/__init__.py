"""In-memory provider for local development and tests.

Example:
    from kloud.providers.memory import Memory, create_provider

    provider, cloud = create_provider("memory", Memory(steps=3))
"""

from __future__ import annotations

from dataclasses import dataclass

from kloud.constants import DEFAULT_KEY_NAME
from kloud.protocol import MachineOptions
from kloud.providers.compute import ComputeProvider, ComputeSettings
from kloud.providers.types import ComputeAPI, Flavor, Image
from kloud.waitstate import WaitConfig

from .cloud import MemoryCloud

DEFAULT_IMAGE = Image(id="img-ubuntu", name="ubuntu-14.04")
DEFAULT_FLAVORS = (
    Flavor(id="2", name="512MB Standard Instance", ram_mb=512, vcpus=1, disk_gb=20),
    Flavor(id="3", name="1GB Standard Instance", ram_mb=1024, vcpus=1, disk_gb=40),
)


@dataclass(frozen=True, slots=True)
class Memory:
    """In-memory provider configuration.

    Args:
        steps: Polls each remote transition takes.
        latency: Seconds every remote call sleeps.
        public_key: Public key registered for ``key_name``.
    """

    steps: int = 2
    latency: float = 0.0
    key_name: str = DEFAULT_KEY_NAME
    public_key: str = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIKloudMemoryProvider kloud@memory"


def create_provider(
    name: str,
    config: Memory,
    *,
    wait: WaitConfig | None = None,
) -> tuple[ComputeProvider, MemoryCloud]:
    """Compute provider backed by one shared :class:`MemoryCloud`."""
    cloud = MemoryCloud(
        steps=config.steps,
        latency=config.latency,
        images=(DEFAULT_IMAGE,),
        flavors=DEFAULT_FLAVORS,
    )

    async def connect(options: MachineOptions) -> ComputeAPI:
        return cloud

    settings = ComputeSettings(
        default_image=DEFAULT_IMAGE.id,
        default_flavor=DEFAULT_FLAVORS[0].id,
        key_name=config.key_name,
        public_key=config.public_key,
    )
    return ComputeProvider(name, connect, settings, wait=wait), cloud


__all__ = ["Memory", "MemoryCloud", "create_provider"]
