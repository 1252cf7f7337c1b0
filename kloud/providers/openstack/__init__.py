"""OpenStack (and Rackspace) provider for kloud.

Example:
    from kloud.providers.openstack import OpenStack, create_provider

    provider = create_provider("rackspace", OpenStack(region="IAD"))
"""

from __future__ import annotations

from kloud.protocol import MachineOptions
from kloud.providers.compute import ComputeProvider, ComputeSettings
from kloud.providers.types import ComputeAPI
from kloud.waitstate import WaitConfig

from .client import OpenStackClient
from .config import OpenStack


def create_provider(name: str, config: OpenStack, *, wait: WaitConfig | None = None) -> ComputeProvider:
    """Compute provider opening one authenticated client per operation."""

    async def connect(options: MachineOptions) -> ComputeAPI:
        return await OpenStackClient.connect(config, options.credential)

    settings = ComputeSettings(
        default_image=config.default_image,
        default_flavor=config.default_flavor,
        key_name=config.key_name,
        public_key=config.public_key,
    )
    return ComputeProvider(name, connect, settings, wait=wait)


__all__ = ["OpenStack", "OpenStackClient", "create_provider"]
