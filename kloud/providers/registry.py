"""Provider construction from configuration objects.

Uses lazy imports so SDK dependencies (pydo, aiohttp) are only loaded for
the backends that are actually configured.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from kloud.observability.logger import logger

if TYPE_CHECKING:
    from kloud.protocol import Provider
    from kloud.waitstate import WaitConfig

    from .digitalocean.config import DigitalOcean
    from .memory import Memory
    from .openstack.config import OpenStack

    type ProviderConfig = DigitalOcean | Memory | OpenStack

log = logger.bind(component="registry")


def provider_types() -> dict[str, type]:
    """Config class per ``type`` value accepted in TOML configuration."""
    from .digitalocean.config import DigitalOcean
    from .memory import Memory
    from .openstack.config import OpenStack

    return {
        "openstack": OpenStack,
        "rackspace": OpenStack,
        "digitalocean": DigitalOcean,
        "memory": Memory,
    }


def create_provider(name: str, config: ProviderConfig, *, wait: WaitConfig | None = None) -> Provider:
    """Create the provider registered as ``name`` for a configuration object."""
    from .digitalocean.config import DigitalOcean
    from .memory import Memory
    from .openstack.config import OpenStack

    log.debug(
        "Creating provider {name} for config={config_type}",
        name=name, config_type=type(config).__name__,
    )

    match config:
        case OpenStack():
            from .openstack import create_provider as create_openstack
            return create_openstack(name, config, wait=wait)
        case DigitalOcean():
            from .digitalocean import DigitalOceanProvider
            return DigitalOceanProvider(name, config, wait=wait)
        case Memory():
            from .memory import create_provider as create_memory
            provider, _ = create_memory(name, config, wait=wait)
            return provider
        case _:
            raise ValueError(
                f"No provider registered for {type(config).__name__}. "
                f"Available providers: OpenStack, DigitalOcean, Memory"
            )
