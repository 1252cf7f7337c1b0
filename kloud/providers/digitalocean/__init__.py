"""DigitalOcean provider for kloud.

Example:
    from kloud.providers.digitalocean import DigitalOcean, DigitalOceanProvider

    provider = DigitalOceanProvider("digitalocean", DigitalOcean(region="nyc3"))
"""

from .config import DigitalOcean
from .provider import DigitalOceanProvider

__all__ = ["DigitalOcean", "DigitalOceanProvider"]
