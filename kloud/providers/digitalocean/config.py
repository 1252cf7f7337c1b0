"""DigitalOcean provider configuration.

Immutable configuration dataclass for DigitalOcean provider.
"""

from __future__ import annotations

from dataclasses import dataclass

from kloud.constants import DEFAULT_KEY_NAME


# =============================================================================
# Configuration
# =============================================================================


@dataclass(frozen=True, slots=True)
class DigitalOcean:
    """DigitalOcean provider configuration.

    Example:
        >>> from kloud.providers.digitalocean import DigitalOcean
        >>> config = DigitalOcean(region="nyc3")

    Args:
        region: DigitalOcean region (e.g., "nyc3", "sfo3", "ams3"). Default: nyc3.
        token: API token. Falls back to DIGITALOCEAN_TOKEN env var.
        size: Droplet size slug used when a build does not name one.
        default_image: Image slug used when a build does not name one.
        ssh_key_fingerprint: Registered SSH key to inject (skips key lookup).
        key_name: Name of the SSH key registered when none matches.
        public_key: Public key registered under ``key_name`` if needed.
    """

    region: str = "nyc3"
    token: str | None = None
    size: str = "s-1vcpu-1gb"
    default_image: str = "ubuntu-24-04-x64"
    ssh_key_fingerprint: str | None = None
    key_name: str = DEFAULT_KEY_NAME
    public_key: str = ""


# =============================================================================
# Exports
# =============================================================================

__all__ = ["DigitalOcean"]
