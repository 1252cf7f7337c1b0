"""OpenStack provider configuration.

Immutable configuration dataclass for OpenStack-compatible clouds
(Rackspace being the default).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Final

from kloud.constants import DEFAULT_KEY_NAME

RACKSPACE_AUTH_URL: Final = "https://identity.api.rackspacecloud.com/v2.0"

DEFAULT_IMAGE_NAME: Final = "Ubuntu 14.04 LTS (Trusty Tahr) (PVHVM)"
DEFAULT_IMAGE_ID: Final = "bb02b1a3-bc77-4d17-ab5b-421d89850fca"

# id: 2 name: 512MB Standard Instance cpu: 1 ram: 512 disk: 20
DEFAULT_FLAVOR_ID: Final = "2"


# =============================================================================
# Configuration
# =============================================================================


@dataclass(frozen=True, slots=True)
class OpenStack:
    """OpenStack provider configuration.

    Credentials given in the machine options take precedence over the ones
    here, which take precedence over the OS_* environment variables.

    Example:
        >>> from kloud.providers.openstack import OpenStack
        >>> config = OpenStack(region="IAD", api_key="...", username="ops")

    Args:
        auth_url: Keystone v2.0 identity endpoint.
        region: Compute endpoint region (e.g., "DFW", "IAD"). Empty picks the first.
        username: Account user name. Falls back to OS_USERNAME.
        api_key: Rackspace API key. Falls back to OS_API_KEY.
        password: Password for plain Keystone auth. Falls back to OS_PASSWORD.
        tenant_name: Tenant for password auth. Falls back to OS_TENANT_NAME.
        default_image: Image id used when a build does not name one.
        default_flavor: Flavor id used when a build does not name one.
        key_name: Key pair injected into servers.
        public_key: Public key registered when ``key_name`` is missing.
        request_timeout: HTTP timeout in seconds.
    """

    auth_url: str = RACKSPACE_AUTH_URL
    region: str = ""
    username: str | None = None
    api_key: str | None = None
    password: str | None = None
    tenant_name: str | None = None
    default_image: str = DEFAULT_IMAGE_ID
    default_flavor: str = DEFAULT_FLAVOR_ID
    key_name: str = DEFAULT_KEY_NAME
    public_key: str = ""
    request_timeout: float = 30


__all__ = [
    "DEFAULT_FLAVOR_ID",
    "DEFAULT_IMAGE_ID",
    "DEFAULT_IMAGE_NAME",
    "OpenStack",
    "RACKSPACE_AUTH_URL",
]
