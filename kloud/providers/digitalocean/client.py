"""Async client for DigitalOcean API.

Uses pydo.aio for async operations. Returns plain dicts from API responses
and maps failures onto the kloud exception hierarchy.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from typing import Any, Protocol

from pydo.aio import Client as PyDOClient

from kloud.exceptions import ConfigurationError, RemoteAPIError, RemoteNotFoundError

type Droplet = dict[str, Any]
type Action = dict[str, Any]


def _is_not_found(e: Exception) -> bool:
    if getattr(e, "status_code", None) == 404:
        return True
    return "404" in str(e) or "not found" in str(e).lower()


class DropletAPI(Protocol):
    """The slice of the DigitalOcean API the provider uses."""

    async def __aenter__(self) -> DropletAPI: ...
    async def __aexit__(self, *_: Any) -> None: ...
    async def list_ssh_keys(self) -> list[dict[str, Any]]: ...
    async def create_ssh_key(self, name: str, public_key: str) -> dict[str, Any]: ...
    async def create_droplet(
        self, name: str, region: str, size: str, image: str, ssh_keys: list[str | int],
    ) -> Droplet: ...
    async def get_droplet(self, droplet_id: int) -> Droplet: ...
    async def delete_droplet(self, droplet_id: int) -> None: ...
    async def droplet_action(self, droplet_id: int, action: str) -> Action: ...
    async def get_action(self, droplet_id: int, action_id: int) -> Action: ...
    async def list_snapshots(self) -> list[dict[str, Any]]: ...


class DigitalOceanClient:
    """Async client for DigitalOcean API using pydo.aio.

    Example:
        async with DigitalOceanClient(token) as client:
            droplet = await client.get_droplet(1234)
    """

    def __init__(self, token: str) -> None:
        self._token = token
        self._client: PyDOClient | None = None

    async def __aenter__(self) -> DigitalOceanClient:
        self._client = PyDOClient(token=self._token)
        return self

    async def __aexit__(self, *_: Any) -> None:
        if self._client:
            await self._client.close()
            self._client = None

    @property
    def client(self) -> PyDOClient:
        if not self._client:
            raise RuntimeError("Client not initialized. Use 'async with' context.")
        return self._client

    # =========================================================================
    # SSH Key Management
    # =========================================================================

    async def list_ssh_keys(self) -> list[dict[str, Any]]:
        """List all SSH keys registered on this account."""
        try:
            result = await self.client.ssh_keys.list()
            return list(result.get("ssh_keys", []))
        except Exception as e:
            raise RemoteAPIError(f"Failed to list SSH keys: {e}") from e

    async def create_ssh_key(self, name: str, public_key: str) -> dict[str, Any]:
        """Register a new SSH public key."""
        try:
            result = await self.client.ssh_keys.create(
                body={"name": name, "public_key": public_key}
            )
        except Exception as e:
            raise RemoteAPIError(f"Failed to create SSH key: {e}") from e
        ssh_key = result.get("ssh_key")
        if not ssh_key:
            raise RemoteAPIError("Failed to create SSH key: empty response")
        return ssh_key

    # =========================================================================
    # Droplet Management
    # =========================================================================

    async def create_droplet(
        self,
        name: str,
        region: str,
        size: str,
        image: str,
        ssh_keys: list[str | int],
    ) -> Droplet:
        """Create a new droplet."""
        body: dict[str, Any] = {
            "name": name,
            "region": region,
            "size": size,
            "image": image,
            "ssh_keys": ssh_keys,
            "tags": ["kloud"],
        }
        try:
            result = await self.client.droplets.create(body=body)
        except Exception as e:
            raise RemoteAPIError(f"Failed to create droplet: {e}") from e
        droplet = result.get("droplet")
        if not droplet:
            raise RemoteAPIError("Failed to create droplet: empty response")
        return droplet

    async def get_droplet(self, droplet_id: int) -> Droplet:
        """Get droplet details."""
        try:
            result = await self.client.droplets.get(droplet_id=droplet_id)
        except Exception as e:
            if _is_not_found(e):
                raise RemoteNotFoundError("droplet", str(droplet_id)) from e
            raise RemoteAPIError(f"Failed to get droplet: {e}") from e
        droplet = result.get("droplet")
        if not droplet:
            raise RemoteNotFoundError("droplet", str(droplet_id))
        return droplet

    async def delete_droplet(self, droplet_id: int) -> None:
        """Delete a droplet."""
        try:
            await self.client.droplets.destroy(droplet_id=droplet_id)
        except Exception as e:
            if _is_not_found(e):
                raise RemoteNotFoundError("droplet", str(droplet_id)) from e
            raise RemoteAPIError(f"Failed to delete droplet: {e}") from e

    async def droplet_action(self, droplet_id: int, action: str) -> Action:
        """Start a power action (power_on, shutdown, reboot, ...)."""
        try:
            result = await self.client.droplet_actions.post(
                droplet_id=droplet_id, body={"type": action}
            )
        except Exception as e:
            if _is_not_found(e):
                raise RemoteNotFoundError("droplet", str(droplet_id)) from e
            raise RemoteAPIError(f"Failed to {action} droplet: {e}") from e
        return result.get("action", {})

    async def get_action(self, droplet_id: int, action_id: int) -> Action:
        try:
            result = await self.client.droplet_actions.get(
                droplet_id=droplet_id, action_id=action_id
            )
        except Exception as e:
            if _is_not_found(e):
                raise RemoteNotFoundError("droplet", str(droplet_id)) from e
            raise RemoteAPIError(f"Failed to get action {action_id}: {e}") from e
        return result.get("action", {})

    # =========================================================================
    # Snapshots
    # =========================================================================

    async def list_snapshots(self) -> list[dict[str, Any]]:
        """List droplet snapshots on this account."""
        try:
            result = await self.client.snapshots.list(resource_type="droplet")
            return list(result.get("snapshots", []))
        except Exception as e:
            raise RemoteAPIError(f"Failed to list snapshots: {e}") from e


# =============================================================================
# Utility Functions
# =============================================================================


def get_token(credential: Mapping[str, Any], configured: str | None) -> str:
    """Get API token from machine credentials, config or environment."""
    token = credential.get("token") or configured or os.environ.get("DIGITALOCEAN_TOKEN")
    if not token:
        raise ConfigurationError(
            "DigitalOcean API token not provided. "
            "Set DIGITALOCEAN_TOKEN environment variable or pass token in the credential"
        )
    return str(token)


def get_public_ip(droplet: Droplet) -> str:
    for network in droplet.get("networks", {}).get("v4", []):
        if network.get("type") == "public":
            return network.get("ip_address", "")
    return ""


__all__ = [
    "DigitalOceanClient",
    "Droplet",
    "DropletAPI",
    "get_public_ip",
    "get_token",
]
