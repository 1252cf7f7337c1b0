"""Async client for the OpenStack compute (Nova v2) API.

Authenticates against Keystone v2.0, discovers the compute endpoint from the
service catalog and speaks just enough Nova for :class:`ComputeAPI`.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

from kloud.exceptions import ConfigurationError, RemoteAPIError, RemoteNotFoundError
from kloud.infra.http import HttpClient, HttpError
from kloud.observability.logger import logger
from kloud.providers.types import Flavor, Image, KeyPair, Server

from .config import OpenStack

log = logger.bind(component="openstack")


# =============================================================================
# Authentication
# =============================================================================


@dataclass(frozen=True, slots=True)
class KeystoneCredentials:
    username: str
    api_key: str = ""
    password: str = ""
    tenant_name: str = ""

    def body(self) -> dict[str, Any]:
        if self.api_key:
            return {
                "auth": {
                    "RAX-KSKEY:apiKeyCredentials": {
                        "username": self.username,
                        "apiKey": self.api_key,
                    }
                }
            }
        auth: dict[str, Any] = {
            "passwordCredentials": {"username": self.username, "password": self.password}
        }
        if self.tenant_name:
            auth["tenantName"] = self.tenant_name
        return {"auth": auth}


def resolve_credentials(config: OpenStack, credential: Mapping[str, Any]) -> KeystoneCredentials:
    """Merge machine credentials, provider config and OS_* environment variables."""

    def pick(key: str, configured: str | None, env: str) -> str:
        return str(credential.get(key) or configured or os.environ.get(env) or "")

    creds = KeystoneCredentials(
        username=pick("username", config.username, "OS_USERNAME"),
        api_key=pick("api_key", config.api_key, "OS_API_KEY"),
        password=pick("password", config.password, "OS_PASSWORD"),
        tenant_name=pick("tenant_name", config.tenant_name, "OS_TENANT_NAME"),
    )
    if not creds.username or not (creds.api_key or creds.password):
        raise ConfigurationError(
            "OpenStack credentials not provided. Set OS_USERNAME and OS_API_KEY "
            "(or OS_PASSWORD), or pass them in the machine credential."
        )
    return creds


def compute_endpoint(catalog: list[dict[str, Any]], region: str) -> str:
    for service in catalog:
        if service.get("type") != "compute":
            continue
        for endpoint in service.get("endpoints", []):
            if not region or endpoint.get("region", "").upper() == region.upper():
                return endpoint["publicURL"]
    raise ConfigurationError(f"No compute endpoint found for region '{region or '*'}'")


class KeystoneAuth:
    """X-Auth-Token auth that re-authenticates when the token expires."""

    def __init__(self, config: OpenStack, credentials: KeystoneCredentials) -> None:
        self._config = config
        self._credentials = credentials
        self._token: str | None = None
        self._endpoint: str | None = None
        self._lock = asyncio.Lock()

    async def authenticate(self) -> str:
        """Fetch a token and return the compute endpoint."""
        async with self._lock:
            if self._token is None or self._endpoint is None:
                self._token, self._endpoint = await self._fetch_token()
            return self._endpoint

    async def _fetch_token(self) -> tuple[str, str]:
        log.debug("Authenticating {user} against {url}", user=self._credentials.username, url=self._config.auth_url)
        async with HttpClient(self._config.auth_url, timeout=self._config.request_timeout) as http:
            try:
                resp = await http.post("/tokens", json=self._credentials.body())
            except HttpError as e:
                raise RemoteAPIError(f"Keystone authentication failed: {e}") from e
        access = (resp.data or {}).get("access", {})
        token = access.get("token", {}).get("id")
        if not token:
            raise RemoteAPIError("Keystone authentication failed: no token in response")
        return token, compute_endpoint(access.get("serviceCatalog", []), self._config.region)

    async def headers(self) -> dict[str, str]:
        await self.authenticate()
        return {"X-Auth-Token": self._token or "", "Accept": "application/json"}

    async def on_401(self) -> None:
        async with self._lock:
            self._token = None


# =============================================================================
# Client
# =============================================================================


def _server(data: dict[str, Any]) -> Server:
    ip = data.get("accessIPv4") or ""
    if not ip:
        for address in data.get("addresses", {}).get("public", []):
            if address.get("version") == 4:
                ip = address.get("addr", "")
                break
    return Server(
        id=str(data["id"]),
        name=data.get("name", ""),
        status=data.get("status", ""),
        task_state=data.get("OS-EXT-STS:task_state") or "",
        ip_address=ip,
    )


def _image(data: dict[str, Any]) -> Image:
    return Image(id=str(data["id"]), name=data.get("name", ""), status=data.get("status", ""))


def _flavor(data: dict[str, Any]) -> Flavor:
    return Flavor(
        id=str(data["id"]),
        name=data.get("name", ""),
        ram_mb=int(data.get("ram", 0)),
        vcpus=int(data.get("vcpus", 0)),
        disk_gb=int(data.get("disk", 0)),
    )


@asynccontextmanager
async def _remote(action: str, kind: str, ref: str) -> AsyncIterator[None]:
    try:
        yield
    except HttpError as e:
        if e.not_found:
            raise RemoteNotFoundError(kind, ref) from e
        raise RemoteAPIError(f"Failed to {action} {kind} '{ref}': {e}") from e


class OpenStackClient:
    """Nova v2 client implementing :class:`kloud.providers.types.ComputeAPI`.

    Example:
        client = await OpenStackClient.connect(OpenStack(region="IAD"), {})
        try:
            server = await client.server("2a3b...")
        finally:
            await client.close()
    """

    def __init__(self, http: HttpClient) -> None:
        self._http = http

    @classmethod
    async def connect(cls, config: OpenStack, credential: Mapping[str, Any]) -> OpenStackClient:
        auth = KeystoneAuth(config, resolve_credentials(config, credential))
        endpoint = await auth.authenticate()
        return cls(HttpClient(endpoint, auth, timeout=config.request_timeout))

    async def close(self) -> None:
        await self._http.close()

    # =========================================================================
    # Images
    # =========================================================================

    async def image(self, ref: str) -> Image:
        """Resolve an image by id, falling back to a lookup by name."""
        try:
            async with _remote("get", "image", ref):
                resp = await self._http.get(f"/images/{ref}")
            return _image(resp.data["image"])
        except RemoteNotFoundError:
            for image in await self.images():
                if image.name == ref:
                    return image
            raise

    async def images(self) -> list[Image]:
        async with _remote("list", "image", "*"):
            resp = await self._http.get("/images/detail")
        return [_image(item) for item in (resp.data or {}).get("images", [])]

    async def delete_image(self, image_id: str) -> None:
        async with _remote("delete", "image", image_id):
            await self._http.delete(f"/images/{image_id}")

    async def create_image(self, server_id: str, name: str) -> str:
        """Snapshot a server and return the id of the new image."""
        async with _remote("snapshot", "server", server_id):
            resp = await self._http.post(
                f"/servers/{server_id}/action", json={"createImage": {"name": name}},
            )
        if resp.data and resp.data.get("image_id"):
            return str(resp.data["image_id"])
        location = resp.headers.get("Location") or resp.headers.get("location") or ""
        return location.rstrip("/").rsplit("/", 1)[-1]

    # =========================================================================
    # Flavors
    # =========================================================================

    async def flavors(self) -> list[Flavor]:
        async with _remote("list", "flavor", "*"):
            resp = await self._http.get("/flavors/detail")
        return [_flavor(item) for item in (resp.data or {}).get("flavors", [])]

    # =========================================================================
    # Key pairs
    # =========================================================================

    async def show_key(self, name: str) -> KeyPair | None:
        try:
            async with _remote("get", "key pair", name):
                resp = await self._http.get(f"/os-keypairs/{name}")
        except RemoteNotFoundError:
            return None
        data = resp.data["keypair"]
        return KeyPair(
            name=data["name"],
            public_key=data.get("public_key", ""),
            fingerprint=data.get("fingerprint", ""),
        )

    async def create_key(self, name: str, public_key: str) -> KeyPair:
        async with _remote("create", "key pair", name):
            resp = await self._http.post(
                "/os-keypairs", json={"keypair": {"name": name, "public_key": public_key}},
            )
        data = resp.data["keypair"]
        return KeyPair(
            name=data["name"],
            public_key=data.get("public_key", public_key),
            fingerprint=data.get("fingerprint", ""),
        )

    async def delete_key(self, name: str) -> None:
        async with _remote("delete", "key pair", name):
            await self._http.delete(f"/os-keypairs/{name}")

    # =========================================================================
    # Servers
    # =========================================================================

    async def create_server(
        self, name: str, image_id: str, flavor_id: str, key_name: str,
    ) -> Server:
        body = {
            "server": {
                "name": name,
                "imageRef": image_id,
                "flavorRef": flavor_id,
                "key_name": key_name,
            }
        }
        async with _remote("create", "server", name):
            resp = await self._http.post("/servers", json=body)
        data = resp.data["server"]
        return Server(id=str(data["id"]), name=name, status=data.get("status", "BUILD"))

    async def server(self, server_id: str) -> Server:
        async with _remote("get", "server", server_id):
            resp = await self._http.get(f"/servers/{server_id}")
        return _server(resp.data["server"])

    async def delete_server(self, server_id: str) -> None:
        async with _remote("delete", "server", server_id):
            await self._http.delete(f"/servers/{server_id}")

    async def reboot_server(self, server_id: str, *, hard: bool = False) -> None:
        async with _remote("reboot", "server", server_id):
            await self._http.post(
                f"/servers/{server_id}/action",
                json={"reboot": {"type": "HARD" if hard else "SOFT"}},
            )


__all__ = [
    "KeystoneAuth",
    "KeystoneCredentials",
    "OpenStackClient",
    "compute_endpoint",
    "resolve_credentials",
]
