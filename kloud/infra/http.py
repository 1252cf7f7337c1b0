"""Small async JSON client over aiohttp.

Used by REST-speaking providers. Every request carries the auth headers;
a 401 asks the auth to refresh itself and the request is sent once more.
Failures surface as :class:`HttpError`, with status 0 for transport errors.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import aiohttp

from kloud.observability.logger import logger

type JsonBody = dict[str, Any] | list[Any]
type Params = dict[str, Any]

# ─── Errors ──────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class HttpError(Exception):
    status: int
    body: str

    def __str__(self) -> str:
        return f"HTTP {self.status}: {self.body}"

    @property
    def not_found(self) -> bool:
        return self.status == 404


@dataclass(frozen=True, slots=True)
class Response:
    status: int
    data: Any
    headers: dict[str, str]


# ─── Auth ────────────────────────────────────────────────────────────


@runtime_checkable
class Auth(Protocol):
    async def headers(self) -> dict[str, str]: ...
    async def on_401(self) -> None: ...


class TokenAuth:
    """A fixed token sent in one header (``X-Auth-Token`` by default)."""

    def __init__(self, token: str, header: str = "X-Auth-Token") -> None:
        self._token = token
        self._header = header

    async def headers(self) -> dict[str, str]:
        return {self._header: self._token, "Accept": "application/json"}

    async def on_401(self) -> None:
        pass


# ─── Client ──────────────────────────────────────────────────────────


class HttpClient:
    """JSON over HTTP against one base URL.

    Example:
        async with HttpClient("https://example.test/v2", TokenAuth(token)) as http:
            resp = await http.get("/servers/detail")
    """

    def __init__(
        self,
        base_url: str,
        auth: Auth | None = None,
        *,
        timeout: float = 30,
        default_headers: dict[str, str] | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._auth = auth
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._default_headers = {"Accept": "application/json", **(default_headers or {})}
        self._session: aiohttp.ClientSession | None = None
        self._log = logger.bind(component="http")

    def _session_or_open(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def _headers(self) -> dict[str, str]:
        if self._auth is None:
            return dict(self._default_headers)
        return {**self._default_headers, **await self._auth.headers()}

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: JsonBody | None = None,
        params: Params | None = None,
    ) -> Response:
        session = self._session_or_open()
        url = f"{self.base_url}{path}"
        retried = False
        self._log.debug("{method} {path}", method=method, path=path)

        while True:
            try:
                async with session.request(
                    method, url, headers=await self._headers(), json=json, params=params
                ) as resp:
                    if resp.status == 401 and self._auth is not None and not retried:
                        retried = True
                    else:
                        return await self._response(resp)
            except aiohttp.ClientResponseError as e:
                raise HttpError(status=e.status, body=e.message) from e
            except aiohttp.ClientError as e:
                raise HttpError(status=0, body=str(e)) from e

            self._log.debug("401 from {path}, refreshing auth", path=path)
            await self._auth.on_401()

    async def _response(self, resp: aiohttp.ClientResponse) -> Response:
        if resp.status >= 400:
            body = await resp.text()
            if resp.status != 404:
                self._log.warning(
                    "HTTP {status} from {url}: {body}",
                    status=resp.status, url=str(resp.url), body=body[:500],
                )
            raise HttpError(status=resp.status, body=body)
        raw = await resp.read()
        data = await resp.json(content_type=None) if raw else None
        return Response(status=resp.status, data=data, headers=dict(resp.headers))

    async def get(self, path: str, *, params: Params | None = None) -> Response:
        return await self.request("GET", path, params=params)

    async def post(
        self,
        path: str,
        *,
        json: JsonBody | None = None,
        params: Params | None = None,
    ) -> Response:
        return await self.request("POST", path, json=json, params=params)

    async def delete(self, path: str, *, params: Params | None = None) -> Response:
        return await self.request("DELETE", path, params=params)

    # ─── Lifecycle ───────────────────────────────────────────────────

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> HttpClient:
        self._session_or_open()
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()
