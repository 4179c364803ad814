from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, Protocol, overload, runtime_checkable

import aiohttp
from loguru import logger

# ─── Errors ──────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class HttpError(Exception):
    status: int
    body: str

    def __str__(self) -> str:
        return f"HTTP {self.status}: {self.body}"


@dataclass(frozen=True, slots=True)
class HttpConnectError(HttpError):
    """The peer refused or dropped the TCP connection."""

    url: str = ""


# ─── Auth ────────────────────────────────────────────────────────────


@runtime_checkable
class Auth(Protocol):
    async def headers(self) -> dict[str, str]: ...


class BearerAuth:
    def __init__(self, token: str) -> None:
        self._token = token

    async def headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._token}",
            "Accept": "application/json",
        }


class BasicAuth:
    def __init__(self, user: str, password: str) -> None:
        self._encoded = aiohttp.BasicAuth(user, password).encode()

    async def headers(self) -> dict[str, str]:
        return {"Authorization": self._encoded}


# ─── Client ──────────────────────────────────────────────────────────


class HttpClient:
    def __init__(
        self,
        base_url: str,
        auth: Auth | None = None,
        *,
        timeout: float = 30,
        default_headers: dict[str, str] | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._auth = auth
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._default_headers = default_headers or {}
        self._session: aiohttp.ClientSession | None = None
        self._log = logger.bind(component="http")

    @property
    def base_url(self) -> str:
        return self._base_url

    def _url(self, path: str) -> str:
        if path.startswith(("http://", "https://")):
            return path
        return f"{self._base_url}{path}"

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def _build_headers(self, auth: Auth | None) -> dict[str, str]:
        headers = dict(self._default_headers)
        if auth:
            headers.update(await auth.headers())
        return headers

    async def _send(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | list[Any] | None = None,
        params: dict[str, Any] | None = None,
        format: Literal["json", "text"] = "json",
        auth: Auth | None = None,
    ) -> tuple[int, Any]:
        session = await self._ensure_session()
        headers = await self._build_headers(auth or self._auth)
        url = self._url(path)
        self._log.debug("{method} {path}", method=method, path=path)

        try:
            async with session.request(
                method, url, headers=headers, json=json, params=params
            ) as resp:
                return await self._parse(resp, format)
        except aiohttp.ClientConnectorError as e:
            raise HttpConnectError(status=0, body=str(e), url=url) from e
        except aiohttp.ClientResponseError as e:
            raise HttpError(status=e.status, body=e.message) from e
        except aiohttp.ClientError as e:
            raise HttpError(status=0, body=str(e)) from e
        except TimeoutError as e:
            raise HttpError(status=0, body=f"timeout: {method} {url}") from e

    async def _parse(
        self, resp: aiohttp.ClientResponse, format: Literal["json", "text"]
    ) -> tuple[int, Any]:
        if resp.status >= 400:
            body = await resp.text()
            self._log.warning(
                "HTTP {status} from {url}: {body}",
                status=resp.status, url=str(resp.url), body=body[:500],
            )
            raise HttpError(status=resp.status, body=body)
        match format:
            case "json":
                raw = await resp.read()
                if not raw:
                    return resp.status, None
                return resp.status, await resp.json(content_type=None)
            case "text":
                return resp.status, await resp.text()

    @overload
    async def request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | list[Any] | None = None,
        params: dict[str, Any] | None = None,
        format: Literal["json"] = "json",
        auth: Auth | None = None,
    ) -> Any: ...

    @overload
    async def request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | list[Any] | None = None,
        params: dict[str, Any] | None = None,
        format: Literal["text"],
        auth: Auth | None = None,
    ) -> str: ...

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | list[Any] | None = None,
        params: dict[str, Any] | None = None,
        format: Literal["json", "text"] = "json",
        auth: Auth | None = None,
    ) -> Any:
        _, data = await self._send(
            method, path, json=json, params=params, format=format, auth=auth,
        )
        return data

    async def status(self, path: str) -> int:
        """GET ``path`` and return the status code; raises HttpError on >=400."""
        code, _ = await self._send("GET", path, format="text")
        return code

    # ─── Lifecycle ───────────────────────────────────────────────────

    async def close(self) -> None:
        if self._session and not self._session.closed:
            self._log.debug("Closing HTTP session")
            await self._session.close()

    async def __aenter__(self) -> HttpClient:
        await self._ensure_session()
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()
