"""Async client for the downstream consumer service.

The consumer receives frames from the generation pod. The orchestrator tells
it where the generation pod lives (register/unregister) and reads back its
view of the pipeline.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from loguru import logger

from dreampods.errors import ConfigurationError, ConsumerError, ConsumerUnreachable
from dreampods.infra.http import BasicAuth, BearerAuth, HttpClient, HttpConnectError, HttpError

REGISTER_PATH = "/api/dreams/comfyui/register"
ENDPOINT_PATH = "/api/dreams/comfyui"
REGISTRATION_STATUS_PATH = "/api/dreams/comfyui/status"
HEALTH_PATH = "/api/dreams/health"
STATUS_PATH = "/api/dreams/status"
STATE_PATH = "/api/dreams/state"
ABORT_PATH = "/api/dreams/stop"


class ConsumerClient:
    def __init__(
        self,
        base_url: str,
        token: str = "",
        *,
        timeout: float = 30,
        probe_timeout: float = 10,
    ) -> None:
        self._token = token
        self._http = HttpClient(
            base_url, timeout=timeout, default_headers={"Content-Type": "application/json"},
        )
        self._probe = HttpClient("", timeout=probe_timeout)
        self._log = logger.bind(component="consumer")

    @property
    def base_url(self) -> str:
        return self._http.base_url

    async def __aenter__(self) -> ConsumerClient:
        return self

    async def __aexit__(self, *_args: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self._http.close()
        await self._probe.close()

    def _bearer(self) -> BearerAuth:
        if not self._token:
            raise ConfigurationError("DREAM_GEN_AUTH_TOKEN not set; cannot call the consumer's protected API")
        return BearerAuth(self._token)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict[str, Any] | None = None,
        authenticated: bool = False,
    ) -> Any:
        auth = self._bearer() if authenticated else None
        try:
            return await self._http.request(method, path, json=json, auth=auth)
        except HttpConnectError as e:
            raise ConsumerUnreachable(self.base_url) from e
        except HttpError as e:
            raise ConsumerError(f"Consumer API error: {e.status}", status=e.status, body=e.body) from e

    # ─── Registration ────────────────────────────────────────────────

    async def register_endpoint(
        self,
        url: str,
        credentials: Mapping[str, str] | None = None,
        *,
        pod_id: str | None = None,
    ) -> dict[str, Any]:
        """Point the consumer at the generation pod's public endpoint."""
        payload: dict[str, Any] = {"url": url, **(credentials or {})}
        if pod_id:
            payload["pod_id"] = pod_id
        self._log.info("Registering generation endpoint {url}", url=url)
        return await self._request("POST", REGISTER_PATH, json=payload, authenticated=True) or {}

    async def unregister_endpoint(self) -> None:
        self._log.info("Unregistering generation endpoint")
        await self._request("DELETE", ENDPOINT_PATH, authenticated=True)

    async def get_registration_status(self) -> dict[str, Any]:
        return await self._request("GET", REGISTRATION_STATUS_PATH) or {}

    # ─── Status ──────────────────────────────────────────────────────

    async def get_health(self) -> dict[str, Any]:
        return await self._request("GET", HEALTH_PATH) or {}

    async def get_status(self) -> dict[str, Any]:
        return await self._request("GET", STATUS_PATH) or {}

    async def get_state_info(self) -> dict[str, Any]:
        return await self._request("GET", STATE_PATH) or {}

    # ─── Control ─────────────────────────────────────────────────────

    async def clear_state(self) -> None:
        await self._request("DELETE", STATE_PATH, authenticated=True)

    async def abort_startup(self) -> dict[str, Any]:
        return await self._request("POST", ABORT_PATH, authenticated=True) or {}

    # ─── Generation pod ──────────────────────────────────────────────

    async def probe_health(self, url: str, credentials: tuple[str, str] | None = None) -> bool:
        """GET the generation pod's own health URL; True on 2xx."""
        auth = BasicAuth(*credentials) if credentials else None
        try:
            await self._probe.request("GET", url, format="text", auth=auth)
        except HttpError as e:
            self._log.debug("Health probe {url} failed: {err}", url=url, err=e)
            return False
        return True
