"""Async HTTP client for the RunPod pod API."""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

from loguru import logger

from dreampods.errors import ProviderError, ProviderErrorKind
from dreampods.infra.http import BearerAuth, HttpClient, HttpError
from dreampods.infra.retry import on_status_code, retry
from dreampods.models import PodRecord

from .types import (
    BillingFilter,
    BillingRecord,
    PodCreateParams,
    PodResponse,
    PodUpdateParams,
)

RUNPOD_API_BASE = "https://rest.runpod.io/v1"
RUNPOD_GRAPHQL_URL = "https://api.runpod.io/graphql"

# REST GET /pods/{id} has no runtime block; the GraphQL query does.
POD_STATUS_QUERY = """
query getPod($podId: String!) {
  pod(input: { podId: $podId }) {
    id
    name
    desiredStatus
    lastStatusChange
    imageName
    machineId
    costPerHr
    machine { podHostId gpuDisplayName }
    runtime {
      uptimeInSeconds
      ports { ip isIpPublic privatePort publicPort }
      gpus { id gpuUtilPercent memoryUtilPercent }
    }
  }
}
"""

# Lower-cased fragments the API uses when no host can satisfy the GPU request.
CAPACITY_PHRASES = (
    "no gpu available",
    "no gpus available",
    "insufficient gpu",
    "no machines available",
    "could not find a machine",
    "there are no longer any instances available",
    "not enough free gpus",
)

# Structured codes, checked before the message text.
CAPACITY_CODES = frozenset({"NO_GPU_AVAILABLE", "INSUFFICIENT_CAPACITY", "NO_MACHINES_AVAILABLE"})


def _parse_body(text: str) -> Any:
    try:
        return json.loads(text) if text else None
    except ValueError:
        return {"raw": text}


def _error_message(body: Any, fallback: str) -> str:
    match body:
        case {"errors": [*errors]} if errors:
            return ", ".join(str(e.get("message", e)) if isinstance(e, Mapping) else str(e) for e in errors)
        case {"error": str() as msg} if msg:
            return msg
        case {"message": str() as msg} if msg:
            return msg
        case {"raw": str() as raw} if raw:
            return raw
        case str() as raw if raw:
            return raw
        case _:
            return fallback


def classify(status: int, message: str, body: Any = None) -> ProviderErrorKind:
    """Map an API failure to a ProviderErrorKind.

    Structured codes and HTTP statuses win; the message text match is the
    fallback for responses that only describe the failure in prose.
    """
    if isinstance(body, Mapping):
        code = str(body.get("code") or body.get("errorCode") or "").upper()
        if code in CAPACITY_CODES:
            return ProviderErrorKind.CAPACITY

    match status:
        case 401 | 403:
            return ProviderErrorKind.AUTH
        case 404:
            return ProviderErrorKind.NOT_FOUND
        case 429:
            return ProviderErrorKind.RATE_LIMITED

    haystack = message.lower()
    if isinstance(body, Mapping):
        haystack += " " + json.dumps(body).lower()
    if any(phrase in haystack for phrase in CAPACITY_PHRASES):
        return ProviderErrorKind.CAPACITY

    match status:
        case 400 | 422:
            return ProviderErrorKind.INVALID_REQUEST
        case 0 | 502 | 503 | 504:
            return ProviderErrorKind.UNAVAILABLE
        case _:
            return ProviderErrorKind.UNKNOWN


def provider_error(status: int, text: str, *, action: str = "") -> ProviderError:
    body = _parse_body(text)
    message = _error_message(body, f"RunPod API error: {status}")
    prefix = f"{action}: " if action else ""
    return ProviderError(
        f"{prefix}{message}",
        status=status,
        body=body,
        kind=classify(status, message, body),
    )


class RunPodClient:
    """Async client for RunPod pods.

    Reads (`list_pods`, `get_pod`) retry on 429/503; control calls surface
    the first failure unchanged.

    Example:
        async with RunPodClient(api_key="...") as client:
            pods = await client.list_pods()
    """

    def __init__(
        self,
        api_key: str,
        *,
        base_url: str = RUNPOD_API_BASE,
        graphql_url: str = RUNPOD_GRAPHQL_URL,
        timeout: float = 30.0,
    ) -> None:
        self._log = logger.bind(component="runpod")
        self._http = HttpClient(
            base_url,
            BearerAuth(api_key),
            timeout=timeout,
            default_headers={"Content-Type": "application/json"},
        )
        self._graphql_url = graphql_url

    async def __aenter__(self) -> RunPodClient:
        return self

    async def __aexit__(self, *_args: object) -> None:
        await self.close()

    async def close(self) -> None:
        await self._http.close()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Mapping[str, Any] | None = None,
        params: Mapping[str, Any] | None = None,
        action: str = "",
    ) -> Any:
        try:
            return await self._http.request(
                method, path,
                json=dict(json) if json is not None else None,
                params=dict(params) if params is not None else None,
            )
        except HttpError as e:
            self._log.warning(
                "API error {method} {path}: {status}",
                method=method, path=path, status=e.status,
            )
            raise provider_error(e.status, e.body, action=action) from e

    async def _graphql(self, query: str, variables: dict[str, Any]) -> dict[str, Any]:
        data = await self._request(
            "POST", self._graphql_url, json={"query": query, "variables": variables},
        )
        match data:
            case {"errors": [*_]}:
                message = _error_message(data, "GraphQL error")
                raise ProviderError(
                    f"GraphQL error: {message}",
                    status=200,
                    body=data,
                    kind=classify(200, message, data),
                )
            case {"data": dict() as payload}:
                return payload
            case _:
                return {}

    # =========================================================================
    # Discovery & status
    # =========================================================================

    @retry(on=on_status_code(429, 503), max_attempts=3, base_delay=1.0)
    async def list_pods(self) -> list[PodRecord]:
        result: list[PodResponse] | None = await self._request("GET", "/pods", action="List pods")
        pods = [PodRecord.from_response(p) for p in result or []]
        self._log.debug("Listed {n} pods", n=len(pods))
        return pods

    @retry(on=on_status_code(429, 503), max_attempts=3, base_delay=1.0)
    async def get_pod(self, pod_id: str) -> PodRecord | None:
        """Detailed pod status including runtime. None if the pod is gone."""
        try:
            data = await self._graphql(POD_STATUS_QUERY, {"podId": pod_id})
        except ProviderError as e:
            if e.kind is ProviderErrorKind.NOT_FOUND:
                return None
            raise
        pod: PodResponse | None = data.get("pod")
        return PodRecord.from_response(pod) if pod else None

    # =========================================================================
    # Control
    # =========================================================================

    async def create_pod(self, params: PodCreateParams) -> PodRecord:
        result: PodResponse | None = await self._request(
            "POST", "/pods", json=params, action="Failed to create pod",
        )
        if not result:
            raise ProviderError("Failed to create pod: empty response")
        self._log.info(
            "Created pod '{name}' (ID: {pod_id})",
            name=params.get("name"), pod_id=result["id"],
        )
        return PodRecord.from_response(result)

    async def start_pod(self, pod_id: str) -> None:
        await self._request("POST", f"/pods/{pod_id}/start")
        self._log.info("Pod {pod_id} start requested", pod_id=pod_id)

    async def stop_pod(self, pod_id: str) -> None:
        await self._request("POST", f"/pods/{pod_id}/stop")
        self._log.info("Pod {pod_id} stop requested", pod_id=pod_id)

    async def delete_pod(self, pod_id: str) -> None:
        await self._request("DELETE", f"/pods/{pod_id}")
        self._log.info("Pod {pod_id} terminated", pod_id=pod_id)

    async def update_pod(self, pod_id: str, params: PodUpdateParams) -> PodRecord | None:
        """PATCH a pod. RunPod resets it and pulls the image again."""
        result: PodResponse | None = await self._request("PATCH", f"/pods/{pod_id}", json=params)
        self._log.info("Pod {pod_id} update triggered", pod_id=pod_id)
        return PodRecord.from_response(result) if result and "id" in result else None

    # =========================================================================
    # Billing
    # =========================================================================

    async def get_billing(self, query: BillingFilter) -> list[BillingRecord]:
        params: dict[str, Any] = {k: v for k, v in query.items() if v}
        params["grouping"] = "podId"
        result = await self._request("GET", "/billing/pods", params=params, action="Billing")
        return result if isinstance(result, list) else []
