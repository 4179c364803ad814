from __future__ import annotations

from collections.abc import Mapping
from dataclasses import replace
from typing import Any

import pytest

from dreampods import DreamOrchestrator, Settings
from dreampods.errors import ConsumerError, ProviderError, ProviderErrorKind
from dreampods.models import PodRecord, PodStatus
from dreampods.providers.runpod.types import BillingFilter, BillingRecord, PodCreateParams, PodUpdateParams


def capacity_error(message: str = "There are no longer any instances available") -> ProviderError:
    return ProviderError(message, status=500, kind=ProviderErrorKind.CAPACITY)


def auth_error() -> ProviderError:
    return ProviderError("Unauthorized", status=401, kind=ProviderErrorKind.AUTH)


class CallLog(list[tuple[Any, ...]]):
    """Ordered record of every fake call, shared by provider and consumer."""

    def names(self) -> list[str]:
        return [c[0] for c in self]

    def index(self, *call: Any) -> int:  # type: ignore[override]
        for i, c in enumerate(self):
            if c[: len(call)] == call:
                return i
        raise ValueError(f"{call} not called; calls: {list(self)}")

    def count(self, name: str) -> int:  # type: ignore[override]
        return sum(1 for c in self if c[0] == name)


class FakeProvider:
    """In-memory ResourceProvider.

    ``start_errors`` / ``create_errors`` are consumed front to back, one per
    call; ``always_fail_start`` raises on every start.
    """

    def __init__(self, calls: CallLog) -> None:
        self.calls = calls
        self.pods: dict[str, PodRecord] = {}
        self.start_errors: list[Exception] = []
        self.create_errors: list[Exception] = []
        self.always_fail_start: Exception | None = None
        self.stop_errors: dict[str, Exception] = {}
        self.delete_errors: dict[str, Exception] = {}
        self.create_status = PodStatus.RUNNING
        self.created: list[PodCreateParams] = []
        self.billing: list[BillingRecord] = []
        self.billing_queries: list[BillingFilter] = []
        self.closed = False
        self._next_id = 0

    def add_pod(self, name: str, status: PodStatus = PodStatus.EXITED, **kwargs: Any) -> PodRecord:
        self._next_id += 1
        pod = PodRecord(id=kwargs.pop("id", f"pod{self._next_id}"), name=name, status=status, **kwargs)
        self.pods[pod.id] = pod
        return pod

    async def list_pods(self) -> list[PodRecord]:
        self.calls.append(("list",))
        return list(self.pods.values())

    async def get_pod(self, pod_id: str) -> PodRecord | None:
        self.calls.append(("get", pod_id))
        return self.pods.get(pod_id)

    async def create_pod(self, params: PodCreateParams) -> PodRecord:
        self.calls.append(("create", params["name"]))
        if self.create_errors:
            raise self.create_errors.pop(0)
        self.created.append(params)
        uptime = 1 if self.create_status is PodStatus.RUNNING else 0
        return self.add_pod(params["name"], self.create_status, uptime_seconds=uptime)

    async def start_pod(self, pod_id: str) -> None:
        self.calls.append(("start", pod_id))
        if self.always_fail_start is not None:
            raise self.always_fail_start
        if self.start_errors:
            raise self.start_errors.pop(0)
        self.pods[pod_id] = replace(self.pods[pod_id], status=PodStatus.RUNNING, uptime_seconds=1)

    async def stop_pod(self, pod_id: str) -> None:
        self.calls.append(("stop", pod_id))
        if pod_id in self.stop_errors:
            raise self.stop_errors[pod_id]
        self.pods[pod_id] = replace(self.pods[pod_id], status=PodStatus.EXITED, uptime_seconds=0)

    async def delete_pod(self, pod_id: str) -> None:
        self.calls.append(("delete", pod_id))
        if pod_id in self.delete_errors:
            raise self.delete_errors[pod_id]
        self.pods.pop(pod_id, None)

    async def update_pod(self, pod_id: str, params: PodUpdateParams) -> PodRecord | None:
        self.calls.append(("update", pod_id))
        return self.pods.get(pod_id)

    async def get_billing(self, query: BillingFilter) -> list[BillingRecord]:
        self.calls.append(("billing",))
        self.billing_queries.append(query)
        return list(self.billing)

    async def close(self) -> None:
        self.closed = True


class FakeConsumer:
    def __init__(self, calls: CallLog) -> None:
        self.calls = calls
        self.healthy = True
        self.registered: list[tuple[str, Mapping[str, str] | None, str | None]] = []
        self.register_error: Exception | None = None
        self.unregister_error: Exception | None = None
        self.status: dict[str, Any] = {"status": "idle", "gpu": {"active": False}}
        self.status_error: Exception | None = None
        self.status_calls = 0
        self.closed = False

    async def register_endpoint(
        self,
        url: str,
        credentials: Mapping[str, str] | None = None,
        *,
        pod_id: str | None = None,
    ) -> dict[str, Any]:
        self.calls.append(("register", url))
        if self.register_error is not None:
            raise self.register_error
        self.registered.append((url, credentials, pod_id))
        return {"success": True}

    async def unregister_endpoint(self) -> None:
        self.calls.append(("unregister",))
        if self.unregister_error is not None:
            raise self.unregister_error

    async def probe_health(self, url: str, credentials: tuple[str, str] | None = None) -> bool:
        self.calls.append(("probe", url, credentials))
        return self.healthy

    async def get_status(self) -> dict[str, Any]:
        self.status_calls += 1
        if self.status_error is not None:
            raise self.status_error
        return dict(self.status)

    async def get_health(self) -> dict[str, Any]:
        return {"status": "ok"}

    async def close(self) -> None:
        self.closed = True


def not_found() -> ConsumerError:
    return ConsumerError("Consumer API error: 404", status=404, body="no endpoint")


@pytest.fixture
def settings() -> Settings:
    return Settings(
        api_key="test-key",
        consumer_auth_token="consumer-token",
        generation_auth_pass="comfy-pass",
        recreate_grace=0,
        health_timeout=0.05,
        health_interval=0.01,
        verify_timeout=0.05,
    )


@pytest.fixture
def calls() -> CallLog:
    return CallLog()


@pytest.fixture
def provider(calls: CallLog) -> FakeProvider:
    return FakeProvider(calls)


@pytest.fixture
def consumer(calls: CallLog) -> FakeConsumer:
    return FakeConsumer(calls)


@pytest.fixture
def dreams(settings: Settings, provider: FakeProvider, consumer: FakeConsumer) -> DreamOrchestrator:
    return DreamOrchestrator(settings, provider=provider, consumer=consumer)  # type: ignore[arg-type]
