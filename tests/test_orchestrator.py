from __future__ import annotations

from dataclasses import replace
from typing import Any

import pytest
from conftest import CallLog, FakeConsumer, FakeProvider

from dreampods import (
    ConfigurationError,
    DreamOrchestrator,
    PipelineState,
    PodRole,
    PodStatus,
    Settings,
)
from dreampods.errors import ConsumerUnreachable
from dreampods.infra.cache import TtlCache
from dreampods.models import GENERAL

pytestmark = [pytest.mark.unit]

GEN = "dreamgen-comfyui"
ORCH = "dreamgen-backend"


class Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


# ─── Overall state ───────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_not_configured(consumer: FakeConsumer):
    dreams = DreamOrchestrator(Settings(), consumer=consumer)  # type: ignore[arg-type]

    status = await dreams.get_status()

    assert status.state is PipelineState.NOT_CONFIGURED
    assert status.pods == {PodRole.GENERATION: None, PodRole.ORCHESTRATION: None}
    with pytest.raises(ConfigurationError):
        await dreams.ensure(PodRole.GENERATION)
    with pytest.raises(ConfigurationError):
        await dreams.start_pipeline()


@pytest.mark.asyncio
async def test_idle_without_pods(dreams: DreamOrchestrator):
    status = await dreams.get_status()

    assert status.state is PipelineState.IDLE
    assert status.message == "No pods found - will create on start"


@pytest.mark.asyncio
async def test_sleeping_pods_are_idle(dreams: DreamOrchestrator, provider: FakeProvider):
    provider.add_pod(GEN)
    provider.add_pod(ORCH)

    status = await dreams.get_status()

    assert status.state is PipelineState.IDLE
    assert status.message == "Dream machine sleeping..."


@pytest.mark.asyncio
async def test_one_running_pod_is_partial(dreams: DreamOrchestrator, provider: FakeProvider):
    provider.add_pod(GEN, PodStatus.RUNNING)
    provider.add_pod(ORCH)

    assert (await dreams.get_status()).state is PipelineState.PARTIAL


@pytest.mark.asyncio
async def test_both_running_without_gpu_connection_is_starting(dreams: DreamOrchestrator, provider: FakeProvider):
    provider.add_pod(GEN, PodStatus.RUNNING)
    provider.add_pod(ORCH, PodStatus.RUNNING)

    assert (await dreams.get_status()).state is PipelineState.STARTING


@pytest.mark.asyncio
async def test_gpu_connection_means_running(
    dreams: DreamOrchestrator, provider: FakeProvider, consumer: FakeConsumer,
):
    provider.add_pod(GEN, PodStatus.RUNNING)
    provider.add_pod(ORCH, PodStatus.RUNNING)
    consumer.status = {"status": "generating", "gpu": {"active": True}}

    status = await dreams.get_status()

    assert status.state is PipelineState.RUNNING
    assert status.consumer["available"] is True


# ─── Status details ──────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_session_cost(dreams: DreamOrchestrator, provider: FakeProvider):
    provider.add_pod(GEN, PodStatus.RUNNING, uptime_seconds=7200)

    status = await dreams.get_status()

    assert status.session_cost[PodRole.GENERATION] == 0.88
    assert status.session_cost[PodRole.ORCHESTRATION] == 0.0
    assert status.total_cost == 0.88


@pytest.mark.asyncio
async def test_unreachable_consumer_is_reported(dreams: DreamOrchestrator, consumer: FakeConsumer):
    consumer.status_error = ConsumerUnreachable("http://localhost:8000")

    status = await dreams.get_status()

    assert status.consumer["available"] is False
    assert "not reachable" in status.consumer["error"]


@pytest.mark.asyncio
async def test_status_is_cache_backed(
    settings: Settings, provider: FakeProvider, consumer: FakeConsumer, calls: CallLog,
):
    clock = Clock()
    dreams = DreamOrchestrator(settings, provider=provider, consumer=consumer, clock=clock)  # type: ignore[arg-type]
    provider.add_pod(GEN, PodStatus.RUNNING)

    await dreams.get_status()
    lists, consumer_calls = calls.count("list"), consumer.status_calls
    await dreams.get_status()

    assert calls.count("list") == lists
    assert consumer.status_calls == consumer_calls

    clock.now += settings.pod_list_ttl + 1
    await dreams.get_status()

    assert calls.count("list") > lists
    assert consumer.status_calls == consumer_calls + 1


class BrokenCache(TtlCache[dict[str, Any]]):
    def get(self, key):
        raise RuntimeError("cache backend down")

    def put(self, key, value):
        raise RuntimeError("cache backend down")


@pytest.mark.asyncio
async def test_consumer_cache_faults_fall_through(dreams: DreamOrchestrator, consumer: FakeConsumer):
    dreams.state.consumer_status = BrokenCache("consumer-status", 10)

    first = await dreams.consumer_status()
    status = await dreams.get_status()

    assert first["available"] is True
    assert status.consumer["available"] is True
    assert "error" not in status.consumer
    assert consumer.status_calls == 2


@pytest.mark.asyncio
async def test_control_call_invalidates_status(dreams: DreamOrchestrator, provider: FakeProvider):
    pod = provider.add_pod(GEN, PodStatus.RUNNING)
    assert (await dreams.get_status()).pods[PodRole.GENERATION].is_running

    assert dreams.provider is not None
    await dreams.provider.stop_pod(pod.id)
    status = await dreams.get_status()

    assert status.pods[PodRole.GENERATION].status is PodStatus.EXITED


@pytest.mark.asyncio
async def test_status_includes_errors(dreams: DreamOrchestrator):
    dreams.state.ledger.record(PodRole.ORCHESTRATION, "Creation failed: boom")

    status = await dreams.get_status()

    assert status.errors[PodRole.ORCHESTRATION].message == "Creation failed: boom"
    assert status.errors[PodRole.GENERATION] is None
    assert status.errors[GENERAL] is None


# ─── Ledger, discovery, billing ──────────────────────────────────────


def test_clear_error_accepts_aliases(dreams: DreamOrchestrator):
    dreams.state.ledger.record(PodRole.GENERATION, "x")
    dreams.state.ledger.record(GENERAL, "y")

    dreams.clear_error("comfyui")
    dreams.clear_error("general")

    assert all(v is None for v in dreams.get_errors().values())


@pytest.mark.asyncio
async def test_discover_pods(dreams: DreamOrchestrator, provider: FakeProvider):
    gen = provider.add_pod(f"{GEN}-x", PodStatus.RUNNING)
    provider.add_pod("something-else")

    found = await dreams.discover_pods()

    assert found.generation == gen
    assert found.orchestration is None
    assert len(found.all_pods) == 2


@pytest.mark.asyncio
async def test_billing_query(dreams: DreamOrchestrator, provider: FakeProvider):
    provider.billing = [{"podId": "pod1", "amount": 1.25, "timeBilledMs": 3_600_000}]

    records = await dreams.get_billing("week")

    assert records == provider.billing
    query = provider.billing_queries[0]
    assert query["bucketSize"] == "day"
    assert query["startTime"] < query["endTime"]


@pytest.mark.asyncio
async def test_billing_rejects_unknown_period(dreams: DreamOrchestrator):
    with pytest.raises(ConfigurationError):
        await dreams.get_billing("decade")  # type: ignore[arg-type]


def test_secret_passthroughs(settings: Settings, provider: FakeProvider, consumer: FakeConsumer):
    dreams = DreamOrchestrator(
        replace(settings, bootstrap_token="boot"), provider=provider, consumer=consumer,  # type: ignore[arg-type]
    )

    assert dreams.pod_secrets("dreamgen", "boot") is not None
    assert dreams.secret_config_status()["has_bootstrap_token"] is True


@pytest.mark.asyncio
async def test_aclose_closes_clients(settings: Settings, provider: FakeProvider, consumer: FakeConsumer):
    async with DreamOrchestrator(settings, provider=provider, consumer=consumer):  # type: ignore[arg-type]
        pass

    assert provider.closed
    assert consumer.closed
