from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest
from conftest import CallLog, FakeConsumer, FakeProvider, auth_error, capacity_error, not_found

from dreampods import DreamOrchestrator, PodRole, PodStatus, Settings, StartOptions, StepStatus
from dreampods.errors import ConsumerError, ConsumerUnreachable, ProviderError
from dreampods.models import GENERAL
from dreampods.sequencer import START_STEPS, STOP_STEPS

pytestmark = [pytest.mark.unit]

GEN = "dreamgen-comfyui"
ORCH = "dreamgen-backend"


# ─── Start ───────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_start_runs_every_step_in_order(dreams: DreamOrchestrator, calls: CallLog):
    report = await dreams.start_pipeline()

    assert report.success
    assert report.step_names == list(START_STEPS)
    assert all(s.status is StepStatus.OK for s in report.steps)
    assert set(report.pods) == {PodRole.GENERATION, PodRole.ORCHESTRATION}
    assert report.message == "Dream pipeline starting"


@pytest.mark.asyncio
async def test_start_call_ordering(dreams: DreamOrchestrator, calls: CallLog):
    await dreams.start_pipeline()

    assert calls.index("unregister") < calls.index("create", GEN)
    assert calls.index("create", GEN) < calls.index("register")
    assert calls.index("register") < calls.index("probe")
    assert calls.index("probe") < calls.index("create", ORCH)


@pytest.mark.asyncio
async def test_endpoint_is_derived_from_pod_id(dreams: DreamOrchestrator, consumer: FakeConsumer):
    report = await dreams.start_pipeline()

    pod_id = report.pods[PodRole.GENERATION].pod_id
    url, credentials, registered_id = consumer.registered[0]
    assert url == f"https://{pod_id}-8188.proxy.runpod.net"
    assert registered_id == pod_id
    assert credentials == {"auth_user": "dreamgen", "auth_pass": "comfy-pass"}
    assert report.step("wait_healthy").detail["url"] == f"{url}/system_stats"


@pytest.mark.asyncio
async def test_health_timeout_is_a_warning(dreams: DreamOrchestrator, consumer: FakeConsumer, calls: CallLog):
    consumer.healthy = False

    report = await dreams.start_pipeline(StartOptions(health_timeout=0.05, health_interval=0.01))

    assert report.success
    assert report.step("wait_healthy").status is StepStatus.TIMEOUT
    assert (
        "Generation pod health check timed out after 0s - orchestration may fail to connect"
        in report.warnings
    )
    assert calls.count("probe") >= 2
    assert calls.index("create", ORCH) > max(i for i, c in enumerate(calls) if c[0] == "probe")
    assert report.step("ensure_orchestration").status is StepStatus.OK


@pytest.mark.asyncio
async def test_generation_failure_stops_the_sequence(
    dreams: DreamOrchestrator, provider: FakeProvider, calls: CallLog,
):
    provider.create_errors = [auth_error()]

    report = await dreams.start_pipeline()

    assert report.success is False
    assert report.step_names == ["clear_registration", "ensure_generation"]
    assert report.step("ensure_generation").status is StepStatus.ERROR
    assert report.error == "Unauthorized"
    assert calls.count("register") == 0
    record = dreams.get_errors()[PodRole.GENERATION]
    assert record is not None and "Unauthorized" in record.message


@pytest.mark.asyncio
async def test_failed_ensure_keeps_attempt_in_ledger(dreams: DreamOrchestrator, provider: FakeProvider):
    provider.create_errors = [capacity_error(), capacity_error()]

    report = await dreams.start_pipeline()

    assert report.step("ensure_generation").status is StepStatus.ERROR
    record = dreams.get_errors()[PodRole.GENERATION]
    assert record is not None
    assert record.detail["attempt"] == 2
    assert record.message.startswith("No GPU capacity for generation after 2 attempt(s)")


@pytest.mark.asyncio
async def test_generated_password_is_used_for_registration_and_health(
    settings: Settings, provider: FakeProvider, consumer: FakeConsumer, calls: CallLog,
):
    dreams = DreamOrchestrator(
        replace(settings, generation_auth_pass=""), provider=provider, consumer=consumer,  # type: ignore[arg-type]
    )

    report = await dreams.start_pipeline()

    injected = provider.created[0]["env"]["COMFYUI_AUTH_PASS"]
    assert injected
    _, credentials, _ = consumer.registered[0]
    assert credentials == {"auth_user": "dreamgen", "auth_pass": injected}
    assert calls[calls.index("probe")][2] == ("dreamgen", injected)
    assert report.step("wait_healthy").status is StepStatus.OK
    assert "auth_pass" not in repr(report.pods[PodRole.GENERATION])


@pytest.mark.asyncio
async def test_orchestration_failure_is_reported(dreams: DreamOrchestrator, provider: FakeProvider):
    provider.add_pod(GEN, PodStatus.RUNNING)
    provider.create_errors = [capacity_error(), capacity_error(), capacity_error()]

    report = await dreams.start_pipeline()

    assert report.success is False
    assert report.step("ensure_orchestration").status is StepStatus.ERROR
    assert dreams.get_errors()[PodRole.ORCHESTRATION] is not None


@pytest.mark.asyncio
async def test_orchestration_gets_three_attempts(dreams: DreamOrchestrator, provider: FakeProvider):
    provider.add_pod(GEN, PodStatus.RUNNING)
    provider.create_errors = [capacity_error(), capacity_error()]

    report = await dreams.start_pipeline()

    assert report.success
    assert report.pods[PodRole.ORCHESTRATION].attempts == 3


@pytest.mark.asyncio
async def test_lifecycle_warnings_are_prefixed(dreams: DreamOrchestrator, provider: FakeProvider):
    provider.add_pod(GEN)
    provider.start_errors = [capacity_error()]

    report = await dreams.start_pipeline()

    assert "Generation: Attempt 1: GPU unavailable for existing pod" in report.warnings


@pytest.mark.asyncio
async def test_registration_failure_is_a_warning(dreams: DreamOrchestrator, consumer: FakeConsumer):
    consumer.register_error = ConsumerError("Consumer API error: 500", status=500)

    report = await dreams.start_pipeline()

    assert report.success
    assert report.step("register_endpoint").status is StepStatus.ERROR
    assert "Endpoint registration failed: Consumer API error: 500" in report.warnings
    assert report.step("ensure_orchestration").status is StepStatus.OK
    assert dreams.get_errors()[GENERAL] is not None


@pytest.mark.asyncio
async def test_nothing_to_clear_is_not_an_error(dreams: DreamOrchestrator, consumer: FakeConsumer):
    consumer.unregister_error = not_found()

    report = await dreams.start_pipeline()

    step = report.step("clear_registration")
    assert step.status is StepStatus.OK
    assert step.detail["registered"] is False
    assert report.warnings == []


@pytest.mark.asyncio
async def test_unreachable_consumer_during_clear_is_a_warning(dreams: DreamOrchestrator, consumer: FakeConsumer):
    consumer.unregister_error = ConsumerUnreachable("http://localhost:8000")

    report = await dreams.start_pipeline()

    assert report.success
    assert report.step("clear_registration").status is StepStatus.ERROR
    assert any(w.startswith("Stale registration not cleared") for w in report.warnings)


# ─── Stop ────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_stop_runs_in_reverse_order(dreams: DreamOrchestrator, provider: FakeProvider, calls: CallLog):
    gen = provider.add_pod(GEN, PodStatus.RUNNING)
    orch = provider.add_pod(ORCH, PodStatus.RUNNING)

    report = await dreams.stop_pipeline()

    assert report.success
    assert report.step_names == list(STOP_STEPS)
    assert calls.index("stop", orch.id) < calls.index("unregister") < calls.index("stop", gen.id)
    assert provider.pods[gen.id].status is PodStatus.EXITED
    assert provider.pods[orch.id].status is PodStatus.EXITED


@pytest.mark.asyncio
async def test_stop_is_best_effort(dreams: DreamOrchestrator, provider: FakeProvider, calls: CallLog):
    gen = provider.add_pod(GEN, PodStatus.RUNNING)
    orch = provider.add_pod(ORCH, PodStatus.RUNNING)
    provider.stop_errors[gen.id] = ProviderError("stop failed upstream", status=500)

    report = await dreams.stop_pipeline()

    assert report.success is True
    assert report.warnings == ["Generation stop failed: stop failed upstream"]
    assert report.step("stop_generation").status is StepStatus.ERROR
    assert ("unregister",) in calls
    assert ("stop", orch.id) in calls


@pytest.mark.asyncio
async def test_unregister_is_attempted_when_orchestration_stop_fails(
    dreams: DreamOrchestrator, provider: FakeProvider, consumer: FakeConsumer, calls: CallLog,
):
    gen = provider.add_pod(GEN, PodStatus.RUNNING)
    orch = provider.add_pod(ORCH, PodStatus.RUNNING)
    provider.stop_errors[orch.id] = ProviderError("boom", status=500)
    consumer.unregister_error = ConsumerError("Consumer API error: 502", status=502)

    report = await dreams.stop_pipeline()

    assert report.success
    assert len(report.warnings) == 2
    assert ("unregister",) in calls
    assert provider.pods[gen.id].status is PodStatus.EXITED


@pytest.mark.asyncio
async def test_stop_with_no_pods_skips(dreams: DreamOrchestrator, calls: CallLog):
    report = await dreams.stop_pipeline()

    assert report.success
    assert report.step("stop_orchestration").status is StepStatus.SKIPPED
    assert report.step("stop_generation").status is StepStatus.SKIPPED
    assert report.step("unregister_endpoint").status is StepStatus.OK
    assert calls.count("stop") == 0


@pytest.mark.asyncio
async def test_stop_falls_back_to_configured_ids(
    settings: Settings, provider: FakeProvider, consumer: FakeConsumer, calls: CallLog,
):
    provider.add_pod("hand-made", PodStatus.RUNNING, id="legacy-gen")
    dreams = DreamOrchestrator(
        replace(settings, generation_pod_id="legacy-gen"), provider=provider, consumer=consumer,
    )

    report = await dreams.stop_pipeline()

    assert report.step("stop_generation").detail["pod_id"] == "legacy-gen"
    assert ("stop", "legacy-gen") in calls


@pytest.mark.asyncio
async def test_start_and_stop_are_serialized(dreams: DreamOrchestrator, calls: CallLog):
    await asyncio.gather(dreams.start_pipeline(), dreams.stop_pipeline())

    assert calls.index("create", ORCH) < calls.index("stop")
