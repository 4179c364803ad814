"""DreamOrchestrator: the surface the dashboard and CLI talk to.

Owns one OrchestratorState and wires the provider, consumer, reconciler and
sequencer around it.

Example:
    async with DreamOrchestrator(Settings.from_env()) as dreams:
        report = await dreams.start_pipeline()
        status = await dreams.get_status()
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any, Literal

from loguru import logger

from .config import Settings
from .consumer import ConsumerClient
from .errors import ConfigurationError, DreamPodsError
from .infra.cache import TtlCache, cache_lookup, cache_store
from .ledger import SUBJECTS
from .models import (
    ErrorRecord,
    ErrorSubject,
    LifecycleResult,
    PodRecord,
    PodRole,
    SequenceReport,
)
from .providers.base import ResourceProvider
from .providers.cached import CachedProvider
from .providers.runpod import BillingFilter, BillingRecord, RunPodClient
from .reconciler import EnsureOptions, Reconciler
from .sequencer import Sequencer, StartOptions
from .state import OrchestratorState
from .templates import TemplateRegistry

type BillingPeriod = Literal["day", "week", "month"]

_CONSUMER_STATUS_KEY = "status"
_CONSUMER_HEALTH_KEY = "health"
_PERIOD_DAYS: dict[str, int] = {"day": 1, "week": 7, "month": 30}


class PipelineState(StrEnum):
    NOT_CONFIGURED = "not_configured"
    IDLE = "idle"
    PARTIAL = "partial"
    STARTING = "starting"
    RUNNING = "running"


@dataclass(frozen=True, slots=True)
class PipelineStatus:
    state: PipelineState
    message: str
    pods: Mapping[PodRole, PodRecord | None] = field(default_factory=dict)
    consumer: Mapping[str, Any] = field(default_factory=dict)
    session_cost: Mapping[PodRole, float] = field(default_factory=dict)
    errors: Mapping[ErrorSubject, ErrorRecord | None] = field(default_factory=dict)

    @property
    def total_cost(self) -> float:
        return round(sum(self.session_cost.values()), 2)


@dataclass(frozen=True, slots=True)
class Discovery:
    generation: PodRecord | None
    orchestration: PodRecord | None
    all_pods: list[PodRecord]


class DreamOrchestrator:
    def __init__(
        self,
        settings: Settings,
        *,
        provider: ResourceProvider | None = None,
        consumer: ConsumerClient | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings
        self.templates = TemplateRegistry.from_settings(settings)
        self.state = OrchestratorState.from_settings(settings, clock=clock)
        self.consumer = consumer or ConsumerClient(
            settings.consumer_url, settings.consumer_auth_token, timeout=settings.request_timeout,
        )
        self._log = logger.bind(component="orchestrator")

        if provider is None and settings.configured:
            provider = RunPodClient(settings.api_key, timeout=settings.request_timeout)

        self.provider: CachedProvider | None = None
        self._reconciler: Reconciler | None = None
        self._sequencer: Sequencer | None = None
        if provider is not None:
            self.provider = CachedProvider(
                provider,
                status_cache=self.state.pod_status,
                listing_cache=self.state.pod_listing,
            )
            self._reconciler = Reconciler(settings, self.provider, self.templates, self.state)
            self._sequencer = Sequencer(
                settings, self.provider, self.consumer, self._reconciler, self.state,
            )

    async def __aenter__(self) -> DreamOrchestrator:
        return self

    async def __aexit__(self, *_args: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self.provider is not None:
            await self.provider.close()
        await self.consumer.close()

    @property
    def configured(self) -> bool:
        return self.provider is not None

    def _require_provider(self) -> CachedProvider:
        if self.provider is None:
            self.settings.require_api_key()
            raise ConfigurationError("No resource provider configured")
        return self.provider

    @property
    def reconciler(self) -> Reconciler:
        self._require_provider()
        assert self._reconciler is not None
        return self._reconciler

    @property
    def sequencer(self) -> Sequencer:
        self._require_provider()
        assert self._sequencer is not None
        return self._sequencer

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def ensure(self, role: PodRole | str, options: EnsureOptions | None = None) -> LifecycleResult:
        return await self.reconciler.ensure(PodRole.parse(role), options)

    async def start_pipeline(self, options: StartOptions | None = None) -> SequenceReport:
        return await self.sequencer.start_pipeline(options)

    async def stop_pipeline(self) -> SequenceReport:
        return await self.sequencer.stop_pipeline()

    async def discover_pods(self) -> Discovery:
        pods = await self._require_provider().list_pods(force_refresh=True)
        generation, orchestration = await asyncio.gather(
            self.reconciler.discover(PodRole.GENERATION),
            self.reconciler.discover(PodRole.ORCHESTRATION),
        )
        return Discovery(generation=generation, orchestration=orchestration, all_pods=pods)

    # =========================================================================
    # Status
    # =========================================================================

    async def get_status(self) -> PipelineStatus:
        """Cache-backed snapshot of both pods, the consumer and the ledger."""
        errors = self.get_errors()
        if not self.configured:
            return PipelineStatus(
                state=PipelineState.NOT_CONFIGURED,
                message="RunPod not configured",
                pods=dict.fromkeys(PodRole),
                errors=errors,
            )

        generation, orchestration, consumer = await asyncio.gather(
            self._role_status(PodRole.GENERATION),
            self._role_status(PodRole.ORCHESTRATION),
            self.consumer_status(),
        )
        pods = {PodRole.GENERATION: generation, PodRole.ORCHESTRATION: orchestration}
        state, message = _overall_state(generation, orchestration, consumer)

        session_cost = {
            role: round((pod.uptime_seconds if pod else 0) / 3600 * self.templates[role].estimated_cost_per_hour, 2)
            for role, pod in pods.items()
        }
        return PipelineStatus(
            state=state,
            message=message,
            pods=pods,
            consumer=consumer,
            session_cost=session_cost,
            errors=errors,
        )

    async def _role_status(self, role: PodRole) -> PodRecord | None:
        assert self.provider is not None
        try:
            pod = await self.reconciler.discover(role, use_fallback_id=True)
            if pod is None:
                return None
            return await self.provider.get_pod(pod.id) or pod
        except DreamPodsError as e:
            self._log.bind(role=role).warning("Status lookup failed for {role}: {err}", role=role, err=e)
            return None

    async def consumer_status(self, *, force_refresh: bool = False) -> dict[str, Any]:
        return await self._cached_consumer_call(
            self.state.consumer_status, _CONSUMER_STATUS_KEY, self.consumer.get_status, force_refresh,
        )

    async def consumer_health(self, *, force_refresh: bool = False) -> dict[str, Any]:
        return await self._cached_consumer_call(
            self.state.consumer_health, _CONSUMER_HEALTH_KEY, self.consumer.get_health, force_refresh,
        )

    async def _cached_consumer_call(
        self,
        cache: TtlCache[dict[str, Any]],
        key: str,
        call: Callable[[], Awaitable[dict[str, Any]]],
        force_refresh: bool,
    ) -> dict[str, Any]:
        if not force_refresh and (cached := cache_lookup(cache, key)) is not None:
            return cached
        try:
            result = {"available": True, **(await call())}
        except DreamPodsError as e:
            result = {"available": False, "error": str(e)}
        cache_store(cache, key, result)
        return result

    # =========================================================================
    # Error ledger
    # =========================================================================

    def get_errors(self) -> dict[ErrorSubject, ErrorRecord | None]:
        return self.state.ledger.snapshot()

    def clear_error(self, subject: ErrorSubject | str) -> None:
        if subject not in SUBJECTS:
            subject = PodRole.parse(subject)
        self.state.ledger.clear(subject)

    # =========================================================================
    # Secrets & billing
    # =========================================================================

    def pod_secrets(self, role: PodRole | str, bootstrap_token: str) -> dict[str, str] | None:
        return self.templates.pod_secrets(role, bootstrap_token)

    def secret_config_status(self) -> dict[str, Any]:
        return self.templates.secret_config_status()

    async def get_billing(self, period: BillingPeriod = "day") -> list[BillingRecord]:
        """Raw per-pod billing records for the trailing period."""
        if period not in _PERIOD_DAYS:
            raise ConfigurationError(f"Unknown billing period: {period!r}")
        provider = self._require_provider()
        end = datetime.now(UTC)
        query: BillingFilter = {
            "bucketSize": "hour" if period == "day" else "day",
            "startTime": (end - timedelta(days=_PERIOD_DAYS[period])).isoformat(),
            "endTime": end.isoformat(),
        }
        return await provider.get_billing(query)


def _overall_state(
    generation: PodRecord | None,
    orchestration: PodRecord | None,
    consumer: Mapping[str, Any],
) -> tuple[PipelineState, str]:
    gpu = consumer.get("gpu") or {}
    connected = bool(consumer.get("available")) and isinstance(gpu, Mapping) and bool(gpu.get("active"))
    running = [pod is not None and pod.is_running for pod in (generation, orchestration)]

    if generation is None and orchestration is None:
        return PipelineState.IDLE, "No pods found - will create on start"
    if connected:
        return PipelineState.RUNNING, "Dreams flowing..."
    if all(running):
        return PipelineState.STARTING, "Pods running, waiting for connection..."
    if any(running):
        return PipelineState.PARTIAL, "One pod running"
    return PipelineState.IDLE, "Dream machine sleeping..."
