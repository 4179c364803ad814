"""Two-pod startup and teardown ordering.

Start: clear stale registration, ensure the generation pod, register its
endpoint with the consumer, wait for it to answer health checks, then ensure
the orchestration pod. Stop runs the reverse and never gives up early.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from loguru import logger

from .config import Settings
from .consumer import ConsumerClient
from .errors import ConsumerError, DreamPodsError
from .infra.wait import wait_for_ready
from .ledger import ErrorLedger
from .models import GENERAL, LifecycleResult, PodRole, SequenceReport, SequenceStep, StepStatus
from .providers.cached import CachedProvider
from .reconciler import EnsureOptions, Reconciler
from .state import OrchestratorState
from .templates import SecretOverrides

START_STEPS = (
    "clear_registration",
    "ensure_generation",
    "register_endpoint",
    "wait_healthy",
    "ensure_orchestration",
)
STOP_STEPS = ("stop_orchestration", "unregister_endpoint", "stop_generation")


@dataclass(frozen=True, slots=True)
class StartOptions:
    secret_overrides: SecretOverrides = field(default_factory=SecretOverrides)
    use_bootstrap: bool | None = None
    generation_attempts: int = 2
    orchestration_attempts: int = 3
    health_timeout: float | None = None
    health_interval: float | None = None


class Sequencer:
    def __init__(
        self,
        settings: Settings,
        provider: CachedProvider,
        consumer: ConsumerClient,
        reconciler: Reconciler,
        state: OrchestratorState,
    ) -> None:
        self._settings = settings
        self._provider = provider
        self._consumer = consumer
        self._reconciler = reconciler
        self._state = state
        self._log = logger.bind(component="sequencer")

    @property
    def _ledger(self) -> ErrorLedger:
        return self._state.ledger

    def endpoint_url(self, pod_id: str) -> str:
        """Public URL of the generation pod, derived from its id alone."""
        return self._settings.endpoint_template.format(
            pod_id=pod_id, port=self._settings.generation_port,
        )

    # =========================================================================
    # Start
    # =========================================================================

    async def start_pipeline(self, options: StartOptions | None = None) -> SequenceReport:
        options = options or StartOptions()
        async with self._state.pipeline_lock:
            report = SequenceReport()
            self._log.info("Starting dream pipeline")

            await self._clear_registration(report)

            generation = await self._ensure_step(
                report, "ensure_generation", PodRole.GENERATION,
                EnsureOptions(
                    secret_overrides=options.secret_overrides,
                    max_recreate_attempts=options.generation_attempts,
                    use_bootstrap=options.use_bootstrap,
                ),
            )
            if generation is None:
                return report

            assert generation.pod is not None
            url = self.endpoint_url(generation.pod.id)
            password = (
                generation.auth_pass
                or options.secret_overrides.generation_auth_pass
                or self._settings.generation_auth_pass
            )
            await self._register(report, url, generation.pod.id, password)
            await self._wait_healthy(report, url, options, password)

            orchestration = await self._ensure_step(
                report, "ensure_orchestration", PodRole.ORCHESTRATION,
                EnsureOptions(
                    secret_overrides=options.secret_overrides,
                    max_recreate_attempts=options.orchestration_attempts,
                    use_bootstrap=options.use_bootstrap,
                ),
            )
            if orchestration is None:
                return report

            report.message = "Dream pipeline starting"
            self._log.info("Dream pipeline started ({n} warning(s))", n=len(report.warnings))
            return report

    async def _clear_registration(self, report: SequenceReport) -> None:
        step = report.begin("clear_registration")
        try:
            await self._consumer.unregister_endpoint()
            step.status = StepStatus.OK
        except ConsumerError as e:
            if e.status == 404:
                step.status = StepStatus.OK
                step.detail["registered"] = False
                return
            self._fail_step(report, step, f"Stale registration not cleared: {e}")
        except DreamPodsError as e:
            self._fail_step(report, step, f"Stale registration not cleared: {e}")

    async def _ensure_step(
        self,
        report: SequenceReport,
        name: str,
        role: PodRole,
        options: EnsureOptions,
    ) -> LifecycleResult | None:
        """Run ensure() as one step. The reconciler owns the role's ledger slot."""
        step = report.begin(name, role=str(role))
        try:
            result = await self._reconciler.ensure(role, options)
        except DreamPodsError as e:
            step.status = StepStatus.ERROR
            step.detail["error"] = str(e)
            report.success = False
            report.error = str(e)
            report.message = f"{role.label} pod failed to start"
            self._log.error("{step} failed: {err}", step=name, err=e)
            return None

        report.pods[role] = result
        report.warnings.extend(f"{role.label}: {w}" for w in result.warnings)
        step.status = StepStatus.OK
        step.detail.update(action=str(result.action), pod_id=result.pod_id, attempts=result.attempts)
        return result

    async def _register(
        self,
        report: SequenceReport,
        url: str,
        pod_id: str,
        password: str | None,
    ) -> None:
        step = report.begin("register_endpoint", url=url)
        credentials = (
            {"auth_user": self._settings.generation_auth_user, "auth_pass": password}
            if password else None
        )
        try:
            await self._consumer.register_endpoint(url, credentials, pod_id=pod_id)
        except DreamPodsError as e:
            self._fail_step(report, step, f"Endpoint registration failed: {e}")
            self._ledger.record(GENERAL, f"Endpoint registration failed: {e}", {"url": url})
            return
        step.status = StepStatus.OK
        self._ledger.clear(GENERAL)

    async def _wait_healthy(
        self,
        report: SequenceReport,
        url: str,
        options: StartOptions,
        password: str | None,
    ) -> None:
        timeout = options.health_timeout if options.health_timeout is not None else self._settings.health_timeout
        interval = options.health_interval if options.health_interval is not None else self._settings.health_interval
        health_url = f"{url}{self._settings.health_path}"
        step = report.begin("wait_healthy", url=health_url, timeout=timeout)

        credentials = (self._settings.generation_auth_user, password) if password else None

        try:
            await wait_for_ready(
                lambda: self._consumer.probe_health(health_url, credentials),
                bool,
                timeout=timeout,
                interval=interval,
                description="generation pod health",
            )
        except TimeoutError:
            step.status = StepStatus.TIMEOUT
            report.warnings.append(
                f"Generation pod health check timed out after {timeout:.0f}s"
                " - orchestration may fail to connect"
            )
            self._log.warning("Health check timed out for {url}", url=health_url)
            return
        step.status = StepStatus.OK

    # =========================================================================
    # Stop
    # =========================================================================

    async def stop_pipeline(self) -> SequenceReport:
        async with self._state.pipeline_lock:
            report = SequenceReport()
            self._log.info("Stopping dream pipeline")

            await self._stop_role(report, "stop_orchestration", PodRole.ORCHESTRATION)

            step = report.begin("unregister_endpoint")
            try:
                await self._consumer.unregister_endpoint()
                step.status = StepStatus.OK
            except DreamPodsError as e:
                self._fail_step(report, step, f"Endpoint unregister failed: {e}")

            await self._stop_role(report, "stop_generation", PodRole.GENERATION)

            report.message = "Dream pipeline stopped"
            self._log.info("Dream pipeline stopped ({n} warning(s))", n=len(report.warnings))
            return report

    async def _stop_role(self, report: SequenceReport, name: str, role: PodRole) -> None:
        step = report.begin(name, role=str(role))
        try:
            pod = await self._reconciler.discover(role, force_refresh=True, use_fallback_id=True)
            if pod is None:
                step.status = StepStatus.SKIPPED
                step.detail["reason"] = "no pod found"
                return
            step.detail["pod_id"] = pod.id
            await self._provider.stop_pod(pod.id)
        except DreamPodsError as e:
            self._fail_step(report, step, f"{role.label} stop failed: {e}")
            return
        step.status = StepStatus.OK

    def _fail_step(self, report: SequenceReport, step: SequenceStep, warning: str) -> None:
        step.status = StepStatus.ERROR
        step.detail["error"] = warning
        report.warnings.append(warning)
        self._log.warning(warning)
