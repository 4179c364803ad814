"""Lifecycle reconciler: make a role's pod exist and run.

Every ensure() call starts from discovery; nothing carries over between
calls except the caches and the error ledger in OrchestratorState.

    Discovering -> AlreadyRunning
                -> Starting -> Started
                            -> RecreateNeeded -> Deleting -> Creating -> Created
                -> Creating -> Created

Capacity exhaustion is the only retryable failure. Each attempt either
starts the existing pod or creates a new one; an attempt that hits capacity
deletes the pod it was working on and hands over to the next attempt.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

from loguru import logger

from .config import Settings
from .errors import CapacityExhaustedError, DreamPodsError, ProviderError
from .infra.wait import wait_for_ready
from .models import EnsureAction, LifecycleResult, PodRecord, PodRole, PodStatus
from .providers.cached import CachedProvider
from .state import OrchestratorState
from .templates import AUTH_PASS_ENV, SecretOverrides, TemplateRegistry

# Statuses a freshly created pod can come back in that still need a start call.
_NEEDS_START = frozenset({PodStatus.EXITED, PodStatus.STOPPED})


@dataclass(frozen=True, slots=True)
class EnsureOptions:
    """Knobs for a single ensure() call.

    Args:
        secret_overrides: Secret values that win over Settings for this call.
        max_recreate_attempts: Total attempts (start or create) before giving up.
        verify_only: Stop the pod again once it has proven it can start.
        use_bootstrap: Force bootstrap (True) or direct (False) secret mode;
            None picks bootstrap whenever a bootstrap token is configured.
        wait_for_running: Poll until the pod reports RUNNING with uptime.
        wait_timeout: Deadline for wait_for_running, in seconds.
        wait_interval: Poll interval for wait_for_running, in seconds.
    """

    secret_overrides: SecretOverrides = field(default_factory=SecretOverrides)
    max_recreate_attempts: int = 2
    verify_only: bool = False
    use_bootstrap: bool | None = None
    wait_for_running: bool = False
    wait_timeout: float = 300.0
    wait_interval: float = 5.0


class Reconciler:
    def __init__(
        self,
        settings: Settings,
        provider: CachedProvider,
        templates: TemplateRegistry,
        state: OrchestratorState,
    ) -> None:
        self._settings = settings
        self._provider = provider
        self._templates = templates
        self._state = state

    # =========================================================================
    # Discovery
    # =========================================================================

    async def discover(
        self,
        role: PodRole,
        *,
        force_refresh: bool = False,
        use_fallback_id: bool = False,
    ) -> PodRecord | None:
        """Find the role's pod by case-insensitive name prefix.

        With ``use_fallback_id`` the configured pod id is looked up when the
        listing has no match.
        """
        prefix = self._templates[role].name.lower()
        pods = await self._provider.list_pods(force_refresh=force_refresh)
        match = next((p for p in pods if p.name and p.name.lower().startswith(prefix)), None)
        log = logger.bind(component="reconciler", role=role)

        if match is not None:
            log.debug("Discovered pod {name} ({id}) for prefix {prefix}",
                      name=match.name, id=match.id, prefix=prefix)
            return match

        fallback = self._fallback_id(role) if use_fallback_id else ""
        if fallback:
            log.debug("No pod matches {prefix}; using configured id {id}", prefix=prefix, id=fallback)
            return await self._provider.get_pod(fallback, force_refresh=force_refresh)

        log.debug("No pod found matching prefix {prefix}", prefix=prefix)
        return None

    def _fallback_id(self, role: PodRole) -> str:
        match role:
            case PodRole.GENERATION:
                return self._settings.generation_pod_id
            case PodRole.ORCHESTRATION:
                return self._settings.orchestration_pod_id

    # =========================================================================
    # Ensure
    # =========================================================================

    async def ensure(self, role: PodRole, options: EnsureOptions | None = None) -> LifecycleResult:
        """Guarantee the role's pod exists and is running (or was proven startable).

        Raises:
            CapacityExhaustedError: Every attempt hit capacity exhaustion.
            ProviderError: Any other provider failure, unchanged.
        """
        role = PodRole.parse(role)
        options = options or EnsureOptions()
        async with self._state.lock_for(role):
            return await self._ensure_locked(role, options)

    async def _ensure_locked(self, role: PodRole, options: EnsureOptions) -> LifecycleResult:
        log = logger.bind(component="reconciler", role=role)
        ledger = self._state.ledger
        result = LifecycleResult(role=role)
        max_attempts = max(1, options.max_recreate_attempts)

        log.info("Looking for existing {role} pod", role=role)
        pod = await self.discover(role)

        if pod is not None and pod.is_running:
            log.info("Pod {id} already running", id=pod.id)
            result.success = True
            result.pod = pod
            result.action = EnsureAction.VERIFIED if options.verify_only else EnsureAction.ALREADY_RUNNING
            ledger.clear(role)
            return result

        replaced = False
        last_capacity_error: ProviderError | None = None

        for attempt in range(1, max_attempts + 1):
            result.attempts = attempt
            existing = pod is not None
            try:
                if pod is None:
                    log.info("Creating new {role} pod (attempt {n})", role=role, n=attempt)
                    params = self._templates.build_create_params(
                        role, options.secret_overrides, use_bootstrap=options.use_bootstrap,
                    )
                    pod = await self._provider.create_pod(params)
                    result.auth_pass = params.get("env", {}).get(AUTH_PASS_ENV)
                    action = EnsureAction.RECREATED if replaced else EnsureAction.CREATED
                    log.info("Created pod {id} ({status})", id=pod.id, status=pod.status)
                    if pod.status in _NEEDS_START:
                        await self._provider.start_pod(pod.id)
                        pod = await self._refresh(pod)
                else:
                    log.info("Starting pod {id} (attempt {n})", id=pod.id, n=attempt)
                    await self._provider.start_pod(pod.id)
                    pod = await self._refresh(pod)
                    action = EnsureAction.STARTED
            except ProviderError as e:
                if not e.is_capacity_exhausted:
                    ledger.record(role, f"{'Start' if existing else 'Creation'} failed: {e}",
                                  {"attempt": attempt, "status": e.status, "kind": e.kind})
                    raise

                last_capacity_error = e
                target = "existing pod" if existing else "new pod"
                result.warnings.append(f"Attempt {attempt}: GPU unavailable for {target}")
                log.warning("GPU unavailable for {target} (attempt {n}): {err}",
                            target=target, n=attempt, err=e)

                more = attempt < max_attempts
                # An existing pod survives the final attempt; pods created here never do.
                if pod is not None and (more or not existing):
                    await self._delete_for_recreate(role, pod, result, attempt, e, settle=more)
                    replaced = True
                pod = None
                continue
            except DreamPodsError as e:
                ledger.record(role, f"{'Start' if existing else 'Creation'} failed: {e}", {"attempt": attempt})
                raise

            result.success = True
            result.pod = pod
            result.action = action
            break
        else:
            result.warnings.append("Max recreate attempts reached")
            error = CapacityExhaustedError(role, result.attempts, result.warnings, last_capacity_error)
            ledger.record(role, str(error), {"attempt": result.attempts, "warnings": list(result.warnings)})
            raise error

        if options.verify_only:
            await self._verify_and_stop(result)
        elif options.wait_for_running:
            await self._wait_running(result, timeout=options.wait_timeout, interval=options.wait_interval)

        ledger.clear(role)
        log.info("{role} pod {id}: {action} after {n} attempt(s)",
                 role=role, id=result.pod_id, action=result.action, n=result.attempts)
        return result

    async def _refresh(self, pod: PodRecord) -> PodRecord:
        fresh = await self._provider.get_pod(pod.id, force_refresh=True)
        return fresh if fresh is not None else pod

    async def _delete_for_recreate(
        self,
        role: PodRole,
        pod: PodRecord,
        result: LifecycleResult,
        attempt: int,
        cause: ProviderError,
        *,
        settle: bool = True,
    ) -> None:
        log = logger.bind(component="reconciler", role=role, pod_id=pod.id)
        log.info("Deleting pod {id} to recreate", id=pod.id)
        try:
            await self._provider.delete_pod(pod.id)
        except ProviderError as e:
            result.warnings.append(f"Failed to delete pod: {e}")
            error = CapacityExhaustedError(role, attempt, result.warnings, cause)
            self._state.ledger.record(role, str(error), {"attempt": attempt, "delete_error": str(e)})
            raise error from e
        if settle:
            await asyncio.sleep(self._settings.recreate_grace)

    async def _wait_running(self, result: LifecycleResult, *, timeout: float, interval: float) -> bool:
        assert result.pod is not None
        pod_id = result.pod.id
        try:
            result.pod = await wait_for_ready(
                lambda: self._provider.get_pod(pod_id, force_refresh=True),
                lambda p: p.is_running and p.uptime_seconds > 0,
                terminal_check=lambda p: p.status is PodStatus.TERMINATED,
                timeout=timeout,
                interval=interval,
                description=f"pod {pod_id}",
            )
            return True
        except TimeoutError:
            result.warnings.append(f"Pod {pod_id} did not report RUNNING within {timeout:.0f}s")
            return False
        except RuntimeError as e:
            result.warnings.append(str(e))
            return False

    async def _verify_and_stop(self, result: LifecycleResult) -> None:
        assert result.pod is not None and result.action is not None
        log = logger.bind(component="reconciler", role=result.role, pod_id=result.pod.id)
        await self._wait_running(
            result, timeout=self._settings.verify_timeout, interval=self._settings.health_interval,
        )
        try:
            await self._provider.stop_pod(result.pod.id)
            result.pod = result.pod.with_status(PodStatus.EXITED)
            log.info("Verified pod {id} can start; stopped it again", id=result.pod.id)
        except ProviderError as e:
            result.warnings.append(f"Verify stop failed: {e}")
            log.warning("Verify stop failed for {id}: {err}", id=result.pod.id, err=e)
        result.action = result.action.verified()
