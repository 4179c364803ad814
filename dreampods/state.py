"""Process-wide mutable state, owned by one orchestrator instance."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .config import Settings
from .infra.cache import TtlCache
from .ledger import ErrorLedger
from .models import PodRecord, PodRole


@dataclass
class OrchestratorState:
    """Caches, error ledger and locks shared by every component.

    ``role_locks`` serialise ensure() per role; ``pipeline_lock`` serialises
    whole start/stop sequences. Both are in-process only.
    """

    pod_status: TtlCache[PodRecord]
    pod_listing: TtlCache[list[PodRecord]]
    consumer_status: TtlCache[dict[str, Any]]
    consumer_health: TtlCache[dict[str, Any]]
    ledger: ErrorLedger = field(default_factory=ErrorLedger)
    role_locks: dict[PodRole, asyncio.Lock] = field(
        default_factory=lambda: {role: asyncio.Lock() for role in PodRole}
    )
    pipeline_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> OrchestratorState:
        return cls(
            pod_status=TtlCache("pod-status", settings.pod_status_ttl, clock=clock),
            pod_listing=TtlCache("pod-listing", settings.pod_list_ttl, clock=clock),
            consumer_status=TtlCache("consumer-status", settings.consumer_status_ttl, clock=clock),
            consumer_health=TtlCache("consumer-health", settings.consumer_health_ttl, clock=clock),
        )

    def lock_for(self, role: PodRole) -> asyncio.Lock:
        return self.role_locks[role]
