"""Resource provider contract consumed by the reconciler and sequencer."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from dreampods.models import PodRecord
from dreampods.providers.runpod.types import (
    BillingFilter,
    BillingRecord,
    PodCreateParams,
    PodUpdateParams,
)


@runtime_checkable
class ResourceProvider(Protocol):
    """Remote pod rental API.

    Every failure is raised as ``ProviderError`` with its ``kind`` set.
    Implementations do not retry control calls.
    """

    async def list_pods(self) -> list[PodRecord]: ...

    async def get_pod(self, pod_id: str) -> PodRecord | None: ...

    async def create_pod(self, params: PodCreateParams) -> PodRecord: ...

    async def start_pod(self, pod_id: str) -> None: ...

    async def stop_pod(self, pod_id: str) -> None: ...

    async def delete_pod(self, pod_id: str) -> None: ...

    async def update_pod(self, pod_id: str, params: PodUpdateParams) -> PodRecord | None: ...

    async def get_billing(self, query: BillingFilter) -> list[BillingRecord]: ...

    async def close(self) -> None: ...
