"""Read-through cache in front of a ResourceProvider."""

from __future__ import annotations

from dreampods.infra.cache import TtlCache, cache_lookup, cache_store
from dreampods.models import PodRecord

from .base import ResourceProvider
from .runpod.types import BillingFilter, BillingRecord, PodCreateParams, PodUpdateParams

LISTING_KEY = "pods"


class CachedProvider:
    """Serve pod listings and pod status from TTL caches.

    Every control call drops the listing entry and the affected pod's status
    entry before it returns, whether or not the remote call succeeded. Cache
    faults are logged and bypassed; provider errors pass through untouched.
    """

    def __init__(
        self,
        inner: ResourceProvider,
        *,
        status_cache: TtlCache[PodRecord],
        listing_cache: TtlCache[list[PodRecord]],
    ) -> None:
        self.inner = inner
        self.status_cache = status_cache
        self.listing_cache = listing_cache

    def invalidate(self, pod_id: str | None = None) -> None:
        self.listing_cache.invalidate(LISTING_KEY)
        if pod_id:
            self.status_cache.invalidate(pod_id)

    # ─── Reads ───────────────────────────────────────────────────────

    async def list_pods(self, *, force_refresh: bool = False) -> list[PodRecord]:
        if not force_refresh:
            pods = cache_lookup(self.listing_cache, LISTING_KEY)
            if pods is not None:
                return list(pods)
        pods = await self.inner.list_pods()
        cache_store(self.listing_cache, LISTING_KEY, list(pods))
        return pods

    async def get_pod(self, pod_id: str, *, force_refresh: bool = False) -> PodRecord | None:
        if not force_refresh:
            pod = cache_lookup(self.status_cache, pod_id)
            if pod is not None:
                return pod
        pod = await self.inner.get_pod(pod_id)
        if pod is not None:
            cache_store(self.status_cache, pod_id, pod)
        return pod

    async def get_billing(self, query: BillingFilter) -> list[BillingRecord]:
        return await self.inner.get_billing(query)

    # ─── Control ─────────────────────────────────────────────────────

    async def create_pod(self, params: PodCreateParams) -> PodRecord:
        try:
            pod = await self.inner.create_pod(params)
        finally:
            self.invalidate()
        self.status_cache.invalidate(pod.id)
        return pod

    async def start_pod(self, pod_id: str) -> None:
        try:
            await self.inner.start_pod(pod_id)
        finally:
            self.invalidate(pod_id)

    async def stop_pod(self, pod_id: str) -> None:
        try:
            await self.inner.stop_pod(pod_id)
        finally:
            self.invalidate(pod_id)

    async def delete_pod(self, pod_id: str) -> None:
        try:
            await self.inner.delete_pod(pod_id)
        finally:
            self.invalidate(pod_id)

    async def update_pod(self, pod_id: str, params: PodUpdateParams) -> PodRecord | None:
        try:
            return await self.inner.update_pod(pod_id, params)
        finally:
            self.invalidate(pod_id)

    async def close(self) -> None:
        await self.inner.close()
