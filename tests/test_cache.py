from __future__ import annotations

import pytest
from conftest import CallLog, FakeProvider

from dreampods.errors import ProviderError
from dreampods.infra.cache import TtlCache
from dreampods.models import PodRecord, PodStatus
from dreampods.providers.cached import LISTING_KEY, CachedProvider

pytestmark = [pytest.mark.unit]


class Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> Clock:
    return Clock()


# ─── TtlCache ────────────────────────────────────────────────────────


def test_hit_within_ttl(clock: Clock):
    cache: TtlCache[str] = TtlCache("t", 10, clock=clock)
    cache.put("k", "v")
    clock.now = 10
    assert cache.get("k") == "v"


def test_stale_entry_is_never_returned(clock: Clock):
    cache: TtlCache[str] = TtlCache("t", 10, clock=clock)
    cache.put("k", "v")
    clock.now = 10.001
    assert cache.get("k") is None
    assert len(cache) == 0


def test_invalidate_and_clear(clock: Clock):
    cache: TtlCache[int] = TtlCache("t", 10, clock=clock)
    cache.put("a", 1)
    cache.put("b", 2)
    cache.invalidate("a")
    assert "a" not in cache
    assert "b" in cache
    cache.clear()
    assert len(cache) == 0


def test_put_resets_timestamp(clock: Clock):
    cache: TtlCache[int] = TtlCache("t", 10, clock=clock)
    cache.put("k", 1)
    clock.now = 8
    cache.put("k", 2)
    assert cache.stored_at("k") == 8
    clock.now = 15
    assert cache.get("k") == 2


# ─── CachedProvider ──────────────────────────────────────────────────


@pytest.fixture
def cached(provider: FakeProvider, clock: Clock) -> CachedProvider:
    return CachedProvider(
        provider,  # type: ignore[arg-type]
        status_cache=TtlCache("status", 10, clock=clock),
        listing_cache=TtlCache("listing", 30, clock=clock),
    )


@pytest.mark.asyncio
async def test_listing_is_cached(cached: CachedProvider, provider: FakeProvider, calls: CallLog, clock: Clock):
    provider.add_pod("a")
    await cached.list_pods()
    await cached.list_pods()
    assert calls.count("list") == 1

    clock.now = 31
    await cached.list_pods()
    assert calls.count("list") == 2


@pytest.mark.asyncio
async def test_force_refresh_bypasses_cache(cached: CachedProvider, calls: CallLog):
    await cached.list_pods()
    await cached.list_pods(force_refresh=True)
    assert calls.count("list") == 2


@pytest.mark.asyncio
@pytest.mark.parametrize("operation", ["start_pod", "stop_pod", "delete_pod"])
async def test_control_calls_invalidate(
    cached: CachedProvider, provider: FakeProvider, calls: CallLog, operation: str,
):
    pod = provider.add_pod("a", PodStatus.RUNNING)
    await cached.list_pods()
    await cached.get_pod(pod.id)

    await getattr(cached, operation)(pod.id)

    assert LISTING_KEY not in cached.listing_cache
    assert pod.id not in cached.status_cache
    await cached.list_pods()
    assert calls.count("list") == 2


@pytest.mark.asyncio
async def test_update_invalidates(cached: CachedProvider, provider: FakeProvider):
    pod = provider.add_pod("a", PodStatus.RUNNING)
    await cached.get_pod(pod.id)

    await cached.update_pod(pod.id, {"imageName": "img:v2"})

    assert pod.id not in cached.status_cache
    assert LISTING_KEY not in cached.listing_cache


@pytest.mark.asyncio
async def test_failed_control_call_still_invalidates(cached: CachedProvider, provider: FakeProvider):
    pod = provider.add_pod("a", PodStatus.RUNNING)
    provider.stop_errors[pod.id] = ProviderError("nope", status=500)
    await cached.list_pods()
    await cached.get_pod(pod.id)

    with pytest.raises(ProviderError):
        await cached.stop_pod(pod.id)

    assert LISTING_KEY not in cached.listing_cache
    assert pod.id not in cached.status_cache


@pytest.mark.asyncio
async def test_read_after_stop_sees_new_state(cached: CachedProvider, provider: FakeProvider):
    pod = provider.add_pod("a", PodStatus.RUNNING)
    assert (await cached.get_pod(pod.id)).is_running

    await cached.stop_pod(pod.id)

    fresh = await cached.get_pod(pod.id)
    assert fresh is not None and fresh.status is PodStatus.EXITED


@pytest.mark.asyncio
async def test_create_invalidates_listing(cached: CachedProvider, calls: CallLog):
    assert await cached.list_pods() == []
    await cached.create_pod({"name": "new", "imageName": "img"})
    pods = await cached.list_pods()
    assert [p.name for p in pods] == ["new"]


class BrokenCache(TtlCache[PodRecord]):
    def get(self, key):
        raise RuntimeError("cache backend down")

    def put(self, key, value):
        raise RuntimeError("cache backend down")


@pytest.mark.asyncio
async def test_cache_faults_fall_through_to_provider(provider: FakeProvider, calls: CallLog):
    pod = provider.add_pod("a", PodStatus.RUNNING)
    cached = CachedProvider(
        provider,  # type: ignore[arg-type]
        status_cache=BrokenCache("status", 10),
        listing_cache=TtlCache("listing", 30),
    )

    assert await cached.get_pod(pod.id) == pod
    assert await cached.get_pod(pod.id) == pod
    assert calls.count("get") == 2


@pytest.mark.asyncio
async def test_provider_errors_are_not_masked(cached: CachedProvider, provider: FakeProvider):
    error = ProviderError("upstream down", status=503)

    async def failing_list():
        raise error

    provider.list_pods = failing_list  # type: ignore[method-assign]

    with pytest.raises(ProviderError) as exc_info:
        await cached.list_pods()
    assert exc_info.value is error
