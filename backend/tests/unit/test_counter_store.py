import pytest

from trustguard.infra import rate_limit
from trustguard.infra.counters import InMemoryCounterStore, RedisCounterStore
from trustguard.infra.redis import redis_client


@pytest.mark.asyncio
async def test_redis_store_marker_is_set_once(fake_redis) -> None:
    store = RedisCounterStore(redis_client)
    assert await store.set("trust:marker", "1", ttl_seconds=60, only_if_absent=True) is True
    assert await store.set("trust:marker", "2", ttl_seconds=60, only_if_absent=True) is False
    assert await store.get("trust:marker") == "1"
    assert 0 < await fake_redis.ttl("trust:marker") <= 60

    await store.delete("trust:marker")
    assert await store.get("trust:marker") is None


@pytest.mark.asyncio
async def test_redis_store_increments_with_ttl(fake_redis) -> None:
    store = RedisCounterStore(redis_client)
    assert await store.incr("rl:key", ttl_seconds=120) == 1
    assert await store.incr("rl:key", ttl_seconds=120) == 2
    assert await fake_redis.ttl("rl:key") > 0


@pytest.mark.asyncio
async def test_redis_store_rolling_window(fake_redis) -> None:
    store = RedisCounterStore(redis_client)
    assert await store.record_event("burst:k", window_seconds=60, now=1000.0) == 1
    assert await store.record_event("burst:k", window_seconds=60, now=1030.0) == 2
    # the first event has left the window
    assert await store.record_event("burst:k", window_seconds=60, now=1070.0) == 2


@pytest.mark.asyncio
async def test_fixed_window_rate_limit() -> None:
    store = InMemoryCounterStore()
    results = [await rate_limit.allow(store, "write", "did:plc:a", limit=2, window_seconds=60, now=120.0) for _ in range(3)]
    assert results == [True, True, False]
    # budgets are per actor
    assert await rate_limit.allow(store, "write", "did:plc:b", limit=2, window_seconds=60, now=120.0) is True
    assert await rate_limit.allow(store, "write", "did:plc:a", limit=2, window_seconds=60, now=180.0) is True


@pytest.mark.asyncio
async def test_zero_limit_always_denies() -> None:
    assert await rate_limit.allow(InMemoryCounterStore(), "write", "did:plc:a", limit=0) is False


def test_window_key_buckets_by_window() -> None:
    assert rate_limit.window_key("write", "a", window_seconds=60, now=59.9) == "write:a:0"
    assert rate_limit.window_key("write", "a", window_seconds=60, now=60.0) == "write:a:1"


@pytest.mark.asyncio
async def test_in_memory_store_expires_values() -> None:
    now = [0.0]
    store = InMemoryCounterStore(clock=lambda: now[0])
    await store.set("k", "v", ttl_seconds=10)
    assert await store.get("k") == "v"
    now[0] = 11.0
    assert await store.get("k") is None
