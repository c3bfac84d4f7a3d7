import asyncio

from yieldsentry.config import CacheSettings
from yieldsentry.schemas import Opportunity, UserMetrics, VolumeData
from yieldsentry.services.cache_service import CacheKeys, CacheService


class _Clock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self):
        return self.now


def _cache(tmp_path, clock, **overrides):
    settings = CacheSettings(db_url=f"sqlite:///{tmp_path / 'cache.db'}", **overrides)
    return CacheService(settings, clock=clock)


def test_entry_is_visible_until_strictly_past_expiry(tmp_path):
    clock = _Clock()
    cache = _cache(tmp_path, clock)
    cache.set("k", {"v": 1}, ttl_sec=10)

    clock.now = 1_010.0
    assert cache.get("k") == {"v": 1}

    clock.now = 1_010.001
    assert cache.get("k") is None
    # Lazily removed on the expired read
    assert cache.get_stats().total_entries == 0


def test_overwrite_resets_expiry_and_access_count(tmp_path):
    clock = _Clock()
    cache = _cache(tmp_path, clock)
    cache.set("k", "old", ttl_sec=10)
    cache.get("k")
    cache.get("k")

    clock.now = 1_008.0
    cache.set("k", "new", ttl_sec=10)
    clock.now = 1_015.0
    assert cache.get("k") == "new"
    assert cache.get_stats().total_entries == 1


def test_full_cache_evicts_least_recently_used(tmp_path):
    clock = _Clock()
    cache = _cache(tmp_path, clock, max_entries=5)
    for i in range(5):
        clock.now += 1
        cache.set(f"k{i}", i)

    # Touch k0 so k1 becomes the oldest access
    clock.now += 1
    assert cache.get("k0") == 0

    clock.now += 1
    cache.set("k5", 5)

    assert cache.get("k1") is None
    assert cache.get("k0") == 0
    assert cache.get("k5") == 5
    assert cache.get_stats().total_entries == 5


def test_pydantic_models_are_serialized(tmp_path):
    cache = _cache(tmp_path, _Clock())
    opp = Opportunity(id="x-p", chain="stacks", protocol="X", pool="P", tvl_usd=10.0)
    cache.set("opps", [opp])

    restored = [Opportunity(**item) for item in cache.get("opps")]
    assert restored == [opp]


def test_delete_prefix_only_touches_matching_keys(tmp_path):
    cache = _cache(tmp_path, _Clock())
    cache.set("aggregator:all", [1])
    cache.set("aggregator:stats", {})
    cache.set(CacheKeys.volume("pact", "pact-pool"), {"volume_24h": 1})

    assert cache.delete_prefix("aggregator:") == 2
    assert cache.get("aggregator:all") is None
    assert cache.get(CacheKeys.volume("pact", "pact-pool")) == {"volume_24h": 1}
    assert cache.delete("missing") is False


def test_hit_and_miss_counters(tmp_path):
    cache = _cache(tmp_path, _Clock())
    cache.set("a", 1)
    cache.get("a")
    cache.get("a")
    cache.get("b")

    stats = cache.get_stats()
    assert stats.hits == 2
    assert stats.misses == 1
    assert abs(stats.hit_rate - 2 / 3) < 1e-9


def test_specialized_tables_expire_and_clear(tmp_path):
    clock = _Clock()
    cache = _cache(tmp_path, clock)
    cache.set_volume_data("tinyman", "tinyman-pool", {"volume_24h": 10.0, "volume_7d": 70.0}, ttl_sec=60)
    cache.set_user_metrics("tinyman", UserMetrics(protocol="tinyman", unique_users_24h=5), ttl_sec=60)

    volume = cache.get_volume_data("tinyman", "tinyman-pool")
    assert isinstance(volume, VolumeData)
    assert volume.volume_7d == 70.0
    assert cache.get_user_metrics("tinyman").unique_users_24h == 5

    clock.now += 61
    assert cache.get_volume_data("tinyman", "tinyman-pool") is None

    cache.clear()
    assert cache.get_user_metrics("tinyman") is None
    assert cache.get_stats().user_metrics_entries == 0


def test_cleanup_removes_expired_rows_across_tables(tmp_path):
    clock = _Clock()
    cache = _cache(tmp_path, clock)
    cache.set("short", 1, ttl_sec=5)
    cache.set("long", 2, ttl_sec=500)
    cache.set_aggregated_metrics("algorand", {"total_volume_24h": 1.0}, ttl_sec=5)

    clock.now += 10
    assert cache.cleanup_expired() == 2
    stats = cache.get_stats()
    assert stats.total_entries == 1
    assert stats.aggregated_entries == 0


def test_cleanup_ticker_starts_and_stops(tmp_path):
    cache = _cache(tmp_path, _Clock(), cleanup_interval_sec=3600)

    async def _run():
        cache.start()
        assert cache._cleanup_task.is_running
        await cache._cleanup_task.run_once()
        await cache.stop()
        assert not cache._cleanup_task.is_running

    asyncio.run(_run())
    assert cache._cleanup_task.tick_count == 1
    cache.close()
