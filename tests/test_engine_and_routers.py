import asyncio
from types import SimpleNamespace

import pytest
from fastapi import HTTPException

from yieldsentry.adapters.base import BaseAdapter
from yieldsentry.config import CacheSettings, EngineSettings, ReliabilitySettings
from yieldsentry.engine import YieldEngine, default_adapters
from yieldsentry.exceptions import AdapterFetchError, InsufficientSourcesError
from yieldsentry.routers import opportunities, system
from yieldsentry.schemas import ChartPoint, Opportunity, ProtocolInfo, SyncStats


class _FakeAdapter(BaseAdapter):
    def __init__(self, name, items=None):
        super().__init__(ProtocolInfo(name=name, chain="stacks", base_url=f"http://{name}"))
        self.items = items or []

    async def list(self):
        return list(self.items)

    async def get_chart_data(self, pool_id):
        return [
            ChartPoint(timestamp="2024-01-01T00:00:00+00:00", tvl_usd=1_000_000.0, apy=10.0),
            ChartPoint(timestamp="2024-01-02T00:00:00+00:00", tvl_usd=950_000.0, apy=11.0),
            ChartPoint(timestamp="2024-01-03T00:00:00+00:00", tvl_usd=1_020_000.0, apy=9.0),
        ]


class _NoopSource:
    def __init__(self):
        self.closed = False

    async def aclose(self):
        self.closed = True


def _opp(pool, tvl, apy, exposure="stx"):
    return Opportunity(
        id=f"fake-{pool.lower()}",
        chain="stacks",
        protocol="FAKE",
        pool=pool,
        tvl_usd=tvl,
        apy=apy,
        pool_id=f"pool-{pool.lower()}",
        exposure=exposure,
    )


def _engine(tmp_path, items=None, adapter=None, reliability=None):
    settings = EngineSettings(
        cache=CacheSettings(db_url=f"sqlite:///{tmp_path / 'engine.db'}"),
        reliability=reliability or ReliabilitySettings(max_retries=1),
    )
    return YieldEngine(
        settings,
        adapters={"fake": adapter or _FakeAdapter("fake", items)},
        volume_source=_NoopSource(),
        user_source=_NoopSource(),
    )


def _req(state):
    return SimpleNamespace(app=SimpleNamespace(state=state))


def test_engine_raises_no_data_when_every_source_is_empty(tmp_path):
    engine = _engine(tmp_path)

    with pytest.raises(InsufficientSourcesError) as exc:
        asyncio.run(engine.list_opportunities())
    assert str(exc.value) == "no data available"


def test_engine_lifecycle_skips_sync_without_api_keys(tmp_path):
    engine = _engine(tmp_path, [_opp("A", 10, 1)])

    async def _run():
        await engine.start()
        running = (engine.sync.is_running, engine.coordinator._probe_task.is_running)
        await engine.stop()
        return running

    assert asyncio.run(_run()) == (False, True)
    assert engine.volume_source.closed is True
    assert engine.is_running is False


def test_engine_risk_and_detail_page(tmp_path):
    items = [_opp("A", 2_000_000, 10.0), _opp("B", 500_000, 12.0), _opp("C", 800_000, 30.0, exposure="btc")]
    engine = _engine(tmp_path, items)

    risk = asyncio.run(engine.get_opportunity_risk("fake-a"))
    page = asyncio.run(engine.get_detail_page("fake-a"))

    assert 0 <= risk.overall_score <= 100
    assert risk.volatility > 0
    assert page.opportunity.id == "fake-a"
    assert len(page.chart) == 3
    assert [o.id for o in page.comparable_pools] == ["fake-b"]
    assert page.social.available is False
    assert page.contract.available is False
    assert asyncio.run(engine.get_opportunity_risk("fake-zzz")) is None


def test_engine_health_and_refresh(tmp_path):
    engine = _engine(tmp_path, [_opp("A", 10, 1)])

    counts = asyncio.run(engine.refresh_all_data())
    health = engine.get_system_health()
    status = engine.get_cache_status()

    assert counts == {"fake": 1}
    assert health["reliability"]["total_adapters"] == 1
    assert health["adapters"]["fake"]["status"] == "healthy"
    assert health["sync_in_progress"] is False
    assert status["cache"]["total_entries"] >= 1


def test_list_route_maps_no_data_to_503(tmp_path):
    state = SimpleNamespace(engine=_engine(tmp_path))

    with pytest.raises(HTTPException) as exc:
        asyncio.run(opportunities.list_opportunities(_req(state), chain=None, limit=100))
    assert exc.value.status_code == 503
    assert exc.value.detail == "no data available"


def test_list_route_filters_and_limits(tmp_path):
    state = SimpleNamespace(engine=_engine(tmp_path, [_opp("A", 30, 1), _opp("B", 20, 1), _opp("C", 10, 1)]))

    out = asyncio.run(opportunities.list_opportunities(_req(state), chain="STACKS", limit=2))
    assert out["count"] == 3
    assert [o.pool for o in out["opportunities"]] == ["A", "B"]

    other = asyncio.run(opportunities.list_opportunities(_req(state), chain="algorand", limit=100))
    assert other["count"] == 0


def test_detail_routes(tmp_path):
    state = SimpleNamespace(engine=_engine(tmp_path, [_opp("A", 30, 1)]))

    assert asyncio.run(opportunities.get_opportunity(_req(state), "fake-a", full=False)).pool == "A"
    page = asyncio.run(opportunities.get_opportunity(_req(state), "fake-a", full=True))
    assert page.opportunity.pool == "A"
    chart = asyncio.run(opportunities.get_opportunity_chart(_req(state), "fake-a"))
    assert chart["pool_id"] == "pool-a"
    assert len(chart["points"]) == 3

    for call in (
        opportunities.get_opportunity(_req(state), "fake-missing", full=False),
        opportunities.get_opportunity_chart(_req(state), "fake-missing"),
        opportunities.get_opportunity_risk(_req(state), "fake-missing"),
    ):
        with pytest.raises(HTTPException) as exc:
            asyncio.run(call)
        assert exc.value.status_code == 404


def test_routes_require_started_engine():
    with pytest.raises(HTTPException) as exc:
        asyncio.run(system.risk_report(_req(SimpleNamespace())))
    assert exc.value.status_code == 503


def test_alert_routes(tmp_path):
    engine = _engine(tmp_path)
    state = SimpleNamespace(engine=engine)
    alert = asyncio.run(engine.monitor.check_threshold("error_rate", 0.5))

    listed = asyncio.run(system.active_alerts(_req(state)))
    assert listed["count"] == 1

    out = asyncio.run(system.acknowledge_alert(_req(state), alert.id))
    assert out == {"status": "acknowledged", "id": alert.id}
    assert asyncio.run(system.active_alerts(_req(state)))["count"] == 0

    with pytest.raises(HTTPException) as exc:
        asyncio.run(system.acknowledge_alert(_req(state), "alert_missing"))
    assert exc.value.status_code == 404


def test_stats_refresh_and_sync_routes(tmp_path, monkeypatch):
    engine = _engine(tmp_path, [_opp("A", 30, 2), _opp("B", 10, 4)])
    state = SimpleNamespace(engine=engine)

    async def _fake_sync():
        return SyncStats(successful_syncs=1, protocols_updated=3)

    monkeypatch.setattr(engine.sync, "force_sync", _fake_sync)

    stats = asyncio.run(opportunities.get_stats(_req(state)))
    refreshed = asyncio.run(opportunities.refresh(_req(state)))
    synced = asyncio.run(system.force_sync(_req(state)))
    health = asyncio.run(system.system_health(_req(state)))
    report = asyncio.run(system.risk_report(_req(state)))

    assert stats.total_opportunities == 2
    assert stats.avg_apy == 3.0
    assert refreshed == {"status": "refreshed", "adapters": {"fake": 2}}
    assert synced.protocols_updated == 3
    assert health["reliability"]["overall_health"] == "healthy"
    assert "overall_risk_score" in report


class _ColdStartAdapter(_FakeAdapter):
    def __init__(self, name, items=None):
        super().__init__(name, items)
        self.calls = 0

    async def list(self):
        self.calls += 1
        if self.calls == 1:
            raise AdapterFetchError(self.info.name, "cold start")
        return list(self.items)


def test_unknown_ids_leave_source_healthy(tmp_path):
    engine = _engine(tmp_path, [_opp("A", 30, 1)], reliability=ReliabilitySettings(retry_delay_sec=0))

    for i in range(6):
        assert asyncio.run(engine.get_opportunity_detail(f"fake-missing-{i}")) is None

    assert asyncio.run(engine.refresh_all_data()) == {"fake": 1}
    assert [o.pool for o in asyncio.run(engine.list_opportunities())] == ["A"]
    health = engine.get_system_health()["adapters"]["fake"]
    assert health["status"] == "healthy"
    assert health["consecutive_failures"] == 0


def test_list_uses_configured_strategy_when_fan_out_is_empty(tmp_path):
    adapter = _ColdStartAdapter("fake", [_opp("A", 30, 1)])
    engine = _engine(tmp_path, adapter=adapter)

    assert [o.pool for o in asyncio.run(engine.list_opportunities())] == ["A"]
    assert adapter.calls == 2


def test_consensus_strategy_rejects_single_source(tmp_path):
    adapter = _ColdStartAdapter("fake", [_opp("A", 30, 1)])
    engine = _engine(
        tmp_path,
        adapter=adapter,
        reliability=ReliabilitySettings(max_retries=1, aggregation_method="consensus", min_sources=2),
    )

    with pytest.raises(InsufficientSourcesError):
        asyncio.run(engine.list_opportunities())
    assert adapter.calls == 1


def test_default_source_leaves_retries_to_coordinator():
    adapters = default_adapters(EngineSettings())

    assert adapters["defillama"].info.retry_attempts == 1
