import asyncio
import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from yieldsentry.config import CacheSettings
from yieldsentry.exceptions import AdapterFetchError, ConfigurationError
from yieldsentry.services.cache_service import CacheService
from yieldsentry.services.historical import BitqueryService, DAppRadarService
from yieldsentry.services.historical.bitquery import sum_volume
from yieldsentry.services.historical.dappradar import estimate_new_users, user_retention


def _cache(tmp_path):
    return CacheService(CacheSettings(db_url=f"sqlite:///{tmp_path / 'hist.db'}"))


def _day(days_ago: int) -> str:
    return (datetime.now(timezone.utc).date() - timedelta(days=days_ago)).isoformat()


def _trade(days_ago, buy, sell):
    return {"buyAmount": buy, "sellAmount": sell, "date": {"date": _day(days_ago)}}


def test_bitquery_volume_windows_and_caching(tmp_path):
    seen = []

    def handler(request: httpx.Request):
        seen.append(request)
        trades = [_trade(0, 100, 50), _trade(3, 10, 10), _trade(20, 5, 5)]
        return httpx.Response(200, json={"data": {"ethereum": {"dexTrades": trades}}})

    cache = _cache(tmp_path)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    service = BitqueryService("key-123", cache, rate_limit=6000, client=client)

    async def _run():
        first = await service.get_protocol_volume_data("tinyman")
        second = await service.get_protocol_volume_data("tinyman")
        await service.aclose()
        return first, second

    first, second = asyncio.run(_run())

    assert first.volume_24h == 150
    assert first.volume_7d == 170
    assert first.volume_30d == 180
    assert first.concentration_risk == 35.0
    assert second.volume_30d == 180
    assert len(seen) == 1
    assert seen[0].headers["X-API-KEY"] == "key-123"
    body = json.loads(seen[0].content)
    assert body["variables"]["exchange"] == "tinyman"
    assert cache.get_volume_data("tinyman", "tinyman-pool").volume_7d == 170


def test_bitquery_graphql_errors_raise_fetch_error(tmp_path):
    def handler(_request):
        return httpx.Response(200, json={"errors": [{"message": "quota exceeded"}]})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    service = BitqueryService("key", _cache(tmp_path), rate_limit=6000, client=client)

    with pytest.raises(AdapterFetchError) as exc:
        asyncio.run(service.get_protocol_volume_data("pact"))
    assert "quota exceeded" in str(exc.value)


def test_missing_api_key_is_a_configuration_error(tmp_path):
    def handler(_request):
        raise AssertionError("no request expected")

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    service = BitqueryService("", _cache(tmp_path), client=client)

    with pytest.raises(ConfigurationError):
        asyncio.run(service.get_protocol_volume_data("pact"))


def test_dappradar_user_metrics(tmp_path):
    seen = []

    def handler(request: httpx.Request):
        seen.append(request)
        return httpx.Response(
            200, json={"success": True, "data": [{"users": {"day": 100, "week": 500, "month": 1000}}]}
        )

    cache = _cache(tmp_path)
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    service = DAppRadarService("blobr", cache, rate_limit=6000, client=client)

    metrics = asyncio.run(service.get_protocol_user_metrics("pact"))

    assert metrics.unique_users_24h == 100
    assert metrics.active_wallets == 70
    assert metrics.user_retention == 50.0
    assert metrics.new_users == 50
    assert seen[0].url.path == "/dapps/pact-defi/chart"
    assert seen[0].url.params["chain"] == "algorand"
    assert seen[0].headers["X-BLOBR-KEY"] == "blobr"
    assert cache.get_user_metrics("pact").unique_users_7d == 500


def test_dappradar_http_error(tmp_path):
    def handler(_request):
        return httpx.Response(503, json={"error": "maintenance"})

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    service = DAppRadarService("blobr", _cache(tmp_path), rate_limit=6000, client=client)

    with pytest.raises(AdapterFetchError):
        asyncio.run(service.get_protocol_user_metrics("tinyman"))


def test_volume_and_user_helpers():
    trades = [_trade(0, 1, 1), {"buyAmount": 5, "sellAmount": 5, "date": None}]
    assert sum_volume(trades) == 12
    assert sum_volume(trades, since=datetime.now(timezone.utc).date() - timedelta(days=1)) == 2

    assert user_retention(900, 600) == 100.0
    assert user_retention(10, 0) == 0.0
    assert estimate_new_users(600, 1000) == 60
    assert estimate_new_users(1500, 1000) == 750
