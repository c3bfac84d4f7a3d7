import logging
import time
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import httpx

from yieldsentry.exceptions import AdapterFetchError, DataTransformError
from yieldsentry.schemas import VolumeData
from yieldsentry.services.cache_service import VOLUME_TTL_SEC, CacheKeys, CacheService
from yieldsentry.services.historical.base import HistoricalApiClient

logger = logging.getLogger(__name__)

BITQUERY_URL = "https://streaming.bitquery.io/graphql"

# Rough share of volume held by top wallets, per protocol. No live holder data yet.
CONCENTRATION_RISK = {
    "folks-finance": 25.0,
    "tinyman": 35.0,
    "pact": 45.0,
}
DEFAULT_CONCENTRATION_RISK = 40.0

VOLUME_QUERY = """
query ($exchange: String!, $since: ISO8601DateTime) {
  ethereum(network: algorand) {
    dexTrades(
      options: {desc: "date.date", limit: 1000}
      date: {since: $since}
      exchangeName: {is: $exchange}
    ) {
      transaction { hash }
      buyAmount
      sellAmount
      date { date }
      exchange { name }
      baseCurrency { symbol }
      quoteCurrency { symbol }
    }
  }
}
"""


def pool_key(protocol: str) -> str:
    return f"{protocol}-pool"


class BitqueryService(HistoricalApiClient):
    """
    Per-protocol DEX volume from Bitquery's GraphQL API.
    """

    name = "Bitquery"

    def __init__(
        self,
        api_key: str,
        cache: CacheService,
        rate_limit: int = 60,
        timeout_sec: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(BITQUERY_URL, api_key, cache, rate_limit, timeout_sec, client)

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json", "X-API-KEY": self.api_key}

    async def get_protocol_volume_data(self, protocol: str, days: int = 30) -> VolumeData:
        pool = pool_key(protocol)
        cache_key = CacheKeys.volume(protocol, pool)
        cached = self.cache.get(cache_key)
        if cached is not None:
            logger.debug("🎯 Cache hit for volume data: %s", protocol)
            return VolumeData(**cached)

        trades = await self._fetch_trades(protocol, days)
        now = datetime.now(timezone.utc).date()
        data = VolumeData(
            protocol=protocol,
            pool=pool,
            volume_24h=sum_volume(trades, since=now - timedelta(days=1)),
            volume_7d=sum_volume(trades, since=now - timedelta(days=7)),
            volume_30d=sum_volume(trades),
            concentration_risk=CONCENTRATION_RISK.get(protocol, DEFAULT_CONCENTRATION_RISK),
            timestamp=time.time(),
        )

        self.cache.set(cache_key, data, VOLUME_TTL_SEC)
        self.cache.set_volume_data(protocol, pool, data)
        logger.info("🚀 Fetched volume data for %s (24h=%.0f)", protocol, data.volume_24h)
        return data

    async def _fetch_trades(self, protocol: str, days: int) -> List[Dict[str, Any]]:
        self._require_key()
        await self._throttle()
        since = (datetime.now(timezone.utc) - timedelta(days=days)).date().isoformat()
        try:
            response = await self.client.post(
                self.base_url,
                json={"query": VOLUME_QUERY, "variables": {"exchange": protocol, "since": since}},
                headers=self._headers(),
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as e:
            raise AdapterFetchError(self.name, str(e)) from e

        if not isinstance(payload, dict):
            raise DataTransformError(self.name, "response is not an object", payload=payload)
        if payload.get("errors"):
            raise AdapterFetchError(self.name, "; ".join(str(err.get("message")) for err in payload["errors"]))
        trades = ((payload.get("data") or {}).get("ethereum") or {}).get("dexTrades")
        if trades is None:
            return []
        if not isinstance(trades, list):
            raise DataTransformError(self.name, "dexTrades is not a list", payload=payload)
        return trades


def sum_volume(trades: List[Dict[str, Any]], since: Optional[date] = None) -> float:
    """Buy + sell amounts of trades strictly after `since` (all trades if None)."""
    total = 0.0
    for trade in trades:
        if since is not None:
            try:
                trade_day = date.fromisoformat(str(trade["date"]["date"])[:10])
            except (KeyError, TypeError, ValueError):
                continue
            if trade_day <= since:
                continue
        total += float(trade.get("buyAmount") or 0) + float(trade.get("sellAmount") or 0)
    return total
