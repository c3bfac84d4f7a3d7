import logging
import time
from typing import Any, Dict, Optional

import httpx

from yieldsentry.exceptions import AdapterFetchError, DataTransformError
from yieldsentry.schemas import UserMetrics
from yieldsentry.services.cache_service import USER_METRICS_TTL_SEC, CacheKeys, CacheService
from yieldsentry.services.historical.base import HistoricalApiClient

logger = logging.getLogger(__name__)

DAPPRADAR_URL = "https://api.dappradar.com"

DAPP_IDS = {
    "folks-finance": "folks-finance-algorand",
    "tinyman": "tinyman",
    "pact": "pact-defi",
}

# Share of daily users counted as active wallets
ACTIVE_WALLET_RATIO = 0.7
MIN_GROWTH_RATE = 0.1


class DAppRadarService(HistoricalApiClient):
    """
    Per-protocol user activity from DAppRadar. Derived fields (active wallets,
    new users, retention) are estimates computed from the day/week/month counts.
    """

    name = "DAppRadar"

    def __init__(
        self,
        api_key: str,
        cache: CacheService,
        chain: str = "algorand",
        rate_limit: int = 30,
        timeout_sec: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(DAPPRADAR_URL, api_key, cache, rate_limit, timeout_sec, client)
        self.chain = chain

    def _headers(self) -> Dict[str, str]:
        return {"X-BLOBR-KEY": self.api_key}

    async def get_protocol_user_metrics(self, protocol: str) -> UserMetrics:
        cache_key = CacheKeys.user_metrics(protocol)
        cached = self.cache.get(cache_key)
        if cached is not None:
            logger.debug("🎯 Cache hit for user metrics: %s", protocol)
            return UserMetrics(**cached)

        users = await self._fetch_users(protocol)
        day, week, month = users["day"], users["week"], users["month"]
        data = UserMetrics(
            protocol=protocol,
            unique_users_24h=day,
            unique_users_7d=week,
            unique_users_30d=month,
            active_wallets=int(day * ACTIVE_WALLET_RATIO),
            new_users=estimate_new_users(week, month),
            user_retention=user_retention(week, month),
            timestamp=time.time(),
        )

        self.cache.set(cache_key, data, USER_METRICS_TTL_SEC)
        self.cache.set_user_metrics(protocol, data)
        logger.info("🚀 Fetched user metrics for %s (24h users=%d)", protocol, day)
        return data

    async def _fetch_users(self, protocol: str) -> Dict[str, int]:
        self._require_key()
        await self._throttle()
        dapp_id = DAPP_IDS.get(protocol.lower(), protocol.lower())
        url = f"{self.base_url}/dapps/{dapp_id}/chart"
        try:
            response = await self.client.get(
                url, params={"chain": self.chain, "range": "30d"}, headers=self._headers()
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as e:
            raise AdapterFetchError(self.name, str(e)) from e

        if not isinstance(payload, dict):
            raise DataTransformError(self.name, "response is not an object", payload=payload)
        if payload.get("success") is False:
            raise AdapterFetchError(self.name, str(payload.get("error") or "request unsuccessful"))
        rows = payload.get("data") or []
        if not isinstance(rows, list):
            raise DataTransformError(self.name, "data is not a list", payload=payload)
        users: Dict[str, Any] = (rows[0].get("users") if rows and isinstance(rows[0], dict) else None) or {}
        return {period: int(users.get(period) or 0) for period in ("day", "week", "month")}


def estimate_new_users(week: int, month: int) -> int:
    growth = week / max(month, 1) - 1
    return max(int(week * max(growth, MIN_GROWTH_RATE)), 0)


def user_retention(week: int, month: int) -> float:
    """Weekly users as a percentage of monthly users, capped at 100."""
    if month == 0:
        return 0.0
    return min(week / month * 100, 100.0)
