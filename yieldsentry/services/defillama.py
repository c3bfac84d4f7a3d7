import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

import aiohttp

from yieldsentry.exceptions import AdapterFetchError, DataTransformError
from yieldsentry.schemas import ChartPoint

logger = logging.getLogger(__name__)

YIELDS_BASE_URL = "https://yields.llama.fi"
PROTOCOL_BASE_URL = "https://api.llama.fi"
HEADERS = {
    "Accept": "application/json",
    "User-Agent": "YieldSentry/0.1",
}


def _num(*values: Any) -> float:
    for value in values:
        if value is None:
            continue
        try:
            return float(value)
        except (TypeError, ValueError):
            continue
    return 0.0


class DefiLlamaClient:
    """
    Thin async client for the DefiLlama yields + protocol APIs.
    """

    def __init__(self, timeout_sec: float = 10.0):
        self.timeout_sec = timeout_sec

    async def _get_json(self, url: str) -> Any:
        timeout = aiohttp.ClientTimeout(total=self.timeout_sec)
        try:
            async with aiohttp.ClientSession(timeout=timeout, headers=HEADERS) as session:
                async with session.get(url) as resp:
                    if resp.status != 200:
                        raise AdapterFetchError("DefiLlama", f"HTTP {resp.status} for {url}")
                    return await resp.json(content_type=None)
        except aiohttp.ClientError as e:
            raise AdapterFetchError("DefiLlama", str(e)) from e

    async def get_pools(self) -> List[Dict[str, Any]]:
        data = await self._get_json(f"{YIELDS_BASE_URL}/pools")
        if isinstance(data, dict) and data.get("status") == "success" and isinstance(data.get("data"), list):
            return data["data"]
        # Some mirrors return the bare array
        if isinstance(data, list):
            return data
        raise DataTransformError("DefiLlama", "invalid response format from pools API", payload=data)

    async def get_pool_chart(self, pool_id: str) -> List[ChartPoint]:
        """Historical TVL/APY for one pool. Empty list when unavailable."""
        try:
            raw = await self._get_json(f"{YIELDS_BASE_URL}/chart/{pool_id}")
        except Exception as e:
            logger.warning("DefiLlama chart fetch failed for %s: %s", pool_id, e)
            return []

        if isinstance(raw, list):
            rows = raw
        elif isinstance(raw, dict) and isinstance(raw.get("data"), list):
            rows = raw["data"]
        elif isinstance(raw, dict) and isinstance(raw.get("points"), list):
            rows = raw["points"]
        else:
            rows = []

        points = []
        for point in rows:
            if not isinstance(point, dict):
                continue
            ts = point.get("timestamp")
            if not isinstance(ts, str):
                seconds = _num(ts) / 1000 if ts is not None else datetime.now(timezone.utc).timestamp()
                ts = datetime.fromtimestamp(seconds, tz=timezone.utc).isoformat()
            points.append(
                ChartPoint(
                    timestamp=ts,
                    tvl_usd=_num(point.get("tvlUsd"), point.get("tvl_usd")),
                    apy=_num(point.get("apy"), point.get("apr"), point.get("apyBase")),
                    apy_base=_num(point.get("apyBase")),
                    apy_reward=_num(point.get("apyReward")),
                )
            )
        return points

    async def get_protocol(self, slug: str) -> Dict[str, Any]:
        """Protocol metadata. Falls back to a minimal record if the API fails."""
        try:
            data = await self._get_json(f"{PROTOCOL_BASE_URL}/protocol/{slug}")
            if not isinstance(data, dict):
                raise DataTransformError("DefiLlama", "protocol payload is not an object", payload=data)
            return {
                "id": data.get("id") or slug,
                "name": data.get("name") or slug,
                "slug": data.get("slug") or slug,
                "logo": data.get("logo") or "",
                "url": data.get("url") or "",
                "description": data.get("description") or "",
                "category": data.get("category") or "",
                "chains": data.get("chains") or [],
                "audits": data.get("audits") or "",
                "twitter": data.get("twitter") or "",
                "tvl": data.get("tvl") or 0,
            }
        except Exception as e:
            logger.warning("Error fetching protocol %s, using defaults: %s", slug, e)
            return {
                "id": slug,
                "name": slug.upper(),
                "slug": slug,
                "logo": "",
                "url": "",
                "description": "",
                "category": "",
                "chains": [],
                "audits": "",
                "twitter": "",
                "tvl": 0,
            }
