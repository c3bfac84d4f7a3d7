import asyncio
import logging
import time
from typing import Dict, Optional

import httpx

from yieldsentry.exceptions import ConfigurationError
from yieldsentry.services.cache_service import CacheService

logger = logging.getLogger(__name__)


class HistoricalApiClient:
    """
    Shared plumbing for the historical-data APIs: httpx client, API key
    check and a simple spacing rate limit (60 / rate_limit seconds between calls).
    """

    name = "historical"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        cache: CacheService,
        rate_limit: int = 60,
        timeout_sec: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url
        self.api_key = api_key
        self.cache = cache
        self.rate_limit = max(1, rate_limit)
        self.client = client or httpx.AsyncClient(timeout=timeout_sec)
        self.request_count = 0
        self._last_request_ts = 0.0
        self._rate_lock = asyncio.Lock()

    def _headers(self) -> Dict[str, str]:
        return {}

    def _require_key(self):
        if not self.api_key:
            raise ConfigurationError(f"{self.name} API key not configured")

    async def _throttle(self):
        min_interval = 60.0 / self.rate_limit
        async with self._rate_lock:
            wait = min_interval - (time.monotonic() - self._last_request_ts)
            if wait > 0:
                await asyncio.sleep(wait)
            self._last_request_ts = time.monotonic()
            self.request_count += 1

    async def aclose(self):
        await self.client.aclose()
