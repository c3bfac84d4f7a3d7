import asyncio
import logging
import time
from collections import Counter
from typing import Dict, Iterable, List, Optional

from yieldsentry.adapters.base import BaseAdapter
from yieldsentry.exceptions import AdapterNotFoundError, SourceTimeoutError, YieldSentryError
from yieldsentry.schemas import AdapterStats, CacheStats, ChartPoint, Opportunity
from yieldsentry.services.cache_service import CacheService
from yieldsentry.services.reliability import ReliabilityCoordinator

logger = logging.getLogger(__name__)

CACHE_PREFIX = "aggregator:"
ALL_OPPORTUNITIES_KEY = f"{CACHE_PREFIX}all-opportunities"
ADAPTER_STATS_KEY = f"{CACHE_PREFIX}adapter-stats"
OPPORTUNITIES_TTL_SEC = 5 * 60
STATS_TTL_SEC = 10 * 60
DEFAULT_ADAPTER_TIMEOUT_SEC = 15.0


def dedupe_and_sort(opportunities: Iterable[Opportunity]) -> List[Opportunity]:
    """First listing per (protocol, pool) wins, case-insensitive. Then TVL desc, APY desc."""
    seen = set()
    unique = []
    for opp in opportunities:
        key = opp.dedup_key()
        if key in seen:
            continue
        seen.add(key)
        unique.append(opp)
    unique.sort(key=lambda o: (-o.tvl_usd, -o.apy))
    return unique


class OpportunityAggregator:
    """
    Fans out to every registered adapter in parallel, merges the results
    into one deduplicated list and keeps it warm in the cache store.
    A failing adapter only shrinks the result; it never fails the read.
    """

    def __init__(
        self,
        cache: CacheService,
        adapters: Optional[Dict[str, BaseAdapter]] = None,
        coordinator: Optional[ReliabilityCoordinator] = None,
        adapter_timeout_sec: float = DEFAULT_ADAPTER_TIMEOUT_SEC,
    ):
        self.cache = cache
        self.adapters: Dict[str, BaseAdapter] = dict(adapters or {})
        self.coordinator = coordinator
        self.adapter_timeout_sec = adapter_timeout_sec

    def register_adapter(self, key: str, adapter: BaseAdapter):
        self.adapters[key] = adapter
        if self.coordinator is not None:
            self.coordinator.register_adapter(key, adapter)

    async def _fetch_from(self, key: str) -> List[Opportunity]:
        adapter = self.adapters[key]
        if self.coordinator is not None:
            call = self.coordinator.call(key, lambda a: a.list())
        else:
            call = adapter.list()
        try:
            return await asyncio.wait_for(call, timeout=self.adapter_timeout_sec)
        except asyncio.TimeoutError:
            raise SourceTimeoutError(key, self.adapter_timeout_sec)

    async def _fetch_all(self) -> Dict[str, List[Opportunity]]:
        keys = list(self.adapters)
        results = await asyncio.gather(*(self._fetch_from(k) for k in keys), return_exceptions=True)

        by_source: Dict[str, List[Opportunity]] = {}
        for key, res in zip(keys, results):
            if isinstance(res, Exception):
                logger.error("Adapter %s failed: %s", key, res)
                by_source[key] = []
            else:
                by_source[key] = list(res)
        return by_source

    async def _merge(self, by_source: Dict[str, List[Opportunity]]) -> List[Opportunity]:
        merged = dedupe_and_sort(opp for items in by_source.values() for opp in items)
        if merged or self.coordinator is None:
            return merged
        # Fan-out came back empty: give the configured strategy one more pass
        try:
            recovered = await self.coordinator.list_opportunities()
        except YieldSentryError as e:
            logger.warning("Strategy fallback (%s) found no data: %s",
                           self.coordinator.settings.aggregation_method, e)
            return []
        return dedupe_and_sort(recovered)

    async def get_all_opportunities(self) -> List[Opportunity]:
        cached = self.cache.get(ALL_OPPORTUNITIES_KEY)
        if cached is not None:
            return [Opportunity(**item) for item in cached]

        by_source = await self._fetch_all()
        merged = await self._merge(by_source)
        logger.info("Aggregated %d opportunities from %d adapters", len(merged), len(by_source))

        # Don't pin an empty result for five minutes
        if merged:
            self.cache.set(ALL_OPPORTUNITIES_KEY, merged, OPPORTUNITIES_TTL_SEC)
        return merged

    async def get_opportunities_by_chain(self, chain: str) -> List[Opportunity]:
        return [o for o in await self.get_all_opportunities() if o.chain.lower() == chain.lower()]

    def _adapter_for_id(self, opportunity_id: str) -> BaseAdapter:
        protocol = opportunity_id.split("-", 1)[0]
        adapter = self.adapters.get(protocol)
        if adapter is None:
            raise AdapterNotFoundError(protocol)
        return adapter

    async def get_opportunity_by_id(self, opportunity_id: str) -> Optional[Opportunity]:
        try:
            protocol = opportunity_id.split("-", 1)[0]
            if self.coordinator is not None:
                if protocol in self.adapters:
                    return await self.coordinator.call(protocol, lambda a: a.detail(opportunity_id))
                # Id names a protocol rather than a source: ask sources in priority order
                return await self.coordinator.get_opportunity(opportunity_id)
            adapter = self._adapter_for_id(opportunity_id)
            return await asyncio.wait_for(adapter.detail(opportunity_id), timeout=self.adapter_timeout_sec)
        except Exception as e:
            logger.warning("Could not load opportunity %s: %s", opportunity_id, e)
            return None

    async def get_chart_data(self, pool_id: str, protocol: Optional[str] = None) -> List[ChartPoint]:
        """Chart series from the first adapter that exposes one."""
        keys = [protocol] if protocol else list(self.adapters)
        for key in keys:
            adapter = self.adapters.get(key)
            fetch_chart = getattr(adapter, "get_chart_data", None)
            if fetch_chart is None:
                continue
            try:
                points = await asyncio.wait_for(fetch_chart(pool_id), timeout=self.adapter_timeout_sec)
            except Exception as e:
                logger.warning("Chart fetch via %s failed for %s: %s", key, pool_id, e)
                continue
            if points:
                return points
        return []

    async def get_adapter_stats(self) -> AdapterStats:
        try:
            cached = self.cache.get(ADAPTER_STATS_KEY)
            if cached is not None:
                return AdapterStats(**cached)

            opportunities = await self.get_all_opportunities()
            by_source = Counter(o.source for o in opportunities)
            by_protocol = Counter(o.protocol for o in opportunities)
            total_tvl = sum(o.tvl_usd for o in opportunities)
            avg_apy = sum(o.apy for o in opportunities) / len(opportunities) if opportunities else 0.0
            stats = AdapterStats(
                total_opportunities=len(opportunities),
                by_source=dict(by_source),
                by_protocol=dict(by_protocol),
                total_tvl=total_tvl,
                avg_apy=avg_apy,
                last_update=time.time(),
            )
            self.cache.set(ADAPTER_STATS_KEY, stats, STATS_TTL_SEC)
            return stats
        except Exception as e:
            logger.error("Failed to compute adapter stats: %s", e)
            return AdapterStats()

    async def refresh_all_data(self) -> Dict[str, List[Opportunity]]:
        """Drop cached aggregates and refetch every adapter."""
        self.clear_cache()
        by_source = await self._fetch_all()
        merged = await self._merge(by_source)
        if merged:
            self.cache.set(ALL_OPPORTUNITIES_KEY, merged, OPPORTUNITIES_TTL_SEC)
        logger.info("🔄 Refreshed %d adapters", len(by_source))
        return by_source

    async def preload_cache(self):
        try:
            await self.get_all_opportunities()
            await self.get_adapter_stats()
        except Exception as e:
            logger.warning("Cache preload failed: %s", e)

    async def health_check(self) -> Dict[str, bool]:
        """Shallow probe: healthy means list() returned something."""
        keys = list(self.adapters)

        async def _probe(key: str) -> bool:
            try:
                result = await asyncio.wait_for(self.adapters[key].list(), timeout=self.adapter_timeout_sec)
            except Exception as e:
                logger.warning("Health check failed for %s: %s", key, e)
                return False
            return len(result) > 0

        results = await asyncio.gather(*(_probe(k) for k in keys))
        return dict(zip(keys, results))

    def clear_cache(self):
        self.cache.delete_prefix(CACHE_PREFIX)

    def get_cache_stats(self) -> CacheStats:
        return self.cache.get_stats()

    def get_supported_protocols(self) -> List[str]:
        return list(self.adapters)

    def get_supported_chains(self) -> List[str]:
        return sorted({a.protocol_info().chain for a in self.adapters.values()})

    def is_protocol_supported(self, protocol: str) -> bool:
        return protocol.lower() in {k.lower() for k in self.adapters}
