import logging
from dataclasses import asdict
from typing import Dict, List, Optional

from yieldsentry.adapters.advanced import AdvancedDetailProvider
from yieldsentry.adapters.base import BaseAdapter
from yieldsentry.adapters.defillama import DefiLlamaAdapter
from yieldsentry.config import EngineSettings, build_settings
from yieldsentry.exceptions import InsufficientSourcesError
from yieldsentry.risk.monitoring import RiskMonitor
from yieldsentry.risk.scoring import assess_opportunity
from yieldsentry.schemas import (
    AdapterStats,
    ChartPoint,
    DetailPage,
    Opportunity,
    RiskAlert,
    RiskAssessmentResult,
    SyncStats,
)
from yieldsentry.services.aggregator import OpportunityAggregator
from yieldsentry.services.background_sync import BackgroundSyncService
from yieldsentry.services.cache_service import CacheService
from yieldsentry.services.historical import BitqueryService, DAppRadarService
from yieldsentry.services.reliability import ReliabilityCoordinator

logger = logging.getLogger(__name__)


def default_adapters(settings: EngineSettings) -> Dict[str, BaseAdapter]:
    return {
        "defillama": DefiLlamaAdapter(
            protocol_filter=settings.defillama_protocols,
            chain=settings.defillama_chain,
            # The reliability coordinator owns retries for this source
            retry_attempts=1,
        ),
    }


class YieldEngine:
    """
    Composition root. Builds every service with explicit references and owns
    their lifecycles; no sub-service holds a reference back to the engine.
    """

    def __init__(
        self,
        settings: Optional[EngineSettings] = None,
        adapters: Optional[Dict[str, BaseAdapter]] = None,
        cache: Optional[CacheService] = None,
        volume_source: Optional[BitqueryService] = None,
        user_source: Optional[DAppRadarService] = None,
    ):
        self.settings = settings or build_settings()
        self.cache = cache or CacheService(self.settings.cache)

        adapters = adapters if adapters is not None else default_adapters(self.settings)
        reliability = self.settings.reliability
        self.coordinator = ReliabilityCoordinator(adapters, reliability)
        # Outer bound must cover every guarded attempt plus the backoff pauses between them
        retry_pauses = reliability.retry_delay_sec * (2 ** (reliability.max_retries - 1) - 1)
        self.aggregator = OpportunityAggregator(
            self.cache,
            adapters,
            coordinator=self.coordinator,
            adapter_timeout_sec=reliability.timeout_sec * reliability.max_retries + retry_pauses,
        )
        self.detail_provider = AdvancedDetailProvider(self.aggregator)

        self.volume_source = volume_source or BitqueryService(self.settings.bitquery_api_key, self.cache)
        self.user_source = user_source or DAppRadarService(
            self.settings.dappradar_api_key, self.cache, chain=self.settings.sync.chain
        )
        self.sync = BackgroundSyncService(self.cache, self.volume_source, self.user_source, self.settings.sync)
        self.monitor = RiskMonitor(self.coordinator, self.settings.risk)
        self.is_running = False

    async def start(self):
        if self.is_running:
            return
        self.is_running = True
        logger.info("🚀 YieldSentry engine starting...")
        self.cache.start()
        self.coordinator.start()
        if self.settings.bitquery_api_key and self.settings.dappradar_api_key:
            self.sync.start()
        else:
            logger.warning("⚠️ Historical API keys missing, background sync not started")
        self.monitor.start()
        logger.info("✅ YieldSentry engine online")

    async def stop(self):
        if not self.is_running:
            return
        self.is_running = False
        await self.monitor.stop()
        await self.sync.stop()
        await self.coordinator.stop()
        await self.cache.stop()
        await self.volume_source.aclose()
        await self.user_source.aclose()
        self.cache.close()
        logger.info("🛑 YieldSentry engine stopped")

    # Presentation surface -----------------------------------------------------

    async def list_opportunities(self) -> List[Opportunity]:
        opportunities = await self.aggregator.get_all_opportunities()
        if not opportunities:
            raise InsufficientSourcesError()
        return opportunities

    async def get_opportunity_detail(self, opportunity_id: str) -> Optional[Opportunity]:
        return await self.aggregator.get_opportunity_by_id(opportunity_id)

    async def get_detail_page(self, opportunity_id: str) -> Optional[DetailPage]:
        return await self.detail_provider.get_detail_page(opportunity_id)

    async def get_chart_data(self, pool_id: str) -> List[ChartPoint]:
        return await self.aggregator.get_chart_data(pool_id)

    async def get_opportunity_risk(self, opportunity_id: str) -> Optional[RiskAssessmentResult]:
        opportunity = await self.aggregator.get_opportunity_by_id(opportunity_id)
        if opportunity is None:
            return None
        history = await self.aggregator.get_chart_data(opportunity.pool_id) if opportunity.pool_id else []
        return assess_opportunity(opportunity, history)

    async def get_adapter_stats(self) -> AdapterStats:
        return await self.aggregator.get_adapter_stats()

    def get_system_health(self) -> Dict:
        reliability = self.coordinator.get_system_reliability()
        return {
            "reliability": reliability.model_dump(),
            "adapters": {name: asdict(h) for name, h in self.coordinator.get_adapter_health().items()},
            "sync": self.sync.get_stats().model_dump(),
            "sync_in_progress": self.sync.is_sync_in_progress(),
            "risk_metrics": dict(self.monitor.metrics),
        }

    def get_cache_status(self) -> Dict:
        return {
            "cache": self.cache.get_stats().model_dump(),
            "sync": self.sync.get_stats().model_dump(),
        }

    def get_active_alerts(self) -> List[RiskAlert]:
        return self.monitor.get_active_alerts()

    def acknowledge_alert(self, alert_id: str) -> bool:
        return self.monitor.acknowledge_alert(alert_id)

    def get_risk_report(self) -> Dict:
        return self.monitor.generate_risk_report()

    async def refresh_all_data(self) -> Dict[str, int]:
        results = await self.aggregator.refresh_all_data()
        return {name: len(items) for name, items in results.items()}

    async def force_sync(self) -> SyncStats:
        return await self.sync.force_sync()
