import logging
from typing import List, Optional

from yieldsentry.risk.scoring import RiskWeights, assess_opportunity
from yieldsentry.schemas import ContractInfo, DetailPage, Opportunity, SocialMetrics
from yieldsentry.services.aggregator import OpportunityAggregator

logger = logging.getLogger(__name__)

MAX_COMPARABLE_POOLS = 5


class AdvancedDetailProvider:
    """
    Builds the detail-page bundle for one opportunity: chart history, risk
    assessment and comparable pools from the aggregated list.

    Social metrics and contract/audit info have no data source yet. Those
    methods return defaults with `available=False` so callers can tell
    "unknown" apart from "zero".
    """

    def __init__(self, aggregator: OpportunityAggregator, weights: Optional[RiskWeights] = None):
        self.aggregator = aggregator
        self.weights = weights

    async def get_detail_page(self, opportunity_id: str) -> Optional[DetailPage]:
        opportunity = await self.aggregator.get_opportunity_by_id(opportunity_id)
        if opportunity is None:
            return None

        protocol = opportunity_id.split("-", 1)[0]
        chart = []
        if opportunity.pool_id:
            chart = await self.aggregator.get_chart_data(opportunity.pool_id, protocol=protocol)

        return DetailPage(
            opportunity=opportunity,
            chart=chart,
            risk=assess_opportunity(opportunity, chart, self.weights),
            comparable_pools=await self.get_comparable_pools(opportunity),
            social=await self.get_social_metrics(opportunity),
            contract=await self.get_contract_info(opportunity),
        )

    async def get_comparable_pools(self, opportunity: Opportunity, limit: int = MAX_COMPARABLE_POOLS) -> List[Opportunity]:
        """Same chain, same exposure type where known, closest APY first."""
        try:
            candidates = await self.aggregator.get_all_opportunities()
        except Exception as e:
            logger.warning("Comparable pool lookup failed: %s", e)
            return []

        own_key = opportunity.dedup_key()
        peers = [
            o for o in candidates
            if o.dedup_key() != own_key
            and o.chain.lower() == opportunity.chain.lower()
            and (opportunity.exposure is None or o.exposure == opportunity.exposure)
        ]
        peers.sort(key=lambda o: (abs(o.apy - opportunity.apy), -o.tvl_usd))
        return peers[:limit]

    async def get_social_metrics(self, opportunity: Opportunity) -> SocialMetrics:
        return SocialMetrics()

    async def get_contract_info(self, opportunity: Opportunity) -> ContractInfo:
        return ContractInfo()
