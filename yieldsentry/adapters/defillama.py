import asyncio
import logging
import re
import time
from typing import Any, Dict, List, Optional

from yieldsentry.adapters.base import BaseAdapter
from yieldsentry.schemas import ChartPoint, Opportunity, ProtocolInfo
from yieldsentry.services.defillama import DefiLlamaClient

logger = logging.getLogger(__name__)

STABLECOINS = {"USDA", "USDC", "USDT", "DAI", "XUSD"}
MAX_POOLS = 50
MIN_TVL_USD = 1000
DEFAULT_LOGOS = {
    "alex": "/logos/alex.png",
    "arkadiko": "/logos/arkadiko.png",
    "bitflow": "/logos/bitflow.png",
    "stackswap": "/logos/stackswap.png",
}
_UNSAFE_ID_CHARS = re.compile(r"[^a-z0-9-]")


class DefiLlamaAdapter(BaseAdapter):
    """
    Yield pools from DefiLlama, filtered to one chain plus a list of tracked projects.
    Opportunity ids are prefixed with `defillama-` so lookups route back here.
    """

    def __init__(
        self,
        protocol_filter: Optional[List[str]] = None,
        chain: str = "stacks",
        client: Optional[DefiLlamaClient] = None,
        retry_delay_sec: float = 1.0,
        retry_attempts: int = 3,
    ):
        super().__init__(
            ProtocolInfo(
                name="DefiLlama",
                chain=chain,
                base_url="https://yields.llama.fi",
                description="Cross-chain yield aggregator data",
                website="https://defillama.com",
                logo="/logos/defillama.png",
                supported_tokens=["STX", "USDA", "xBTC", "ALEX", "DIKO"],
                timeout_sec=10.0,
                retry_attempts=retry_attempts,
                rate_limit=60,
            )
        )
        self.protocol_filter = [p.lower() for p in (protocol_filter or ["alex", "arkadiko", "bitflow"])]
        self.chain = chain
        self.client = client or DefiLlamaClient(timeout_sec=self.info.timeout_sec)
        self.retry_delay_sec = retry_delay_sec
        self._logos: Dict[str, str] = {}

    async def list(self) -> List[Opportunity]:
        try:
            return await self.fetch_with_retry(
                self._load_opportunities,
                retries=self.info.retry_attempts,
                delay_sec=self.retry_delay_sec,
            )
        except Exception as e:
            self.handle_error(e, "list")

    async def _load_opportunities(self) -> List[Opportunity]:
        pools = await self.client.get_pools()
        relevant = [p for p in pools if self._is_relevant(p)][:MAX_POOLS]

        results = await asyncio.gather(*(self._map_pool(p) for p in relevant), return_exceptions=True)
        opportunities = []
        for pool, res in zip(relevant, results):
            if isinstance(res, Exception):
                logger.warning("Skipping DefiLlama pool %s: %s", pool.get("pool"), res)
                continue
            if res.tvl_usd > MIN_TVL_USD:
                opportunities.append(res)

        opportunities.sort(key=lambda o: o.tvl_usd, reverse=True)
        return opportunities

    def _is_relevant(self, pool: Dict[str, Any]) -> bool:
        if str(pool.get("chain") or "").lower() == self.chain.lower():
            return True
        project = str(pool.get("project") or "").lower()
        return any(p in project for p in self.protocol_filter)

    async def _map_pool(self, pool: Dict[str, Any]) -> Opportunity:
        project = str(pool["project"])
        symbol = str(pool["symbol"])
        tokens = pool.get("underlyingTokens") or [symbol]
        stable = is_stablecoin_pair(tokens)
        total_apy = float(pool.get("apy") or 0)

        return Opportunity(
            id=_UNSAFE_ID_CHARS.sub("-", f"defillama-{project}-{symbol}".lower()),
            chain=self.chain,
            protocol=project.upper(),
            pool=symbol,
            tokens=tokens,
            apr=float(pool.get("apyBase") or 0),
            apy=total_apy,
            apy_base=pool.get("apyBase"),
            apy_reward=pool.get("apyReward"),
            reward_tokens=pool.get("rewardTokens") or [],
            tvl_usd=max(0.0, float(pool.get("tvlUsd") or 0)),
            # DefiLlama reports percentages
            risk=self.calculate_risk(total_apy / 100, pool.get("tvlUsd") or 0, stable),
            source="api",
            last_updated=time.time(),
            pool_id=pool.get("pool"),
            underlying_tokens=pool.get("underlyingTokens"),
            logo_url=await self._logo_for(project),
            exposure=determine_exposure(tokens, stable),
            il_risk=pool.get("ilRisk") or calculate_il_risk(tokens),
            stablecoin=stable,
        )

    async def _logo_for(self, project: str) -> str:
        key = project.lower()
        if key not in self._logos:
            info = await self.client.get_protocol(project)
            self._logos[key] = info.get("logo") or DEFAULT_LOGOS.get(key, "/logos/default-protocol.png")
        return self._logos[key]

    async def get_chart_data(self, pool_id: str) -> List[ChartPoint]:
        try:
            return await self.client.get_pool_chart(pool_id)
        except Exception as e:
            logger.warning("Chart data unavailable for pool %s: %s", pool_id, e)
            return []

    async def get_available_chains(self) -> List[str]:
        try:
            pools = await self.client.get_pools()
        except Exception as e:
            logger.warning("Failed to fetch available chains: %s", e)
            return [self.chain.capitalize()]
        return sorted({p["chain"] for p in pools if p.get("chain")})

    async def get_protocol_stats(self) -> Dict[str, float]:
        try:
            opportunities = await self.list()
        except Exception as e:
            logger.warning("Failed to calculate protocol stats: %s", e)
            return {"total_tvl": 0.0, "pool_count": 0, "avg_apy": 0.0}
        total_tvl = sum(o.tvl_usd for o in opportunities)
        avg_apy = sum(o.apy for o in opportunities) / len(opportunities) if opportunities else 0.0
        return {"total_tvl": total_tvl, "pool_count": len(opportunities), "avg_apy": avg_apy}


def is_stablecoin_pair(tokens: List[str]) -> bool:
    return any(t.upper() in STABLECOINS for t in tokens)


def determine_exposure(tokens: List[str], stable: bool) -> str:
    if len(tokens) == 1:
        return "single"
    if stable:
        return "stablecoin"
    if any("btc" in t.lower() for t in tokens):
        return "btc"
    if any("stx" in t.lower() for t in tokens):
        return "stx"
    return "multi"


def calculate_il_risk(tokens: List[str]) -> str:
    if len(tokens) == 1:
        return "none"
    if all(t.upper() in STABLECOINS for t in tokens):
        return "low"
    return "high"
