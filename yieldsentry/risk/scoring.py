import math
from typing import List, Optional, Sequence

from pydantic import BaseModel, model_validator

from yieldsentry.risk import calculations
from yieldsentry.schemas import CategoryScores, ChartPoint, Opportunity, RiskAssessmentResult


class RiskWeights(BaseModel):
    impermanent_loss: float = 0.10
    smart_contract: float = 0.30
    liquidity: float = 0.25
    market: float = 0.20
    protocol: float = 0.15

    @model_validator(mode="after")
    def _check_total(self):
        total = self.impermanent_loss + self.smart_contract + self.liquidity + self.market + self.protocol
        if not math.isclose(total, 1.0, abs_tol=1e-6):
            raise ValueError(f"risk weights must sum to 1.0, got {total:.4f}")
        return self


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def calculate_overall_risk_score(scores: CategoryScores, weights: Optional[RiskWeights] = None) -> float:
    """Weighted sum of category scores, clamped to [0, 100]."""
    w = weights or RiskWeights()
    total = (
        scores.impermanent_loss * w.impermanent_loss
        + scores.smart_contract * w.smart_contract
        + scores.liquidity * w.liquidity
        + scores.market * w.market
        + scores.protocol * w.protocol
    )
    return round(_clamp(total), 2)


def categorize_risk(score: float) -> str:
    if score <= 25:
        return "low"
    if score <= 50:
        return "medium"
    if score <= 75:
        return "high"
    return "critical"


# Category inputs that no source supplies yet
UNKNOWN_AUDIT_SCORE = 50.0
DEFAULT_PROTOCOL_SCORE = 25.0

IL_SCORES = {"none": 0.0, "no": 0.0, "low": 20.0, "medium": 50.0, "high": 75.0, "yes": 75.0}
BUCKET_MARKET_SCORES = {"low": 25.0, "med": 50.0, "high": 75.0}


def liquidity_score(tvl_usd: float) -> float:
    """Deeper pools score lower. $1B+ is ~0, $1k is ~67."""
    if tvl_usd <= 1:
        return 100.0
    return _clamp(100.0 - math.log10(tvl_usd) / 9.0 * 100.0)


def assess_opportunity(
    opportunity: Opportunity,
    history: Sequence[ChartPoint] = (),
    weights: Optional[RiskWeights] = None,
) -> RiskAssessmentResult:
    """
    Score one opportunity from what the sources actually report: IL label,
    TVL depth, and TVL history. Smart-contract and protocol scores use fixed
    defaults until audit data is wired in.
    """
    tvl_series = [p.tvl_usd for p in history if p.tvl_usd > 0]
    returns = calculations.returns_from_values(tvl_series)

    if len(returns) >= 2:
        vol = calculations.volatility(returns)
        market = _clamp(vol * 50.0)
    else:
        vol = 0.0
        market = BUCKET_MARKET_SCORES.get(opportunity.risk, 50.0)

    scores = CategoryScores(
        impermanent_loss=IL_SCORES.get((opportunity.il_risk or "").lower(), 50.0),
        smart_contract=UNKNOWN_AUDIT_SCORE,
        liquidity=liquidity_score(opportunity.tvl_usd),
        market=market,
        protocol=DEFAULT_PROTOCOL_SCORE,
    )
    overall = calculate_overall_risk_score(scores, weights)
    category = categorize_risk(overall)

    return RiskAssessmentResult(
        opportunity_id=opportunity.id,
        overall_score=overall,
        category=category,
        scores=scores,
        volatility=vol,
        sharpe_ratio=calculations.sharpe_ratio(returns),
        max_drawdown=calculations.max_drawdown(tvl_series).max_drawdown,
        value_at_risk=calculations.value_at_risk(returns),
        recommendations=generate_recommendations(scores, category),
    )


def generate_recommendations(scores: CategoryScores, category: str) -> List[str]:
    out = []
    if scores.impermanent_loss > 60:
        out.append("High impermanent loss exposure; consider stablecoin or single-asset pools")
    if scores.smart_contract >= UNKNOWN_AUDIT_SCORE:
        out.append("No verified audit data; size positions conservatively")
    if scores.liquidity > 60:
        out.append("Thin liquidity; large exits may move the price")
    if scores.market > 60:
        out.append("TVL is volatile; monitor the position closely")
    if category == "critical":
        out.append("Overall risk is critical; avoid new deposits")
    return out
