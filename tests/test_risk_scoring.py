import pytest

from yieldsentry.risk.scoring import (
    RiskWeights,
    assess_opportunity,
    calculate_overall_risk_score,
    categorize_risk,
    liquidity_score,
)
from yieldsentry.schemas import CategoryScores, ChartPoint, Opportunity


def _opp(**overrides):
    fields = dict(id="defillama-alex-stx-usda", chain="stacks", protocol="ALEX", pool="STX-USDA",
                  tvl_usd=2_000_000.0, apy=12.0, risk="low", il_risk="high")
    fields.update(overrides)
    return Opportunity(**fields)


def test_weights_must_sum_to_one():
    RiskWeights(impermanent_loss=0.2, smart_contract=0.2, liquidity=0.2, market=0.2, protocol=0.2)
    with pytest.raises(ValueError):
        RiskWeights(impermanent_loss=0.5)


def test_overall_score_is_weighted_and_clamped():
    assert calculate_overall_risk_score(CategoryScores()) == 0.0
    full = CategoryScores(impermanent_loss=100, smart_contract=100, liquidity=100, market=100, protocol=100)
    assert calculate_overall_risk_score(full) == 100.0
    over = CategoryScores(impermanent_loss=500, smart_contract=500, liquidity=500, market=500, protocol=500)
    assert calculate_overall_risk_score(over) == 100.0

    only_contract = CategoryScores(smart_contract=100)
    assert calculate_overall_risk_score(only_contract) == 30.0


def test_category_boundaries():
    assert categorize_risk(0) == "low"
    assert categorize_risk(25) == "low"
    assert categorize_risk(25.01) == "medium"
    assert categorize_risk(50) == "medium"
    assert categorize_risk(75) == "high"
    assert categorize_risk(75.01) == "critical"


def test_liquidity_score_decreases_with_depth():
    assert liquidity_score(0) == 100.0
    assert liquidity_score(1_000_000_000) == pytest.approx(0.0)
    assert liquidity_score(1_000) > liquidity_score(1_000_000)


def test_assessment_without_history_uses_bucket():
    result = assess_opportunity(_opp())

    assert 0 <= result.overall_score <= 100
    assert result.scores.market == 25.0
    assert result.scores.impermanent_loss == 75.0
    assert result.volatility == 0.0
    assert result.sharpe_ratio == 0.0
    assert result.category == categorize_risk(result.overall_score)
    assert any("impermanent loss" in r for r in result.recommendations)


def test_assessment_with_tvl_history():
    tvls = [1_000_000, 1_050_000, 980_000, 1_100_000, 900_000, 1_000_000]
    history = [ChartPoint(timestamp=f"2024-01-0{i + 1}T00:00:00+00:00", tvl_usd=v) for i, v in enumerate(tvls)]

    result = assess_opportunity(_opp(il_risk="none"), history)

    assert result.volatility > 0
    assert result.scores.impermanent_loss == 0.0
    assert 0 <= result.scores.market <= 100
    assert result.max_drawdown == pytest.approx(200_000 / 1_100_000)
    assert result.value_at_risk < 0
