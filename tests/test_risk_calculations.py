import math

import numpy as np
import pytest

from yieldsentry.risk import calculations as calc


def test_sharpe_uses_sample_std_of_excess_returns():
    returns = [0.01, 0.02, -0.01, 0.03, 0.00]
    expected = np.mean(returns) / np.std(returns, ddof=1)

    assert calc.sharpe_ratio(returns, risk_free_rate=0.0, periods_per_year=1) == pytest.approx(expected)


def test_sharpe_and_volatility_degrade_to_zero():
    assert calc.sharpe_ratio([0.01]) == 0.0
    assert calc.sharpe_ratio([0.5, 0.5, 0.5], risk_free_rate=0.0) == 0.0
    assert calc.volatility([]) == 0.0


def test_volatility_is_annualized():
    returns = [0.01, -0.02, 0.015, 0.0]
    assert calc.volatility(returns, periods_per_year=365) == pytest.approx(
        np.std(returns, ddof=1) * math.sqrt(365)
    )


def test_sortino_penalizes_only_downside():
    returns = [0.02, -0.01, 0.03, -0.02, 0.01]
    downside = math.sqrt((0.01 ** 2 + 0.02 ** 2) / 5)
    expected = np.mean(returns) / downside

    assert calc.sortino_ratio(returns, risk_free_rate=0.0, periods_per_year=1) == pytest.approx(expected)
    assert calc.sortino_ratio([0.01, 0.02], risk_free_rate=0.0) == 0.0


def test_historical_var_and_expected_shortfall():
    returns = [-0.05, -0.03, -0.01, 0.00, 0.02, 0.04]

    assert calc.value_at_risk(returns, 0.95) == -0.05
    assert calc.value_at_risk(returns, 0.95, time_horizon=4) == pytest.approx(-0.10)
    assert calc.expected_shortfall(returns, 0.95) == pytest.approx(-0.05)
    # floor(0.5 * 6) = 3rd smallest (0-based)
    assert calc.value_at_risk(returns, 0.5) == 0.0
    assert calc.expected_shortfall(returns, 0.5) == pytest.approx(-0.0225)
    assert calc.value_at_risk([]) == 0.0


def test_max_drawdown_depth_and_duration():
    result = calc.max_drawdown([100, 120, 90, 110, 80, 130])

    assert result.max_drawdown == pytest.approx(1 / 3)
    assert result.start_index == 1
    assert result.end_index == 4
    assert result.duration == 3
    assert calc.max_drawdown([1, 2, 3]).max_drawdown == 0.0


def test_beta_and_correlation():
    market = [0.01, -0.02, 0.03, 0.00, 0.01]
    asset = [2 * r for r in market]

    assert calc.beta(asset, market) == pytest.approx(2.0)
    assert calc.correlation(asset, market) == pytest.approx(1.0)
    assert calc.correlation(market, [-r for r in market]) == pytest.approx(-1.0)
    assert calc.beta([0.1], [0.2]) == 0.0


def test_returns_skip_zero_bases():
    assert calc.returns_from_values([100, 110, 0, 50]) == pytest.approx([0.1, -1.0])


def test_box_muller_is_standard_normal():
    draws = calc.box_muller(np.random.default_rng(7), 200_000)

    assert abs(draws.mean()) < 0.01
    assert abs(draws.std() - 1.0) < 0.01


def test_monte_carlo_is_seeded_and_ordered():
    a = calc.monte_carlo_simulation(1_000.0, 0.08, 0.3, 30, simulations=2_000, seed=11)
    b = calc.monte_carlo_simulation(1_000.0, 0.08, 0.3, 30, simulations=2_000, seed=11)

    assert a == b
    keys = ["p5", "p10", "p25", "p50", "p75", "p90", "p95", "p99"]
    assert list(a.percentiles) == keys
    values = [a.percentiles[k] for k in keys]
    assert values == sorted(values)
    assert 0.0 < a.probability_of_loss < 1.0
    assert a.expected_loss < 0


def test_portfolio_risk_concentration():
    positions = [
        {"value": 750.0, "returns": [0.01, -0.01, 0.02, 0.0]},
        {"value": 250.0, "returns": [0.0, 0.01, -0.01, 0.02], "beta": 0.5},
    ]
    out = calc.portfolio_risk(positions)

    assert out.total_value == 1_000.0
    assert out.concentration_risk == pytest.approx(0.75 ** 2 + 0.25 ** 2)
    assert out.beta == pytest.approx(0.75 * 1.0 + 0.25 * 0.5)
    assert 0.0 <= out.diversification_score <= 1.0


def test_market_regime_detection():
    assert calc.detect_market_regime([1.0] * 10).regime == "sideways"

    rising = [100 * (1.002 ** i) for i in range(120)]
    regime = calc.detect_market_regime(rising)
    assert regime.regime == "bull"
    assert regime.risk_factors == ["overvaluation", "sudden_reversal"]


def test_omega_calmar_information():
    assert calc.omega_ratio([0.02, -0.01]) == pytest.approx(2.0)
    assert calc.omega_ratio([0.01, 0.02]) == math.inf
    assert calc.calmar_ratio(0.2, -0.1) == pytest.approx(2.0)
    assert calc.information_ratio([0.02, 0.03, 0.01], [0.01, 0.01, 0.01]) == pytest.approx(1.0)
