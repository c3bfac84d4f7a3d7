"""
Quantitative risk metrics over return series.

Returns are per-period simple returns (0.01 == 1%). Functions accept any
sequence of floats and degrade to 0 on too-short input rather than raising.
"""

import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np

DAYS_PER_YEAR = 365
RISK_FREE_RATE = 0.02  # annual
PERCENTILES = (0.05, 0.10, 0.25, 0.50, 0.75, 0.90, 0.95, 0.99)


@dataclass
class DrawdownResult:
    max_drawdown: float = 0.0
    duration: int = 0
    start_index: Optional[int] = None
    end_index: Optional[int] = None


@dataclass
class MonteCarloResult:
    simulations: int
    mean_return: float
    volatility: float
    percentiles: Dict[str, float]
    probability_of_loss: float
    expected_loss: float
    tail_risk: float


@dataclass
class PortfolioRisk:
    total_value: float
    volatility: float
    concentration_risk: float
    diversification_score: float
    average_correlation: float
    max_drawdown: float
    sharpe_ratio: float
    sortino_ratio: float
    var_95: float
    var_99: float
    expected_shortfall: float
    beta: float


@dataclass
class MarketRegime:
    regime: str
    confidence: float
    volatility: float = 0.0
    trend_strength: float = 0.0
    liquidity_conditions: str = "normal"
    risk_factors: List[str] = field(default_factory=list)


def _std(values: np.ndarray) -> float:
    if values.size < 2:
        return 0.0
    return float(np.std(values, ddof=1))


def returns_from_values(values: Sequence[float]) -> List[float]:
    """Period-over-period simple returns; zero-valued bases are skipped."""
    arr = np.asarray(values, dtype=float)
    if arr.size < 2:
        return []
    prev, curr = arr[:-1], arr[1:]
    mask = prev != 0
    return ((curr[mask] - prev[mask]) / prev[mask]).tolist()


def volatility(returns: Sequence[float], periods_per_year: int = DAYS_PER_YEAR) -> float:
    """Annualized sample standard deviation."""
    return _std(np.asarray(returns, dtype=float)) * math.sqrt(periods_per_year)


def sharpe_ratio(
    returns: Sequence[float],
    risk_free_rate: float = RISK_FREE_RATE,
    periods_per_year: int = DAYS_PER_YEAR,
) -> float:
    arr = np.asarray(returns, dtype=float)
    if arr.size < 2:
        return 0.0
    excess = arr - risk_free_rate / periods_per_year
    vol = _std(excess)
    if vol == 0:
        return 0.0
    return float(excess.mean() * math.sqrt(periods_per_year) / vol)


def sortino_ratio(
    returns: Sequence[float],
    risk_free_rate: float = RISK_FREE_RATE,
    target_return: float = 0.0,
    periods_per_year: int = DAYS_PER_YEAR,
) -> float:
    """
    Like Sharpe, but the denominator is the downside deviation: root mean
    square of below-target excess returns, averaged over all n periods.
    """
    arr = np.asarray(returns, dtype=float)
    if arr.size < 2:
        return 0.0
    excess = arr - risk_free_rate / periods_per_year
    downside = excess[excess < target_return] - target_return
    downside_dev = math.sqrt(float(np.sum(downside ** 2)) / arr.size)
    if downside_dev == 0:
        return 0.0
    return float(excess.mean() * math.sqrt(periods_per_year) / downside_dev)


def value_at_risk(returns: Sequence[float], confidence: float = 0.95, time_horizon: int = 1) -> float:
    """Historical VaR: the floor((1-c)*n)-th smallest return, scaled by sqrt(horizon)."""
    arr = np.sort(np.asarray(returns, dtype=float))
    if arr.size == 0:
        return 0.0
    index = min(int(math.floor((1 - confidence) * arr.size)), arr.size - 1)
    return float(arr[index] * math.sqrt(time_horizon))


def expected_shortfall(returns: Sequence[float], confidence: float = 0.95) -> float:
    """Mean of all returns at or below the one-period VaR."""
    arr = np.asarray(returns, dtype=float)
    if arr.size == 0:
        return 0.0
    tail = arr[arr <= value_at_risk(arr, confidence)]
    return float(tail.mean()) if tail.size else 0.0


def max_drawdown(values: Sequence[float]) -> DrawdownResult:
    """Worst peak-to-trough decline of a value series, as a fraction of the peak."""
    if len(values) == 0:
        return DrawdownResult()

    peak = values[0]
    peak_index = 0
    current_duration = 0
    result = DrawdownResult()
    for i in range(1, len(values)):
        value = values[i]
        if value > peak:
            peak = value
            peak_index = i
            current_duration = 0
            continue
        current_duration += 1
        drawdown = (peak - value) / peak if peak else 0.0
        if drawdown > result.max_drawdown:
            result = DrawdownResult(
                max_drawdown=drawdown,
                duration=current_duration,
                start_index=peak_index,
                end_index=i,
            )
    return result


def beta(asset_returns: Sequence[float], market_returns: Sequence[float]) -> float:
    a = np.asarray(asset_returns, dtype=float)
    m = np.asarray(market_returns, dtype=float)
    if a.size != m.size or a.size < 2:
        return 0.0
    market_var = float(np.var(m, ddof=1))
    if market_var == 0:
        return 0.0
    return float(np.cov(a, m, ddof=1)[0, 1] / market_var)


def correlation(series_a: Sequence[float], series_b: Sequence[float]) -> float:
    a = np.asarray(series_a, dtype=float)
    b = np.asarray(series_b, dtype=float)
    if a.size != b.size or a.size < 2:
        return 0.0
    da, db = a - a.mean(), b - b.mean()
    denom = math.sqrt(float(np.sum(da * da) * np.sum(db * db)))
    return float(np.sum(da * db) / denom) if denom else 0.0


def calmar_ratio(annualized_return: float, max_dd: float) -> float:
    return annualized_return / abs(max_dd) if max_dd else 0.0


def omega_ratio(returns: Sequence[float], threshold: float = 0.0) -> float:
    arr = np.asarray(returns, dtype=float)
    gains = float(np.sum(arr[arr > threshold] - threshold))
    losses = float(np.sum(threshold - arr[arr < threshold]))
    return gains / losses if losses else math.inf


def information_ratio(portfolio_returns: Sequence[float], benchmark_returns: Sequence[float]) -> float:
    p = np.asarray(portfolio_returns, dtype=float)
    b = np.asarray(benchmark_returns, dtype=float)
    if p.size != b.size or p.size < 2:
        return 0.0
    active = p - b
    tracking_error = _std(active)
    return float(active.mean() / tracking_error) if tracking_error else 0.0


def box_muller(rng: np.random.Generator, size) -> np.ndarray:
    """Standard normal draws from pairs of uniforms."""
    u1 = 1.0 - rng.random(size)  # (0, 1], keeps log finite
    u2 = rng.random(size)
    return np.sqrt(-2.0 * np.log(u1)) * np.cos(2.0 * np.pi * u2)


def monte_carlo_simulation(
    initial_value: float,
    expected_return: float,
    vol: float,
    time_horizon_days: int,
    simulations: int = 10000,
    seed: Optional[int] = None,
) -> MonteCarloResult:
    """
    Geometric Brownian motion with daily steps. `expected_return` and `vol`
    are annual figures.
    """
    rng = np.random.default_rng(seed)
    dt = 1.0 / DAYS_PER_YEAR
    shocks = box_muller(rng, (simulations, max(time_horizon_days, 0)))
    drift = (expected_return - 0.5 * vol * vol) * dt
    log_growth = np.sum(drift + vol * math.sqrt(dt) * shocks, axis=1)
    final_values = initial_value * np.exp(log_growth)
    final_returns = (final_values - initial_value) / initial_value

    ordered = np.sort(final_returns)
    n = ordered.size
    percentiles = {
        f"p{int(round(p * 100))}": float(ordered[min(int(math.floor(p * n)), n - 1)]) for p in PERCENTILES
    }

    losses = final_returns[final_returns < 0]
    final_vol = _std(final_returns)
    expected_loss = float(losses.mean()) if losses.size else 0.0
    return MonteCarloResult(
        simulations=simulations,
        mean_return=float(final_returns.mean()),
        volatility=final_vol,
        percentiles=percentiles,
        probability_of_loss=losses.size / n,
        expected_loss=expected_loss,
        tail_risk=expected_loss / final_vol if final_vol else 0.0,
    )


def portfolio_risk(positions: List[Dict]) -> PortfolioRisk:
    """
    positions: [{"value": float, "returns": [...], "beta": float (optional)}]
    Returns are aligned from the start; shorter series contribute 0 past their end.
    """
    values = np.asarray([p["value"] for p in positions], dtype=float)
    total = float(values.sum())
    if not positions or total <= 0:
        return PortfolioRisk(total, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0)
    weights = values / total

    length = max(len(p["returns"]) for p in positions)
    matrix = np.zeros((len(positions), length))
    for i, p in enumerate(positions):
        matrix[i, : len(p["returns"])] = p["returns"]
    port_returns = weights @ matrix

    corr = np.array([[correlation(a, b) for b in matrix] for a in matrix])
    port_var = float(weights @ corr @ weights)
    weighted_avg = float(np.sum(weights * np.sqrt(np.clip(np.diag(corr), 0, None))))
    diversification = max(0.0, 1 - math.sqrt(max(port_var, 0.0)) / weighted_avg) if weighted_avg else 1.0
    upper = corr[np.triu_indices(len(positions), k=1)]

    cumulative = 100.0 * np.cumprod(np.concatenate([[1.0], 1 + port_returns]))
    weighted_beta = float(np.sum(weights * np.asarray([p.get("beta", 1.0) for p in positions])))

    return PortfolioRisk(
        total_value=total,
        volatility=_std(port_returns),
        concentration_risk=float(np.sum(weights ** 2)),
        diversification_score=diversification,
        average_correlation=float(upper.mean()) if upper.size else 0.0,
        max_drawdown=max_drawdown(cumulative.tolist()).max_drawdown,
        sharpe_ratio=sharpe_ratio(port_returns),
        sortino_ratio=sortino_ratio(port_returns),
        var_95=value_at_risk(port_returns, 0.95),
        var_99=value_at_risk(port_returns, 0.99),
        expected_shortfall=expected_shortfall(port_returns, 0.95),
        beta=weighted_beta,
    )


REGIME_RISK_FACTORS = {
    "bull": ["overvaluation", "sudden_reversal"],
    "bear": ["further_declines", "liquidity_drying"],
    "sideways": ["breakout_risk", "range_expansion"],
    "high_volatility": ["whipsaw", "gap_risk", "liquidity_shocks"],
}


def detect_market_regime(prices: Sequence[float], volatility_window: int = 30, trend_window: int = 90) -> MarketRegime:
    if len(prices) < max(volatility_window, trend_window):
        return MarketRegime(regime="sideways", confidence=0.5, volatility=0.2)

    rets = np.asarray(returns_from_values(prices))
    recent_vol = _std(rets[-volatility_window:])
    trend = rets[-trend_window:]
    trend_strength = abs(float(trend.mean())) if trend.size else 0.0

    if recent_vol > 0.03:
        regime, confidence = "high_volatility", min(0.9, recent_vol / 0.05)
    elif trend_strength > 0.001:
        regime = "bull" if prices[-1] > prices[-trend_window] else "bear"
        confidence = min(0.9, trend_strength / 0.005)
    else:
        regime, confidence = "sideways", max(0.3, 1 - trend_strength / 0.002)

    return MarketRegime(
        regime=regime,
        confidence=confidence,
        volatility=recent_vol,
        trend_strength=trend_strength,
        liquidity_conditions="tight" if recent_vol > 0.025 else "normal",
        risk_factors=list(REGIME_RISK_FACTORS[regime]),
    )
