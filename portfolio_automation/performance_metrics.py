"""Return, risk and benchmark analytics plus forward projections for a strategy."""

from __future__ import annotations

import json
import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from hashlib import sha256
from statistics import pstdev
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from services.benchmarks import MARKET_BENCHMARK_ID, BenchmarkSource, StaticBenchmarkSource

from .audit import AuditLogWriter
from .cache import TTLCache
from .config.models import PerformanceConfig
from .errors import ValidationError
from .models import Transaction, TransactionKind, transactions_from_payload, utc_now

logger = logging.getLogger(__name__)

INFLOW_KINDS = frozenset({TransactionKind.DEPOSIT, TransactionKind.START_STRATEGY})
OUTFLOW_KINDS = frozenset({TransactionKind.WITHDRAW, TransactionKind.STOP_STRATEGY})

VAR95_MULTIPLIER = 1.65
VAR99_MULTIPLIER = 2.33
DOWNSIDE_DEVIATION_RATIO = 0.7
DAYS_PER_YEAR = 365.25

HORIZON_MONTHS: Mapping[str, int] = {
    "6months": 6,
    "1year": 12,
    "2years": 24,
    "3years": 36,
    "5years": 60,
    "10years": 120,
}
DEFAULT_HORIZON_MONTHS = 12

VOLATILITY_FACTORS: Mapping[str, float] = {
    "Conservative": 0.05,
    "Moderate": 0.12,
    "Balanced": 0.18,
    "Aggressive": 0.25,
    "Very Aggressive": 0.35,
}
DEFAULT_VOLATILITY_FACTOR = 0.15

SCENARIO_MULTIPLIERS: Tuple[Tuple[str, float], ...] = (
    ("pessimistic", 0.5),
    ("expected", 1.0),
    ("optimistic", 1.5),
)


@dataclass(frozen=True)
class TimeMetrics:
    annualized_return: Optional[float] = 0.0
    monthly_return: Optional[float] = 0.0
    daily_return: Optional[float] = 0.0
    time_weighted_return: float = 0.0
    total_days: int = 0
    start_date: Optional[str] = None
    end_date: Optional[str] = None


@dataclass(frozen=True)
class RiskStats:
    volatility: float
    volatility_source: str
    max_drawdown: float
    var95: float
    var99: float
    risk_level: str


@dataclass(frozen=True)
class PerformanceRatios:
    sharpe_ratio: float
    information_ratio: float
    sortino_ratio: float
    risk_free_rate: float
    excess_return: float


def categorize_volatility(volatility: float) -> str:
    if volatility < 5:
        return "Very Low"
    if volatility < 10:
        return "Low"
    if volatility < 15:
        return "Moderate"
    if volatility < 25:
        return "High"
    return "Very High"


def parse_horizon(horizon: Union[int, float, str, None]) -> int:
    """Return months for ``horizon``; unknown labels fall back to one year."""

    if isinstance(horizon, bool):
        raise ValidationError("horizon must be a number of months or a label such as '1year'")
    if isinstance(horizon, int):
        if horizon <= 0:
            raise ValidationError("horizon must be at least one month")
        return horizon
    if isinstance(horizon, float):
        if not horizon.is_integer():
            raise ValidationError("horizon must be a whole number of months")
        return parse_horizon(int(horizon))
    if isinstance(horizon, str) and horizon.strip().isdigit():
        return parse_horizon(int(horizon.strip()))
    return HORIZON_MONTHS.get(str(horizon or ""), DEFAULT_HORIZON_MONTHS)


def volatility_factor(risk_level: Optional[str]) -> float:
    return VOLATILITY_FACTORS.get(str(risk_level or ""), DEFAULT_VOLATILITY_FACTOR)


def total_by_kind(transactions: Sequence[Transaction], kinds: frozenset) -> float:
    return sum(tx.amount or 0.0 for tx in transactions if tx.kind in kinds)


def time_weighted_return(transactions: Sequence[Transaction], current_value: float) -> Tuple[float, List[float]]:
    """Simplified TWR in percent together with the per-period returns it compounded.

    Each withdrawal closes a period measured as ``current_value`` against the
    invested base at that point; the final period runs to ``current_value``.
    """

    cumulative = 1.0
    base = 0.0
    period_returns: List[float] = []
    for tx in transactions:
        if tx.kind in INFLOW_KINDS:
            base += tx.amount
        elif tx.kind is TransactionKind.WITHDRAW:
            if base > 0:
                period = (current_value - base) / base
                period_returns.append(period)
                cumulative *= 1 + period
            base -= tx.amount
    if base > 0:
        period = (current_value - base) / base
        period_returns.append(period)
        cumulative *= 1 + period
    return (cumulative - 1) * 100, period_returns


def annualize(twr: float, years: float) -> Optional[float]:
    """Compound a ``twr`` percent over ``years``; ``None`` when the rate is not representable."""

    if years <= 0 or twr <= -100:
        return 0.0
    try:
        return (1 + twr / 100) ** (1 / years) - 1
    except OverflowError:
        return None


def invested_base_drawdown(transactions: Sequence[Transaction]) -> float:
    """Largest percentage fall of the running invested base from its peak."""

    peak = 0.0
    invested = 0.0
    worst = 0.0
    for tx in transactions:
        if tx.kind in INFLOW_KINDS:
            invested += tx.amount
        elif tx.kind is TransactionKind.WITHDRAW:
            invested -= tx.amount
        peak = max(peak, invested)
        if peak > 0:
            worst = max(worst, (peak - invested) / peak * 100)
    return worst


def _transactions_fingerprint(transactions: Sequence[Transaction], current_value: float) -> str:
    canonical = json.dumps(
        {"current_value": round(current_value, 8), "transactions": [tx.to_dict() for tx in transactions]},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return sha256(canonical.encode("utf-8")).hexdigest()


class PerformanceAnalyzer:
    """Computes performance metrics against benchmarks and projects future value."""

    def __init__(
        self,
        *,
        benchmarks: Optional[BenchmarkSource] = None,
        config: Optional[PerformanceConfig] = None,
        rng: Optional[random.Random] = None,
        audit_logger: Optional[AuditLogWriter] = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self._benchmarks = benchmarks or StaticBenchmarkSource()
        self._config = config or PerformanceConfig()
        self._rng = rng or random.Random()
        self._audit = audit_logger
        self._now = now
        self._cache: TTLCache[Dict[str, Any]] = TTLCache(self._config.cache_ttl_seconds, clock=clock)

    def clear_cache(self) -> None:
        self._cache.clear()

    def cache_stats(self) -> Dict[str, Any]:
        return self._cache.stats()

    def calculate_performance_metrics(
        self,
        transactions: Sequence[Union[Transaction, Mapping[str, Any]]],
        current_value: float,
        timeframe: str = "1year",
        *,
        strategy_id: Optional[str] = None,
        volatility: Optional[float] = None,
    ) -> Dict[str, Any]:
        history = sorted(transactions_from_payload(list(transactions)), key=lambda tx: tx.timestamp)
        cache_key = (strategy_id, timeframe, volatility, _transactions_fingerprint(history, current_value))
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        total_deposited = total_by_kind(history, INFLOW_KINDS)
        total_withdrawn = total_by_kind(history, OUTFLOW_KINDS)
        net_deposited = total_deposited - total_withdrawn
        unrealized_gain = current_value - net_deposited
        total_return = unrealized_gain / net_deposited * 100 if net_deposited > 0 else 0.0

        time_metrics, period_returns = self._time_metrics(history, current_value)
        risk = self._risk_stats(history, period_returns, volatility)
        ratios = self._ratios(total_return, risk.volatility)
        metrics: Dict[str, Any] = {
            "strategy_id": strategy_id,
            "total_deposited": round(total_deposited, 2),
            "total_withdrawn": round(total_withdrawn, 2),
            "net_deposited": round(net_deposited, 2),
            "current_value": current_value,
            "unrealized_gain": round(unrealized_gain, 2),
            "total_return": round(total_return, 2),
            "annualized_return": time_metrics.annualized_return,
            "monthly_return": time_metrics.monthly_return,
            "daily_return": time_metrics.daily_return,
            "time_weighted_return": time_metrics.time_weighted_return,
            "total_days": time_metrics.total_days,
            "start_date": time_metrics.start_date,
            "end_date": time_metrics.end_date,
            "volatility": risk.volatility,
            "volatility_source": risk.volatility_source,
            "max_drawdown": risk.max_drawdown,
            "var95": risk.var95,
            "var99": risk.var99,
            "risk_level": risk.risk_level,
            "sharpe_ratio": ratios.sharpe_ratio,
            "information_ratio": ratios.information_ratio,
            "sortino_ratio": ratios.sortino_ratio,
            "risk_free_rate": ratios.risk_free_rate,
            "excess_return": ratios.excess_return,
            "benchmark_comparison": self.compare_to_benchmarks(total_return, risk.volatility),
            "calculated_at": self._now().isoformat(),
            "timeframe": timeframe,
            "transaction_count": len(history),
        }
        self._cache.set(cache_key, metrics)
        logger.debug(
            "Performance metrics calculated",
            extra={"strategy_id": strategy_id, "total_return": metrics["total_return"], "timeframe": timeframe},
        )
        if self._audit is not None:
            self._audit.log(
                "strategy.performance_calculated",
                "analytics",
                {"strategy_id": strategy_id, "total_return": metrics["total_return"], "timeframe": timeframe},
            )
        return metrics

    def _time_metrics(self, history: Sequence[Transaction], current_value: float) -> Tuple[TimeMetrics, List[float]]:
        if not history:
            return TimeMetrics(), []
        start = history[0].timestamp
        end = self._now()
        days = (end - start).total_seconds() / 86400
        years = days / DAYS_PER_YEAR
        twr, period_returns = time_weighted_return(history, current_value)
        annualized = annualize(twr, years)
        if annualized is None:
            logger.debug("Annualized return out of range", extra={"twr": twr, "days": days})
        return (
            TimeMetrics(
                annualized_return=round(annualized * 100, 2) if annualized is not None else None,
                monthly_return=round(annualized / 12 * 100, 2) if annualized is not None else None,
                daily_return=round(annualized / DAYS_PER_YEAR * 100, 3) if annualized is not None else None,
                time_weighted_return=round(twr, 2),
                total_days=round(days),
                start_date=start.date().isoformat(),
                end_date=end.date().isoformat(),
            ),
            period_returns,
        )

    def _risk_stats(
        self, history: Sequence[Transaction], period_returns: Sequence[float], volatility: Optional[float]
    ) -> RiskStats:
        if volatility is not None:
            source = "provided"
        elif len(period_returns) >= 2:
            volatility = pstdev(period_returns) * 100
            source = "period_returns"
        else:
            volatility = self._config.default_volatility
            source = "default"
        return RiskStats(
            volatility=round(volatility, 2),
            volatility_source=source,
            max_drawdown=round(invested_base_drawdown(history), 2),
            var95=round(volatility * VAR95_MULTIPLIER, 2),
            var99=round(volatility * VAR99_MULTIPLIER, 2),
            risk_level=categorize_volatility(volatility),
        )

    def _ratios(self, total_return: float, volatility: float) -> PerformanceRatios:
        risk_free = self._config.risk_free_rate
        market = self._benchmarks.get_benchmark(MARKET_BENCHMARK_ID)
        excess = total_return - market.apy
        tracking_error = abs(volatility - market.volatility)
        downside = volatility * DOWNSIDE_DEVIATION_RATIO
        return PerformanceRatios(
            sharpe_ratio=round((total_return - risk_free) / volatility, 3) if volatility > 0 else 0.0,
            information_ratio=round(excess / tracking_error, 3) if tracking_error > 0 else 0.0,
            sortino_ratio=round((total_return - risk_free) / downside, 3) if downside > 0 else 0.0,
            risk_free_rate=risk_free,
            excess_return=round(excess, 2),
        )

    def compare_to_benchmarks(self, total_return: float, volatility: float) -> List[Dict[str, Any]]:
        comparisons: List[Dict[str, Any]] = []
        risk_adjusted = total_return / volatility if volatility > 0 else total_return
        for benchmark in self._benchmarks.list_benchmarks():
            benchmark_adjusted = benchmark.apy / benchmark.volatility if benchmark.volatility > 0 else benchmark.apy
            comparisons.append(
                {
                    "benchmark": benchmark.name,
                    "id": benchmark.id,
                    "symbol": benchmark.symbol,
                    "category": benchmark.category,
                    "benchmark_return": benchmark.apy,
                    "benchmark_volatility": benchmark.volatility,
                    "outperformance": round(total_return - benchmark.apy, 2),
                    "risk_adjusted_outperformance": round(risk_adjusted - benchmark_adjusted, 3),
                    "is_outperforming": total_return > benchmark.apy,
                    "risk_efficiency": "Better" if risk_adjusted > benchmark_adjusted else "Worse",
                }
            )
        comparisons.sort(key=lambda item: item["outperformance"], reverse=True)
        return comparisons

    def generate_projections(
        self,
        current_value: float,
        monthly_contribution: float,
        horizon: Union[int, float, str],
        expected_apy: float,
        risk_level: Optional[str] = None,
    ) -> Dict[str, Any]:
        months = parse_horizon(horizon)
        monthly_rate = expected_apy / 100 / 12
        factor = volatility_factor(risk_level)
        today = self._now()
        value = current_value
        contributions = 0.0
        projections: List[Dict[str, Any]] = []
        for month in range(1, months + 1):
            value += monthly_contribution
            contributions += monthly_contribution
            value *= 1 + monthly_rate
            shock = (self._rng.random() - 0.5) * factor * 2
            value *= 1 + shock / 12
            if month % 3 == 0 or month == months:
                invested = current_value + contributions
                gains = value - invested
                projections.append(
                    {
                        "month": month,
                        "value": round(value, 2),
                        "total_invested": round(invested, 2),
                        "gains": round(gains, 2),
                        "return_percentage": round(gains / invested * 100, 2) if invested > 0 else 0.0,
                        "date": (today + timedelta(days=30 * month)).date().isoformat(),
                    }
                )
        final_value = projections[-1]["value"] if projections else current_value
        return {
            "projections": projections,
            "scenarios": scenario_analysis(current_value, monthly_contribution, months, expected_apy),
            "assumptions": {
                "expected_apy": expected_apy,
                "monthly_contribution": monthly_contribution,
                "time_horizon": horizon,
                "risk_level": risk_level,
                "total_months": months,
            },
            "summary": {
                "final_value": final_value,
                "total_contributions": round(contributions + current_value, 2),
                "total_gains": round(final_value - (contributions + current_value), 2),
                "annualized_return": expected_apy,
            },
        }


def scenario_analysis(
    current_value: float, monthly_contribution: float, months: int, expected_apy: float
) -> Dict[str, Dict[str, float]]:
    """Deterministic compounding at the scaled APY for each scenario."""

    scenarios: Dict[str, Dict[str, float]] = {}
    for name, multiplier in SCENARIO_MULTIPLIERS:
        apy = expected_apy * multiplier
        monthly_rate = apy / 100 / 12
        value = current_value
        for _ in range(months):
            value = (value + monthly_contribution) * (1 + monthly_rate)
        invested = current_value + monthly_contribution * months
        gains = value - invested
        scenarios[name] = {
            "final_value": round(value, 2),
            "total_gains": round(gains, 2),
            "apy": round(apy, 2),
            "return_percentage": round(gains / invested * 100, 2) if invested > 0 else 0.0,
        }
    return scenarios


__all__ = [
    "HORIZON_MONTHS",
    "PerformanceAnalyzer",
    "categorize_volatility",
    "invested_base_drawdown",
    "parse_horizon",
    "scenario_analysis",
    "time_weighted_return",
    "volatility_factor",
]
