"""Stress testing of portfolio snapshots against market shock scenarios."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .errors import ConfigurationError
from .models import Portfolio

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StressScenario:
    """Multiplicative value impacts applied per asset and per protocol."""

    name: str
    asset_impacts: Mapping[str, float]
    protocol_impacts: Mapping[str, float]
    default_impact: float
    max_acceptable_loss: float
    default_protocol_impact: float = 1.0

    def asset_impact(self, asset: str) -> float:
        return self.asset_impacts.get(asset.upper(), self.default_impact)

    def protocol_impact(self, protocol: str) -> float:
        return self.protocol_impacts.get(protocol.lower(), self.default_protocol_impact)


@dataclass(frozen=True)
class ScenarioResult:
    scenario: str
    original_value: float
    simulated_value: float
    total_loss: float
    max_drawdown: float
    passed: bool
    severity: str
    max_acceptable_loss: float


@dataclass(frozen=True)
class StressRecommendation:
    scenario: str
    severity: str
    message: str
    action: str


@dataclass(frozen=True)
class StressReport:
    scenarios: Dict[str, ScenarioResult]
    overall_stress_score: float
    recommendations: List[StressRecommendation] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scenarios": {name: asdict(result) for name, result in self.scenarios.items()},
            "overall_stress_score": self.overall_stress_score,
            "recommendations": [asdict(item) for item in self.recommendations],
        }


BUILTIN_SCENARIOS: Mapping[str, StressScenario] = {
    "market_crash": StressScenario(
        name="market_crash",
        asset_impacts={"USDC": 0.98, "USDT": 0.98, "DAI": 0.95, "ETH": 0.6, "WBTC": 0.65, "BTC": 0.65},
        protocol_impacts={"compound": 0.95, "aave": 0.95, "uniswap": 0.8, "curve": 0.9},
        default_impact=0.7,
        max_acceptable_loss=30,
    ),
    "high_volatility": StressScenario(
        name="high_volatility",
        asset_impacts={"USDC": 0.99, "USDT": 0.99, "DAI": 0.98, "ETH": 0.8, "WBTC": 0.82, "BTC": 0.82},
        protocol_impacts={"compound": 0.98, "aave": 0.98, "uniswap": 0.9, "curve": 0.95},
        default_impact=0.85,
        max_acceptable_loss=20,
    ),
    "liquidity_crisis": StressScenario(
        name="liquidity_crisis",
        asset_impacts={"USDC": 0.95, "USDT": 0.93, "DAI": 0.9, "ETH": 0.75, "WBTC": 0.78, "BTC": 0.8},
        protocol_impacts={"compound": 0.9, "aave": 0.92, "uniswap": 0.7, "curve": 0.85},
        default_impact=0.8,
        max_acceptable_loss=25,
    ),
}

DEFAULT_SCENARIOS = tuple(BUILTIN_SCENARIOS)


def categorize_loss_severity(loss_percentage: float) -> str:
    if loss_percentage <= 5:
        return "minimal"
    if loss_percentage <= 15:
        return "moderate"
    if loss_percentage <= 30:
        return "significant"
    if loss_percentage <= 50:
        return "severe"
    return "catastrophic"


class StressTester:
    """Runs built-in or registered scenarios against immutable portfolio snapshots."""

    def __init__(self, scenarios: Optional[Iterable[StressScenario]] = None) -> None:
        self._scenarios: Dict[str, StressScenario] = dict(BUILTIN_SCENARIOS)
        for scenario in scenarios or ():
            self._scenarios[scenario.name] = scenario

    @property
    def scenario_names(self) -> List[str]:
        return list(self._scenarios)

    def register(self, scenario: StressScenario) -> None:
        self._scenarios[scenario.name] = scenario

    def resolve(self, scenario: Union[str, StressScenario]) -> StressScenario:
        if isinstance(scenario, StressScenario):
            return scenario
        try:
            return self._scenarios[str(scenario)]
        except KeyError as exc:
            raise ConfigurationError(f"Unknown stress scenario '{scenario}'") from exc

    def run_stress_scenario(self, portfolio: Portfolio, scenario: Union[str, StressScenario]) -> ScenarioResult:
        config = self.resolve(scenario)
        total = portfolio.total_value
        total_shortfall = 0.0
        max_drawdown = 0.0
        for position in portfolio.positions:
            impact = config.asset_impact(position.asset) * config.protocol_impact(position.protocol)
            shortfall = position.value - position.value * impact
            total_shortfall += shortfall
            if position.value > 0:
                max_drawdown = max(max_drawdown, shortfall / position.value * 100)
        simulated = total - total_shortfall
        total_loss = total_shortfall / total * 100 if total > 0 else 0.0
        return ScenarioResult(
            scenario=config.name,
            original_value=total,
            simulated_value=round(simulated, 2),
            total_loss=round(total_loss, 2),
            max_drawdown=round(max_drawdown, 2),
            passed=total_loss <= config.max_acceptable_loss,
            severity=categorize_loss_severity(total_loss),
            max_acceptable_loss=config.max_acceptable_loss,
        )

    def run_stress_test(
        self,
        portfolio: Portfolio,
        scenarios: Optional[Sequence[Union[str, StressScenario]]] = None,
    ) -> StressReport:
        """Run every scenario; names are validated before any scenario executes."""

        resolved = [self.resolve(item) for item in (scenarios or DEFAULT_SCENARIOS)]
        results: Dict[str, ScenarioResult] = {}
        for config in resolved:
            results[config.name] = self.run_stress_scenario(portfolio, config)
        report = StressReport(
            scenarios=results,
            overall_stress_score=overall_stress_score(results.values()),
            recommendations=stress_recommendations(results.values()),
        )
        logger.info(
            "Stress test completed",
            extra={
                "portfolio_id": portfolio.id,
                "scenarios": len(results),
                "failed": sum(1 for item in results.values() if not item.passed),
                "score": report.overall_stress_score,
            },
        )
        return report


def overall_stress_score(results: Iterable[ScenarioResult]) -> float:
    items = list(results)
    if not items:
        return 0.0
    average_loss = sum(item.total_loss for item in items) / len(items)
    pass_rate = sum(1 for item in items if item.passed) / len(items)
    return round(pass_rate * 100 - average_loss, 1)


def stress_recommendations(results: Iterable[ScenarioResult]) -> List[StressRecommendation]:
    return [
        StressRecommendation(
            scenario=item.scenario,
            severity=item.severity,
            message=f"Portfolio vulnerable to {item.scenario.replace('_', ' ')}",
            action="Consider hedging strategies or reducing exposure to high-risk assets",
        )
        for item in results
        if not item.passed
    ]


def scenario_results_to_dict(results: Sequence[ScenarioResult]) -> List[Dict[str, Any]]:
    return [asdict(result) for result in results]


__all__ = [
    "BUILTIN_SCENARIOS",
    "DEFAULT_SCENARIOS",
    "ScenarioResult",
    "StressReport",
    "StressScenario",
    "StressTester",
    "categorize_loss_severity",
    "overall_stress_score",
    "scenario_results_to_dict",
    "stress_recommendations",
]
