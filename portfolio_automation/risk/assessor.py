"""Portfolio risk scoring against a declared risk tolerance."""

from __future__ import annotations

import itertools
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from services.protocols import ProtocolDirectory
from services.telemetry import Telemetry

from ..audit import AuditLogWriter
from ..cache import TTLCache
from ..config.models import RiskConfig
from ..models import Portfolio, RiskLevel, RiskTolerance, utc_now
from .profiles import (
    COMPONENT_WEIGHTS,
    DEFAULT_PROTOCOL_RISK,
    STABLE_ASSETS,
    UNHEALTHY_PROTOCOL_RISK,
    asset_volatility,
    correlation_between,
    get_risk_profile,
    liquidity_score,
    risk_level_for,
)

logger = logging.getLogger(__name__)

PROTOCOL_DIRECTORY_SERVICE = "protocol_directory"


@dataclass(frozen=True)
class RiskMetrics:
    concentration: float = 0.0
    volatility: float = 0.0
    liquidity: float = 0.0
    protocol: float = 0.0
    correlation: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return {
            "concentration": round(self.concentration, 2),
            "volatility": round(self.volatility, 2),
            "liquidity": round(self.liquidity, 2),
            "protocol": round(self.protocol, 2),
            "correlation": round(self.correlation, 2),
        }


@dataclass(frozen=True)
class RiskRecommendation:
    type: str
    priority: str
    message: str
    action: str

    def to_dict(self) -> Dict[str, str]:
        return {"type": self.type, "priority": self.priority, "message": self.message, "action": self.action}


@dataclass(frozen=True)
class RiskAssessment:
    overall_risk_score: float
    risk_level: RiskLevel
    risk_metrics: RiskMetrics
    is_within_tolerance: bool
    tolerance: RiskTolerance
    assessed_at: datetime
    portfolio_id: str = "default"
    recommendations: Tuple[RiskRecommendation, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "portfolio_id": self.portfolio_id,
            "overall_risk_score": round(self.overall_risk_score, 2),
            "risk_level": self.risk_level.value,
            "risk_metrics": self.risk_metrics.to_dict(),
            "recommendations": [item.to_dict() for item in self.recommendations],
            "is_within_tolerance": self.is_within_tolerance,
            "tolerance": self.tolerance.value,
            "assessed_at": self.assessed_at.isoformat(),
        }


def concentration_risk(portfolio: Portfolio) -> float:
    """Quadratic penalty on the largest risk-bearing asset and protocol weights."""

    if portfolio.total_value <= 0:
        return 0.0
    asset_values: Dict[str, float] = {}
    protocol_values: Dict[str, float] = {}
    for position in portfolio.positions:
        if position.asset.upper() in STABLE_ASSETS:
            continue
        asset_values[position.asset] = asset_values.get(position.asset, 0.0) + position.value
        protocol_values[position.protocol] = protocol_values.get(position.protocol, 0.0) + position.value
    largest_asset = portfolio.weight(max(asset_values.values(), default=0.0))
    largest_protocol = portfolio.weight(max(protocol_values.values(), default=0.0))
    score = max((2 * largest_asset) ** 2 * 25, (1.5 * largest_protocol) ** 2 * 25)
    return min(score, 100.0)


def volatility_risk(portfolio: Portfolio) -> float:
    if portfolio.total_value <= 0:
        return 0.0
    weighted = sum(portfolio.weight(p.value) * asset_volatility(p.asset) for p in portfolio.positions)
    return min(weighted * 2, 100.0)


def liquidity_risk(portfolio: Portfolio) -> float:
    if portfolio.total_value <= 0:
        return 0.0
    return sum(portfolio.weight(p.value) * (1 - liquidity_score(p.asset)) * 100 for p in portfolio.positions)


def correlation_risk(portfolio: Portfolio) -> float:
    assets = sorted({position.asset.upper() for position in portfolio.positions if position.value > 0})
    if not assets:
        return 0.0
    if len(assets) == 1:
        return 100.0
    pairs = list(itertools.combinations(assets, 2))
    return sum(correlation_between(a, b) for a, b in pairs) / len(pairs) * 100


class RiskAssessor:
    """Scores portfolios on five weighted risk components."""

    def __init__(
        self,
        protocol_directory: ProtocolDirectory,
        *,
        config: Optional[RiskConfig] = None,
        telemetry: Optional[Telemetry] = None,
        audit_logger: Optional[AuditLogWriter] = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self._directory = protocol_directory
        self._config = config or RiskConfig()
        self._telemetry = telemetry or Telemetry()
        self._audit = audit_logger
        self._now = now
        self._cache: TTLCache[RiskAssessment] = TTLCache(self._config.assessment_cache_ttl_seconds, clock=clock)

    def clear_cache(self) -> None:
        self._cache.clear()

    async def assess_portfolio_risk(
        self, portfolio: Portfolio, tolerance: Union[str, RiskTolerance]
    ) -> RiskAssessment:
        profile = get_risk_profile(tolerance)
        cache_key = (portfolio.id, portfolio.fingerprint(), profile.tolerance)
        cached = self._cache.get(cache_key)
        if cached is not None:
            return cached

        metrics = RiskMetrics(
            concentration=concentration_risk(portfolio),
            volatility=volatility_risk(portfolio),
            liquidity=liquidity_risk(portfolio),
            protocol=await self._protocol_risk(portfolio),
            correlation=correlation_risk(portfolio),
        )
        score = sum(getattr(metrics, name) * weight for name, weight in COMPONENT_WEIGHTS.items())
        within = score <= profile.tolerance_score
        assessment = RiskAssessment(
            overall_risk_score=score,
            risk_level=risk_level_for(score),
            risk_metrics=metrics,
            is_within_tolerance=within,
            tolerance=profile.tolerance,
            assessed_at=self._now(),
            portfolio_id=portfolio.id,
            recommendations=tuple(self._recommendations(metrics, within)),
        )
        self._cache.set(cache_key, assessment)
        logger.info(
            "Portfolio risk assessed",
            extra={
                "portfolio_id": portfolio.id,
                "tolerance": profile.tolerance.value,
                "score": round(score, 2),
                "risk_level": assessment.risk_level.value,
                "within_tolerance": within,
            },
        )
        if self._audit is not None:
            self._audit.log(
                "portfolio.risk_assessed",
                "risk_engine",
                {
                    "portfolio_id": portfolio.id,
                    "tolerance": profile.tolerance.value,
                    "score": round(score, 2),
                    "risk_level": assessment.risk_level.value,
                    "within_tolerance": within,
                },
            )
        return assessment

    async def _protocol_risk(self, portfolio: Portfolio) -> float:
        if portfolio.total_value <= 0:
            return 0.0
        scores: Dict[str, float] = {}
        for protocol in portfolio.protocol_values():
            scores[protocol] = await self._lookup_protocol_risk(protocol)
        return sum(portfolio.weight(p.value) * scores[p.protocol] for p in portfolio.positions)

    async def _lookup_protocol_risk(self, protocol: str) -> float:
        try:
            health = await self._telemetry.call(
                PROTOCOL_DIRECTORY_SERVICE, lambda: self._directory.get_protocol_health(protocol)
            )
        except Exception as exc:
            logger.warning(
                "Protocol health unavailable, using default risk",
                extra={"protocol": protocol, "error": str(exc), "fallback": DEFAULT_PROTOCOL_RISK},
            )
            return DEFAULT_PROTOCOL_RISK
        if not health.healthy:
            return UNHEALTHY_PROTOCOL_RISK
        if health.risk_score is None:
            return DEFAULT_PROTOCOL_RISK
        return float(health.risk_score)

    @staticmethod
    def _recommendations(metrics: RiskMetrics, within_tolerance: bool) -> List[RiskRecommendation]:
        recommendations: List[RiskRecommendation] = []
        if not within_tolerance:
            recommendations.append(
                RiskRecommendation(
                    "risk_reduction",
                    "high",
                    "Portfolio risk exceeds your tolerance level",
                    "Consider rebalancing to lower-risk assets",
                )
            )
        if metrics.concentration > 40:
            recommendations.append(
                RiskRecommendation(
                    "diversification",
                    "high",
                    "High concentration risk detected",
                    "Diversify across more assets and protocols",
                )
            )
        if metrics.liquidity > 30:
            recommendations.append(
                RiskRecommendation(
                    "liquidity",
                    "medium",
                    "Consider increasing liquidity buffer",
                    "Allocate more to highly liquid assets",
                )
            )
        return recommendations


__all__ = [
    "RiskAssessment",
    "RiskAssessor",
    "RiskMetrics",
    "RiskRecommendation",
    "concentration_risk",
    "correlation_risk",
    "liquidity_risk",
    "volatility_risk",
]
