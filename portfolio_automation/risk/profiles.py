"""Static risk tables: tolerance profiles, asset traits and scenario shocks."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Mapping, Tuple, Union

from ..models import RiskLevel, RiskTolerance


@dataclass(frozen=True)
class RiskProfile:
    tolerance: RiskTolerance
    max_volatility: float
    max_drawdown: float
    diversification_weight: float
    liquidity_weight: float
    return_weight: float
    max_single_asset_weight: float
    preferred_assets: Tuple[str, ...]
    protocol_risk_limit: int
    target_apy: float
    tolerance_score: float

    def to_dict(self) -> Dict[str, object]:
        return {
            "tolerance": self.tolerance.value,
            "max_volatility": self.max_volatility,
            "max_drawdown": self.max_drawdown,
            "diversification_weight": self.diversification_weight,
            "liquidity_weight": self.liquidity_weight,
            "return_weight": self.return_weight,
            "max_single_asset_weight": self.max_single_asset_weight,
            "preferred_assets": list(self.preferred_assets),
            "protocol_risk_limit": self.protocol_risk_limit,
            "target_apy": self.target_apy,
            "tolerance_score": self.tolerance_score,
        }


RISK_PROFILES: Mapping[RiskTolerance, RiskProfile] = {
    RiskTolerance.CONSERVATIVE: RiskProfile(
        RiskTolerance.CONSERVATIVE, 5, 10, 0.4, 0.3, 0.3, 0.15, ("USDC", "USDT", "DAI"), 2, 4, 20
    ),
    RiskTolerance.MODERATE: RiskProfile(
        RiskTolerance.MODERATE, 10, 20, 0.35, 0.25, 0.4, 0.25, ("USDC", "USDT", "DAI", "ETH"), 3, 7, 35
    ),
    RiskTolerance.BALANCED: RiskProfile(
        RiskTolerance.BALANCED, 15, 30, 0.3, 0.2, 0.5, 0.35, ("USDC", "USDT", "DAI", "ETH", "WBTC"), 4, 10, 50
    ),
    RiskTolerance.AGGRESSIVE: RiskProfile(
        RiskTolerance.AGGRESSIVE, 25, 50, 0.25, 0.15, 0.6, 0.5, ("ETH", "WBTC", "USDC", "USDT"), 5, 15, 70
    ),
    RiskTolerance.VERY_AGGRESSIVE: RiskProfile(
        RiskTolerance.VERY_AGGRESSIVE, 40, 70, 0.2, 0.1, 0.7, 0.7, ("ETH", "WBTC"), 5, 25, 90
    ),
}

# Annualised volatility in percent.
ASSET_VOLATILITY: Mapping[str, float] = {
    "USDC": 0.5,
    "USDT": 0.5,
    "DAI": 0.8,
    "ETH": 18.2,
    "WBTC": 22.1,
    "BTC": 22.1,
    "SOL": 35.4,
    "AVAX": 42.1,
}
DEFAULT_ASSET_VOLATILITY = 25.0

# 1.0 is instantly liquid.
LIQUIDITY_SCORES: Mapping[str, float] = {
    "USDC": 0.95,
    "USDT": 0.95,
    "DAI": 0.9,
    "ETH": 0.9,
    "WBTC": 0.85,
    "BTC": 0.9,
    "SOL": 0.8,
    "AVAX": 0.75,
}
DEFAULT_LIQUIDITY_SCORE = 0.7

# Cash equivalents do not count towards concentration.
STABLE_ASSETS = frozenset({"USDC", "USDT", "DAI"})

ASSET_CORRELATIONS: Mapping[str, float] = {
    "USDC-USDT": 0.95,
    "DAI-USDC": 0.85,
    "DAI-USDT": 0.88,
    "ETH-WBTC": 0.75,
    "BTC-ETH": 0.75,
    "BTC-WBTC": 0.98,
}
DEFAULT_CORRELATION = 0.3

UNHEALTHY_PROTOCOL_RISK = 80.0
DEFAULT_PROTOCOL_RISK = 50.0

# Upper bounds of each risk band, checked in order.
RISK_LEVEL_THRESHOLDS: Tuple[Tuple[float, RiskLevel], ...] = (
    (20.0, RiskLevel.VERY_LOW),
    (35.0, RiskLevel.LOW),
    (50.0, RiskLevel.MODERATE),
    (70.0, RiskLevel.HIGH),
)

COMPONENT_WEIGHTS: Mapping[str, float] = {
    "concentration": 0.30,
    "volatility": 0.25,
    "liquidity": 0.15,
    "protocol": 0.20,
    "correlation": 0.10,
}


def get_risk_profile(tolerance: Union[str, RiskTolerance]) -> RiskProfile:
    """Return the profile for ``tolerance``; unknown names raise ``ConfigurationError``."""

    return RISK_PROFILES[RiskTolerance.parse(tolerance)]


def risk_level_for(score: float) -> RiskLevel:
    for upper, level in RISK_LEVEL_THRESHOLDS:
        if score <= upper:
            return level
    return RiskLevel.VERY_HIGH


def correlation_between(asset_a: str, asset_b: str) -> float:
    key = "-".join(sorted((asset_a.upper(), asset_b.upper())))
    return ASSET_CORRELATIONS.get(key, DEFAULT_CORRELATION)


def asset_volatility(asset: str) -> float:
    return ASSET_VOLATILITY.get(asset.upper(), DEFAULT_ASSET_VOLATILITY)


def liquidity_score(asset: str) -> float:
    return LIQUIDITY_SCORES.get(asset.upper(), DEFAULT_LIQUIDITY_SCORE)
