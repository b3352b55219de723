"""Rebalancing advice derived from a risk assessment and target allocations."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from ..config.models import RiskConfig
from ..models import Portfolio, RiskTolerance, TargetAllocation
from .assessor import RiskAssessment, RiskAssessor
from .profiles import RiskProfile, get_risk_profile

logger = logging.getLogger(__name__)

BASE_ACTION_COST = 50.0
BENEFIT_RATE = 0.01
RISK_REDUCTION_RATE = 0.2
BASE_MINUTES = 5
MINUTES_PER_ACTION = 3


@dataclass(frozen=True)
class AllocationTarget:
    asset: str
    weight: float
    target_value: float

    def to_dict(self) -> Dict[str, Any]:
        return {"asset": self.asset, "weight": self.weight, "target_value": self.target_value}


@dataclass(frozen=True)
class AllocationDeviation:
    asset: str
    current_weight: float
    target_weight: float

    @property
    def deviation(self) -> float:
        return abs(self.current_weight - self.target_weight)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "asset": self.asset,
            "current_weight": round(self.current_weight, 4),
            "target_weight": self.target_weight,
            "deviation": round(self.deviation, 4),
        }


@dataclass(frozen=True)
class RebalanceAction:
    action: str
    asset: str
    current_weight: float
    target_weight: float
    value_difference: float
    priority: str

    @property
    def signed_value(self) -> float:
        """Positive when buying into ``asset``, negative when selling out of it."""

        return self.value_difference if self.action == "increase" else -self.value_difference

    def to_dict(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "asset": self.asset,
            "current_weight": self.current_weight,
            "target_weight": self.target_weight,
            "value_difference": self.value_difference,
            "priority": self.priority,
        }


@dataclass(frozen=True)
class CostBenefit:
    total_costs: float
    projected_benefit: float
    net_benefit: float
    payback_months: Optional[int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_costs": self.total_costs,
            "projected_benefit": self.projected_benefit,
            "net_benefit": self.net_benefit,
            "payback_months": self.payback_months,
        }


@dataclass(frozen=True)
class RebalanceRecommendation:
    needs_rebalancing: bool
    reason: str
    current_risk: Optional[RiskAssessment] = None
    deviations: Tuple[AllocationDeviation, ...] = ()
    optimal_allocations: Tuple[AllocationTarget, ...] = ()
    actions: Tuple[RebalanceAction, ...] = ()
    cost_benefit: Optional[CostBenefit] = None
    projected_risk_reduction: float = 0.0
    estimated_minutes: int = 0
    recommendation: Optional[str] = None
    threshold: float = 0.05

    def to_dict(self) -> Dict[str, Any]:
        return {
            "needs_rebalancing": self.needs_rebalancing,
            "reason": self.reason,
            "current_risk": self.current_risk.to_dict() if self.current_risk else None,
            "deviations": [item.to_dict() for item in self.deviations],
            "optimal_allocations": [item.to_dict() for item in self.optimal_allocations],
            "actions": [item.to_dict() for item in self.actions],
            "cost_benefit": self.cost_benefit.to_dict() if self.cost_benefit else None,
            "projected_risk_reduction": self.projected_risk_reduction,
            "estimated_minutes": self.estimated_minutes,
            "recommendation": self.recommendation,
            "threshold": self.threshold,
        }


def optimal_allocations(portfolio: Portfolio, profile: RiskProfile) -> List[AllocationTarget]:
    """Spread weight evenly over the preferred assets, each capped at the single-asset limit."""

    allocations: List[AllocationTarget] = []
    remaining = 1.0
    preferred = profile.preferred_assets
    for index, asset in enumerate(preferred):
        if remaining <= 0:
            break
        weight = min(profile.max_single_asset_weight, remaining / (len(preferred) - index))
        allocations.append(
            AllocationTarget(
                asset=asset,
                weight=round(weight, 3),
                target_value=round(weight * portfolio.total_value, 2),
            )
        )
        remaining -= weight
    return allocations


def action_cost(value_difference: float) -> float:
    """Execution cost estimate scaled by ``log10`` of the trade size in thousands."""

    multiplier = math.log10(value_difference / 1000) if value_difference > 0 else 0.0
    if not math.isfinite(multiplier) or multiplier <= 0:
        multiplier = 1.0
    return BASE_ACTION_COST * multiplier


def analyze_cost_benefit(actions: Sequence[RebalanceAction]) -> CostBenefit:
    total_costs = sum(action_cost(action.value_difference) for action in actions)
    benefit = sum(action.value_difference * BENEFIT_RATE for action in actions)
    payback = math.ceil(total_costs / (benefit / 12)) if benefit > 0 else None
    return CostBenefit(
        total_costs=round(total_costs, 2),
        projected_benefit=round(benefit, 2),
        net_benefit=round(benefit - total_costs, 2),
        payback_months=payback,
    )


class RebalanceAdvisor:
    """Turns a risk assessment plus optional targets into concrete rebalancing actions."""

    def __init__(self, assessor: RiskAssessor, *, config: Optional[RiskConfig] = None) -> None:
        self._assessor = assessor
        self._config = config or RiskConfig()

    async def generate_rebalance_recommendation(
        self,
        portfolio: Portfolio,
        tolerance: Union[str, RiskTolerance],
        target_allocations: Optional[Sequence[TargetAllocation]] = None,
        *,
        threshold: Optional[float] = None,
    ) -> RebalanceRecommendation:
        profile = get_risk_profile(tolerance)
        threshold = self._config.rebalance_threshold if threshold is None else threshold
        current_risk = await self._assessor.assess_portfolio_risk(portfolio, profile.tolerance)
        asset_values = portfolio.asset_values()

        deviations = tuple(
            AllocationDeviation(
                asset=target.asset.upper(),
                current_weight=portfolio.weight(asset_values.get(target.asset.upper(), 0.0)),
                target_weight=target.weight,
            )
            for target in target_allocations or ()
        )
        drifted = [item for item in deviations if item.deviation > threshold]
        if current_risk.is_within_tolerance and not drifted:
            return RebalanceRecommendation(
                needs_rebalancing=False,
                reason="Portfolio is already within target allocation and risk tolerance",
                current_risk=current_risk,
                deviations=deviations,
                threshold=threshold,
            )

        allocations = optimal_allocations(portfolio, profile)
        actions = self._actions(portfolio, allocations, threshold)
        cost_benefit = analyze_cost_benefit(actions)
        reasons = []
        if not current_risk.is_within_tolerance:
            reasons.append("risk exceeds tolerance")
        if drifted:
            reasons.append(f"{len(drifted)} allocation(s) drifted beyond {threshold:.0%}")
        recommendation = RebalanceRecommendation(
            needs_rebalancing=True,
            reason="; ".join(reasons),
            current_risk=current_risk,
            deviations=deviations,
            optimal_allocations=tuple(allocations),
            actions=tuple(actions),
            cost_benefit=cost_benefit,
            projected_risk_reduction=max(0.0, round(current_risk.overall_risk_score * RISK_REDUCTION_RATE, 1)),
            estimated_minutes=BASE_MINUTES + MINUTES_PER_ACTION * len(actions),
            recommendation="immediate",
            threshold=threshold,
        )
        logger.info(
            "Rebalance recommended",
            extra={
                "portfolio_id": portfolio.id,
                "tolerance": profile.tolerance.value,
                "actions": len(actions),
                "net_benefit": cost_benefit.net_benefit,
            },
        )
        return recommendation

    def _actions(
        self,
        portfolio: Portfolio,
        allocations: Sequence[AllocationTarget],
        threshold: float,
    ) -> List[RebalanceAction]:
        asset_values = portfolio.asset_values()
        actions: List[RebalanceAction] = []
        for allocation in allocations:
            asset, target_weight = allocation.asset, allocation.weight
            current_weight = portfolio.weight(asset_values.get(asset, 0.0))
            weight_difference = target_weight - current_weight
            value_difference = weight_difference * portfolio.total_value
            if abs(value_difference) <= self._config.min_action_value:
                continue
            actions.append(
                RebalanceAction(
                    action="increase" if value_difference > 0 else "decrease",
                    asset=asset,
                    current_weight=round(current_weight, 3),
                    target_weight=target_weight,
                    value_difference=round(abs(value_difference), 2),
                    priority="high" if abs(weight_difference) > threshold * 2 else "medium",
                )
            )
        actions.sort(key=lambda item: item.value_difference, reverse=True)
        return actions


__all__ = [
    "AllocationDeviation",
    "AllocationTarget",
    "CostBenefit",
    "RebalanceAction",
    "RebalanceAdvisor",
    "RebalanceRecommendation",
    "action_cost",
    "analyze_cost_benefit",
    "optimal_allocations",
]
