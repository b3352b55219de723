"""Portfolio risk scoring and rebalancing advice."""

from .assessor import RiskAssessment, RiskAssessor, RiskMetrics, RiskRecommendation
from .profiles import RISK_PROFILES, RiskProfile, get_risk_profile, risk_level_for
from .rebalance import RebalanceAction, RebalanceAdvisor, RebalanceRecommendation

__all__ = [
    "RISK_PROFILES",
    "RebalanceAction",
    "RebalanceAdvisor",
    "RebalanceRecommendation",
    "RiskAssessment",
    "RiskAssessor",
    "RiskMetrics",
    "RiskProfile",
    "RiskRecommendation",
    "get_risk_profile",
    "risk_level_for",
]
