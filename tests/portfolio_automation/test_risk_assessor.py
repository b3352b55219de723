import asyncio

import pytest

from portfolio_automation.audit import AuditLogWriter, FileAuditSink, read_audit_entries
from portfolio_automation.errors import ConfigurationError
from portfolio_automation.models import Portfolio, Position, RiskLevel, RiskTolerance
from portfolio_automation.risk import RiskAssessor, get_risk_profile, risk_level_for
from portfolio_automation.risk.assessor import concentration_risk, correlation_risk
from services.protocols import ProtocolDirectory, StaticProtocolDirectory
from services.telemetry import Telemetry


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class CountingDirectory(StaticProtocolDirectory):
    def __init__(self) -> None:
        super().__init__()
        self.calls = 0

    async def get_protocol_health(self, protocol_id):
        self.calls += 1
        return await super().get_protocol_health(protocol_id)


class OfflineDirectory(ProtocolDirectory):
    async def get_protocol_health(self, protocol_id):
        raise ConnectionError("directory offline")


def _single(asset: str, protocol: str = "compound", value: float = 1_000) -> Portfolio:
    return Portfolio.from_positions([Position(asset, protocol, value)])


def _assess(portfolio: Portfolio, tolerance="Moderate", directory=None, **kwargs):
    assessor = RiskAssessor(directory or StaticProtocolDirectory(), **kwargs)
    return asyncio.run(assessor.assess_portfolio_risk(portfolio, tolerance))


def test_empty_portfolio_scores_zero() -> None:
    assessment = _assess(Portfolio(total_value=0))

    assert assessment.overall_risk_score == 0
    assert assessment.risk_level is RiskLevel.VERY_LOW
    assert assessment.risk_metrics.to_dict() == {
        "concentration": 0,
        "volatility": 0,
        "liquidity": 0,
        "protocol": 0,
        "correlation": 0,
    }
    assert assessment.is_within_tolerance


def test_stablecoin_on_compound_is_very_low_risk() -> None:
    assessment = _assess(_single("USDC"))

    assert assessment.overall_risk_score == pytest.approx(14.0)
    assert assessment.risk_level is RiskLevel.VERY_LOW
    metrics = assessment.risk_metrics
    assert metrics.concentration == 0
    assert metrics.volatility == pytest.approx(1.0)
    assert metrics.liquidity == pytest.approx(5.0)
    assert metrics.protocol == pytest.approx(15.0)
    assert metrics.correlation == 100


@pytest.mark.parametrize(
    "tolerance, within",
    [
        ("Conservative", False),
        ("Moderate", False),
        ("Balanced", False),
        ("Aggressive", True),
        ("Very Aggressive", True),
    ],
)
def test_single_btc_position_against_each_tolerance(tolerance, within) -> None:
    assessment = _assess(_single("BTC"), tolerance)

    assert assessment.overall_risk_score == pytest.approx(55.55)
    assert assessment.risk_level is RiskLevel.HIGH
    assert assessment.is_within_tolerance is within
    assert assessment.tolerance is RiskTolerance.parse(tolerance)


def test_out_of_tolerance_assessment_recommends_reduction() -> None:
    assessment = _assess(_single("BTC"), "Conservative")

    kinds = [item.type for item in assessment.recommendations]
    assert kinds == ["risk_reduction", "diversification"]
    assert assessment.to_dict()["recommendations"][0]["priority"] == "high"


def test_unknown_tolerance_raises() -> None:
    with pytest.raises(ConfigurationError):
        _assess(_single("USDC"), "Reckless")


def test_concentration_grows_with_largest_weight() -> None:
    scores = [
        concentration_risk(
            Portfolio.from_positions([Position("ETH", "aave", share), Position("SOL", "curve", 100 - share)])
        )
        for share in (50, 60, 70, 80, 90)
    ]

    assert scores == sorted(scores)
    assert scores[0] < scores[-1]
    assert all(0 <= score <= 100 for score in scores)


def test_correlation_uses_pair_table() -> None:
    portfolio = Portfolio.from_positions([Position("ETH", "aave", 500), Position("WBTC", "aave", 500)])

    assert correlation_risk(portfolio) == pytest.approx(75.0)


def test_unhealthy_protocol_scores_eighty() -> None:
    directory = StaticProtocolDirectory(unhealthy=["compound"])

    assessment = _assess(_single("USDC"), directory=directory)

    assert assessment.risk_metrics.protocol == 80
    assert assessment.overall_risk_score == pytest.approx(27.0)


def test_unreachable_directory_falls_back_to_default_risk() -> None:
    telemetry = Telemetry()

    assessment = _assess(_single("USDC"), directory=OfflineDirectory(), telemetry=telemetry)

    assert assessment.risk_metrics.protocol == 50
    assert assessment.overall_risk_score == pytest.approx(21.0)
    assert telemetry.health_snapshot()["services"]["protocol_directory"]["status"] == "degraded"


def test_unlisted_protocol_uses_default_risk() -> None:
    assessment = _assess(_single("USDC", protocol="obscure-dex"))

    assert assessment.risk_metrics.protocol == 50


def test_assessments_are_cached_until_ttl_expires() -> None:
    clock = FakeClock()
    directory = CountingDirectory()
    assessor = RiskAssessor(directory, clock=clock)
    portfolio = _single("ETH", protocol="aave")

    first = asyncio.run(assessor.assess_portfolio_risk(portfolio, "Moderate"))
    second = asyncio.run(assessor.assess_portfolio_risk(portfolio, "Moderate"))
    assert second is first
    assert directory.calls == 1

    asyncio.run(assessor.assess_portfolio_risk(portfolio, "Aggressive"))
    assert directory.calls == 2

    clock.now = 600
    asyncio.run(assessor.assess_portfolio_risk(portfolio, "Moderate"))
    assert directory.calls == 3


def test_cache_keeps_portfolios_with_identical_holdings_apart() -> None:
    directory = CountingDirectory()
    assessor = RiskAssessor(directory, clock=FakeClock())
    positions = [Position("ETH", "aave", 1_000)]
    alice_portfolio = Portfolio.from_positions(positions, portfolio_id="alice")
    bob_portfolio = Portfolio.from_positions(positions, portfolio_id="bob")

    alice = asyncio.run(assessor.assess_portfolio_risk(alice_portfolio, "Moderate"))
    bob = asyncio.run(assessor.assess_portfolio_risk(bob_portfolio, "Moderate"))

    assert alice.portfolio_id == "alice"
    assert bob.portfolio_id == "bob"
    assert bob.overall_risk_score == alice.overall_risk_score
    assert directory.calls == 2


def test_assessment_is_audited(tmp_path) -> None:
    log_path = tmp_path / "audit.log"
    audit = AuditLogWriter(file_sink=FileAuditSink(log_path))

    _assess(_single("USDC"), audit_logger=audit)

    [entry] = read_audit_entries(log_path)
    assert entry["action"] == "portfolio.risk_assessed"
    assert entry["details"]["risk_level"] == "Very Low"


@pytest.mark.parametrize(
    "score, level",
    [(0, RiskLevel.VERY_LOW), (20, RiskLevel.VERY_LOW), (20.01, RiskLevel.LOW), (50, RiskLevel.MODERATE), (70.5, RiskLevel.VERY_HIGH)],
)
def test_risk_level_bands(score, level) -> None:
    assert risk_level_for(score) is level


def test_profiles_cover_every_tolerance() -> None:
    scores = [get_risk_profile(tolerance).tolerance_score for tolerance in RiskTolerance]

    assert scores == [20, 35, 50, 70, 90]
