"""Facade bridging the engine components and the web layer."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

from services.benchmarks import Benchmark, StaticBenchmarkSource
from services.ledger import InMemoryLedger, Ledger
from services.protocols import ProtocolDirectory, StaticProtocolDirectory
from services.telemetry import Telemetry

from ..audit import AuditLogWriter, get_audit_logger
from ..automation import (
    AutomationExecutor,
    AutomationScheduler,
    FileAutomationStore,
    InMemoryAutomationStore,
    MetricRegistry,
)
from ..config.models import EngineConfig
from ..errors import ValidationError
from ..models import Portfolio, RiskTolerance, TargetAllocation, require_number
from ..performance_metrics import PerformanceAnalyzer
from ..risk import RebalanceAdvisor, RiskAssessor
from ..stress import StressTester

logger = logging.getLogger(__name__)


@dataclass
class EngineController:
    """Coordinate the scheduler, risk, stress and performance components."""

    ledger: Ledger
    scheduler: AutomationScheduler
    assessor: RiskAssessor
    advisor: RebalanceAdvisor
    stress_tester: StressTester
    analyzer: PerformanceAnalyzer
    telemetry: Telemetry
    metrics: MetricRegistry
    audit_logger: Optional[AuditLogWriter] = None

    # Automations ---------------------------------------------------------

    def create_automation(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        return self.scheduler.create_automation(payload).to_dict()

    def list_automations(self, *, status: Optional[str] = None, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return [item.to_dict() for item in self.scheduler.list_automations(status=status, user_id=user_id)]

    def get_automation(self, automation_id: str) -> Dict[str, Any]:
        return self.scheduler.get_automation(automation_id).to_dict()

    def pause_automation(self, automation_id: str) -> Dict[str, Any]:
        return self.scheduler.pause_automation(automation_id).to_dict()

    def resume_automation(self, automation_id: str) -> Dict[str, Any]:
        return self.scheduler.resume_automation(automation_id).to_dict()

    def cancel_automation(self, automation_id: str) -> Dict[str, Any]:
        return self.scheduler.cancel_automation(automation_id).to_dict()

    def delete_automation(self, automation_id: str) -> None:
        self.scheduler.delete_automation(automation_id)

    async def tick(self, now: Any = None) -> Dict[str, Any]:
        report = await self.scheduler.tick(now)
        return report.to_dict()

    # Risk ----------------------------------------------------------------

    async def resolve_portfolio(self, payload: Mapping[str, Any]) -> Portfolio:
        """Use an explicit ``portfolio`` payload or fall back to the user's ledger holdings."""

        portfolio = payload.get("portfolio")
        if isinstance(portfolio, Mapping):
            return Portfolio.from_mapping(portfolio)
        if portfolio is not None:
            raise ValidationError("portfolio must be an object")
        return await self.ledger.get_portfolio(str(payload.get("user_id") or "default"))

    async def assess_risk(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        portfolio = await self.resolve_portfolio(payload)
        tolerance = RiskTolerance.parse(payload.get("tolerance") or RiskTolerance.MODERATE.value)
        assessment = await self.assessor.assess_portfolio_risk(portfolio, tolerance)
        return assessment.to_dict()

    async def recommend_rebalance(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        portfolio = await self.resolve_portfolio(payload)
        tolerance = RiskTolerance.parse(payload.get("tolerance") or RiskTolerance.MODERATE.value)
        targets = _target_allocations(payload.get("target_allocations"))
        threshold = payload.get("threshold")
        recommendation = await self.advisor.generate_rebalance_recommendation(
            portfolio,
            tolerance,
            targets,
            threshold=require_number(threshold, "threshold") if threshold is not None else None,
        )
        return recommendation.to_dict()

    async def run_stress_test(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        portfolio = await self.resolve_portfolio(payload)
        scenarios = payload.get("scenarios")
        if scenarios is not None and not isinstance(scenarios, Sequence):
            raise ValidationError("scenarios must be a list of scenario names")
        return self.stress_tester.run_stress_test(portfolio, list(scenarios) if scenarios else None).to_dict()

    # Performance ---------------------------------------------------------

    async def calculate_performance(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        transactions = payload.get("transactions")
        if transactions is None:
            transactions = await self.ledger.get_transactions(str(payload.get("user_id") or "default"))
        if "current_value" not in payload:
            raise ValidationError("current_value is required")
        volatility = payload.get("volatility")
        return self.analyzer.calculate_performance_metrics(
            transactions,
            require_number(payload["current_value"], "current_value"),
            str(payload.get("timeframe") or "1year"),
            strategy_id=payload.get("strategy_id"),
            volatility=require_number(volatility, "volatility") if volatility is not None else None,
        )

    def generate_projections(self, payload: Mapping[str, Any]) -> Dict[str, Any]:
        current = require_number(payload.get("current_value", 0.0), "current_value")
        contribution = require_number(payload.get("monthly_contribution", 0.0), "monthly_contribution")
        apy = require_number(payload.get("expected_apy", 0.0), "expected_apy")
        return self.analyzer.generate_projections(
            current,
            contribution,
            payload.get("horizon", 12),
            apy,
            payload.get("risk_level"),
        )

    # Observability -------------------------------------------------------

    def health(self) -> Dict[str, Any]:
        return {
            "status": "ok",
            "tick_in_flight": self.scheduler.tick_in_flight,
            "services": self.telemetry.health_snapshot(),
            "metrics": self.metrics.snapshot(),
        }


def _target_allocations(raw: Any) -> Optional[List[TargetAllocation]]:
    if raw is None:
        return None
    if not isinstance(raw, Sequence) or isinstance(raw, (str, bytes)):
        raise ValidationError("target_allocations must be a list")
    targets: List[TargetAllocation] = []
    for entry in raw:
        if not isinstance(entry, Mapping) or "asset" not in entry:
            raise ValidationError("target_allocations entries require 'asset' and 'weight'")
        weight = require_number(entry.get("weight", 0.0), "weight")
        targets.append(TargetAllocation(asset=str(entry["asset"]).upper(), weight=weight))
    return targets


def build_controller(
    config: Optional[EngineConfig] = None,
    *,
    ledger: Optional[Ledger] = None,
    protocol_directory: Optional[ProtocolDirectory] = None,
) -> EngineController:
    """Wire the default collaborators for ``config``."""

    config = config or EngineConfig()
    ledger = ledger or InMemoryLedger()
    protocol_directory = protocol_directory or StaticProtocolDirectory()
    audit_logger = get_audit_logger(config.audit)
    metrics = MetricRegistry()
    telemetry = Telemetry()

    assessor = RiskAssessor(protocol_directory, config=config.risk, telemetry=telemetry, audit_logger=audit_logger)
    advisor = RebalanceAdvisor(assessor, config=config.risk)
    executor = AutomationExecutor(ledger, risk_assessor=assessor, rebalance_advisor=advisor, metrics=metrics)
    store = FileAutomationStore(config.store_path) if config.store_path else InMemoryAutomationStore()
    scheduler = AutomationScheduler(
        executor, store=store, config=config.scheduler, audit_logger=audit_logger, metrics=metrics
    )
    benchmarks = StaticBenchmarkSource(
        Benchmark(
            id=item.id,
            name=item.name,
            symbol=item.symbol,
            apy=item.apy,
            volatility=item.volatility,
            category=item.category,
        )
        for item in config.benchmarks.values()
    )
    analyzer = PerformanceAnalyzer(benchmarks=benchmarks, config=config.performance, audit_logger=audit_logger)
    logger.debug(
        "Engine controller built",
        extra={"store": str(config.store_path) if config.store_path else "memory", "audit": audit_logger is not None},
    )
    return EngineController(
        ledger=ledger,
        scheduler=scheduler,
        assessor=assessor,
        advisor=advisor,
        stress_tester=StressTester(),
        analyzer=analyzer,
        telemetry=telemetry,
        metrics=metrics,
        audit_logger=audit_logger,
    )


__all__ = ["EngineController", "build_controller"]
