"""Type-dispatched handlers that carry out a single automation run."""

from __future__ import annotations

import inspect
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

from services.ledger import Ledger, LedgerError, UnknownStrategyError

from ..errors import ExecutionError
from ..models import (
    Automation,
    AutomationType,
    DepositParameters,
    HandlerResult,
    RebalancingParameters,
    StopLossParameters,
    Strategy,
    StrategyExecutionParameters,
    TakeProfitParameters,
    Transaction,
    TransactionKind,
    YieldHarvestParameters,
)
from ..risk.assessor import RiskAssessor
from ..risk.rebalance import RebalanceAdvisor
from .metrics import MetricRegistry, Timer

logger = logging.getLogger(__name__)

ConditionEvaluator = Callable[[Automation, Mapping[str, Any]], Union[bool, Awaitable[bool]]]


def always_true(automation: Automation, conditions: Mapping[str, Any]) -> bool:
    return True


class AutomationExecutor:
    """Runs one automation against the ledger and reports the outcome.

    Handlers raise :class:`ExecutionError` for failures and return a skipped
    :class:`HandlerResult` when a gate (conditions, risk, thresholds) is not met.
    """

    def __init__(
        self,
        ledger: Ledger,
        *,
        risk_assessor: Optional[RiskAssessor] = None,
        rebalance_advisor: Optional[RebalanceAdvisor] = None,
        condition_evaluator: ConditionEvaluator = always_true,
        metrics: Optional[MetricRegistry] = None,
    ) -> None:
        self._ledger = ledger
        self._risk_assessor = risk_assessor
        self._rebalance_advisor = rebalance_advisor
        self._conditions = condition_evaluator
        self._metrics = metrics or MetricRegistry()
        self._handlers: Dict[AutomationType, Callable[[Automation, datetime], Awaitable[HandlerResult]]] = {
            AutomationType.SCHEDULED_DEPOSIT: self._scheduled_deposit,
            AutomationType.STRATEGY_EXECUTION: self._strategy_execution,
            AutomationType.REBALANCING: self._rebalancing,
            AutomationType.TAKE_PROFIT: self._take_profit,
            AutomationType.STOP_LOSS: self._stop_loss,
            AutomationType.YIELD_HARVEST: self._yield_harvest,
        }

    async def execute(self, automation: Automation, now: datetime) -> HandlerResult:
        handler = self._handlers[automation.type]
        with Timer(self._metrics, "automation_handler_latency_seconds", labels={"type": automation.type.value}):
            try:
                return await handler(automation, now)
            except ExecutionError:
                raise
            except UnknownStrategyError as exc:
                raise ExecutionError(str(exc), kind="unknown_strategy") from exc
            except LedgerError as exc:
                raise ExecutionError(str(exc), kind=exc.code) from exc

    async def _conditions_met(self, automation: Automation, conditions: Mapping[str, Any]) -> bool:
        if not conditions:
            return True
        outcome = self._conditions(automation, conditions)
        if inspect.isawaitable(outcome):
            outcome = await outcome
        return bool(outcome)

    async def _record(
        self,
        automation: Automation,
        kind: TransactionKind,
        amount: float,
        now: datetime,
        *,
        strategy_id: Optional[str] = None,
        asset: Optional[str] = None,
        **metadata: Any,
    ) -> None:
        await self._ledger.add_transaction(
            automation.user_id,
            Transaction(
                kind=kind,
                amount=amount,
                timestamp=now,
                strategy_id=strategy_id,
                automation_id=automation.id,
                asset=asset,
                metadata=dict(metadata),
            ),
        )

    async def _require_available(self, automation: Automation, amount: float) -> None:
        balance = await self._ledger.get_balance(automation.user_id)
        if balance.available < amount:
            raise ExecutionError(
                f"Insufficient balance: {balance.available:.2f} available, {amount:.2f} required",
                kind="insufficient_funds",
                details={"available": balance.available, "required": amount},
            )

    async def _find_strategy(self, automation: Automation, strategy_id: str) -> Strategy:
        for strategy in await self._ledger.get_active_strategies(automation.user_id):
            if strategy.id == strategy_id:
                return strategy
        raise ExecutionError(f"Strategy {strategy_id} is not active", kind="unknown_strategy")

    # Handlers ------------------------------------------------------------

    async def _scheduled_deposit(self, automation: Automation, now: datetime) -> HandlerResult:
        params: DepositParameters = automation.parameters  # type: ignore[assignment]
        await self._require_available(automation, params.amount)
        if params.target_strategy:
            await self._ledger.credit_strategy(
                automation.user_id,
                params.target_strategy,
                params.amount,
                {"automation_id": automation.id, "source_account": params.source_account},
            )
        else:
            await self._ledger.credit_available(automation.user_id, params.amount, f"automation:{automation.id}")
        await self._record(
            automation,
            TransactionKind.DEPOSIT,
            params.amount,
            now,
            strategy_id=params.target_strategy,
            currency=params.currency,
        )
        logger.info(
            "Scheduled deposit executed",
            extra={"automation_id": automation.id, "amount": params.amount, "target": params.target_strategy},
        )
        return HandlerResult.ok(amount=params.amount, target_strategy=params.target_strategy)

    async def _strategy_execution(self, automation: Automation, now: datetime) -> HandlerResult:
        params: StrategyExecutionParameters = automation.parameters  # type: ignore[assignment]
        if not await self._conditions_met(automation, params.conditions):
            return HandlerResult.skip("conditions_not_met")
        if params.risk_parameters.require_risk_check:
            if self._risk_assessor is None:
                raise ExecutionError("Risk check requested but no risk assessor is configured")
            portfolio = await self._ledger.get_portfolio(automation.user_id)
            assessment = await self._risk_assessor.assess_portfolio_risk(
                portfolio, params.risk_parameters.risk_tolerance
            )
            if not assessment.is_within_tolerance:
                logger.warning(
                    "Strategy execution skipped: portfolio outside risk tolerance",
                    extra={
                        "automation_id": automation.id,
                        "score": round(assessment.overall_risk_score, 2),
                        "tolerance": assessment.tolerance.value,
                    },
                )
                return HandlerResult.skip(
                    "risk_tolerance_exceeded", risk_score=round(assessment.overall_risk_score, 2)
                )
        await self._require_available(automation, params.amount)
        await self._ledger.credit_strategy(
            automation.user_id,
            params.strategy_id,
            params.amount,
            {
                "automation_id": automation.id,
                "strategy_name": params.strategy_name,
                "protocol": params.protocol,
                "expected_apy": params.expected_apy,
            },
        )
        await self._record(
            automation,
            TransactionKind.START_STRATEGY,
            params.amount,
            now,
            strategy_id=params.strategy_id,
            protocol=params.protocol,
        )
        return HandlerResult.ok(strategy_id=params.strategy_id, amount=params.amount)

    async def _rebalancing(self, automation: Automation, now: datetime) -> HandlerResult:
        params: RebalancingParameters = automation.parameters  # type: ignore[assignment]
        if self._rebalance_advisor is None:
            raise ExecutionError("Rebalancing requested but no rebalance advisor is configured")
        portfolio = await self._ledger.get_portfolio(automation.user_id)
        recommendation = await self._rebalance_advisor.generate_rebalance_recommendation(
            portfolio,
            params.risk_tolerance,
            params.target_allocations or None,
            threshold=params.rebalance_threshold,
        )
        if not recommendation.needs_rebalancing:
            return HandlerResult.skip("rebalance_not_needed")
        if not recommendation.actions:
            return HandlerResult.skip("no_actions_above_minimum")

        # Sales run first so purchases can be funded from their proceeds.
        ordered = sorted(recommendation.actions, key=lambda action: action.action != "decrease")
        applied: List[Dict[str, Any]] = []
        errors: List[Dict[str, Any]] = []
        for action in ordered:
            try:
                await self._ledger.apply_rebalance(automation.user_id, action.asset, action.signed_value)
            except Exception as exc:
                logger.error(
                    "Rebalance action failed",
                    extra={"automation_id": automation.id, "asset": action.asset, "error": str(exc)},
                    exc_info=True,
                )
                errors.append({"asset": action.asset, "action": action.action, "error": str(exc)})
                continue
            await self._record(
                automation,
                TransactionKind.REBALANCE,
                action.value_difference,
                now,
                asset=action.asset,
                direction=action.action,
            )
            applied.append(action.to_dict())
        if not applied:
            raise ExecutionError(
                f"All {len(errors)} rebalance actions failed", kind="rebalance_failed", details={"errors": errors}
            )
        return HandlerResult.ok(actions=applied, errors=errors)

    async def _take_profit(self, automation: Automation, now: datetime) -> HandlerResult:
        params: TakeProfitParameters = automation.parameters  # type: ignore[assignment]
        strategy = await self._find_strategy(automation, params.strategy_id)
        if strategy.target_amount <= 0:
            return HandlerResult.skip("no_invested_principal")
        current_return = (strategy.current_amount - strategy.target_amount) / strategy.target_amount * 100
        if current_return < params.target_return:
            return HandlerResult.skip("target_not_reached", current_return=round(current_return, 2))
        if not await self._conditions_met(automation, params.conditions):
            return HandlerResult.skip("conditions_not_met")
        proceeds = await self._exit_strategy(automation, strategy, params.sell_percentage, now, "take_profit")
        return HandlerResult.ok(
            strategy_id=strategy.id, amount=proceeds, current_return=round(current_return, 2)
        )

    async def _stop_loss(self, automation: Automation, now: datetime) -> HandlerResult:
        params: StopLossParameters = automation.parameters  # type: ignore[assignment]
        strategy = await self._find_strategy(automation, params.strategy_id)
        if strategy.target_amount <= 0:
            return HandlerResult.skip("no_invested_principal")
        loss = (strategy.target_amount - strategy.current_amount) / strategy.target_amount * 100
        if loss < params.max_loss:
            return HandlerResult.skip("loss_below_threshold", current_loss=round(loss, 2))
        if not await self._conditions_met(automation, params.conditions):
            return HandlerResult.skip("conditions_not_met")
        proceeds = await self._exit_strategy(automation, strategy, params.sell_percentage, now, "stop_loss")
        return HandlerResult.ok(strategy_id=strategy.id, amount=proceeds, current_loss=round(loss, 2))

    async def _exit_strategy(
        self,
        automation: Automation,
        strategy: Strategy,
        sell_percentage: float,
        now: datetime,
        trigger: str,
    ) -> float:
        requested = min(strategy.current_amount * sell_percentage / 100, strategy.current_amount)
        withdrawn = await self._ledger.debit_strategy(automation.user_id, strategy.id, requested)
        await self._ledger.credit_available(automation.user_id, withdrawn, f"{trigger}:{automation.id}")
        await self._record(
            automation,
            TransactionKind.STOP_STRATEGY,
            withdrawn,
            now,
            strategy_id=strategy.id,
            asset=strategy.asset,
            trigger=trigger,
            sell_percentage=sell_percentage,
        )
        logger.info(
            "Strategy position exited",
            extra={"automation_id": automation.id, "strategy_id": strategy.id, "amount": withdrawn, "trigger": trigger},
        )
        return withdrawn

    async def _yield_harvest(self, automation: Automation, now: datetime) -> HandlerResult:
        params: YieldHarvestParameters = automation.parameters  # type: ignore[assignment]
        harvested: List[Dict[str, Any]] = []
        below_minimum: List[str] = []
        errors: List[Dict[str, Any]] = []
        for strategy_id in params.strategies:
            try:
                accrued = await self._ledger.get_accrued_yield(automation.user_id, strategy_id)
                if accrued < params.min_harvest_amount or accrued <= 0:
                    below_minimum.append(strategy_id)
                    continue
                claimed = await self._ledger.claim_yield(automation.user_id, strategy_id)
                await self._ledger.credit_available(automation.user_id, claimed, f"harvest:{strategy_id}")
                await self._record(automation, TransactionKind.HARVEST, claimed, now, strategy_id=strategy_id)
            except Exception as exc:
                logger.error(
                    "Yield harvest failed for strategy",
                    extra={"automation_id": automation.id, "strategy_id": strategy_id, "error": str(exc)},
                    exc_info=True,
                )
                errors.append({"strategy_id": strategy_id, "error": str(exc)})
                continue
            harvested.append({"strategy_id": strategy_id, "amount": claimed})

        if errors and len(errors) == len(params.strategies):
            raise ExecutionError(
                f"Harvest failed for all {len(errors)} strategies", kind="harvest_failed", details={"errors": errors}
            )
        total = round(sum(item["amount"] for item in harvested), 8)
        if not harvested:
            return HandlerResult.skip("nothing_to_harvest", below_minimum=below_minimum, errors=errors)
        return HandlerResult.ok(
            total_harvested=total, harvested=harvested, below_minimum=below_minimum, errors=errors
        )


__all__ = ["AutomationExecutor", "ConditionEvaluator", "always_true"]
