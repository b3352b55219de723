"""Dictionary-backed ledger used for local runs and tests."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence

from portfolio_automation.models import Balance, Strategy, Transaction

from .base import Ledger, LedgerError, UnknownStrategyError

logger = logging.getLogger(__name__)


@dataclass
class _Account:
    available: float = 0.0
    strategies: Dict[str, Strategy] = field(default_factory=dict)
    accrued_yield: Dict[str, float] = field(default_factory=dict)
    transactions: List[Transaction] = field(default_factory=list)


class InMemoryLedger(Ledger):
    def __init__(self, *, currency: str = "USD") -> None:
        self.currency = currency
        self._accounts: Dict[str, _Account] = {}

    def _account(self, user_id: str) -> _Account:
        return self._accounts.setdefault(user_id, _Account())

    def _strategy(self, user_id: str, strategy_id: str) -> Strategy:
        strategy = self._account(user_id).strategies.get(strategy_id)
        if strategy is None:
            raise UnknownStrategyError(user_id, strategy_id)
        return strategy

    # Seeding helpers -----------------------------------------------------

    def set_available(self, user_id: str, amount: float) -> None:
        self._account(user_id).available = float(amount)

    def add_strategy(self, user_id: str, strategy: Strategy) -> None:
        self._account(user_id).strategies[strategy.id] = strategy

    def set_accrued_yield(self, user_id: str, strategy_id: str, amount: float) -> None:
        self._strategy(user_id, strategy_id)
        self._account(user_id).accrued_yield[strategy_id] = float(amount)

    # Ledger interface ------------------------------------------------------

    async def get_balance(self, user_id: str) -> Balance:
        account = self._account(user_id)
        invested = sum(strategy.current_amount for strategy in account.strategies.values())
        return Balance(
            total=account.available + invested,
            available=account.available,
            invested=invested,
            currency=self.currency,
        )

    async def credit_available(self, user_id: str, amount: float, reason: str) -> None:
        account = self._account(user_id)
        account.available += amount
        logger.debug("Credited available balance", extra={"user_id": user_id, "amount": amount, "reason": reason})

    async def credit_strategy(
        self, user_id: str, strategy_id: str, amount: float, meta: Optional[Mapping[str, Any]] = None
    ) -> None:
        account = self._account(user_id)
        if account.available < amount:
            raise LedgerError(
                f"Insufficient available balance for {user_id}: {account.available:.2f} < {amount:.2f}",
                code="insufficient_funds",
            )
        meta = meta or {}
        strategy = account.strategies.get(strategy_id)
        if strategy is None:
            strategy = Strategy(
                id=strategy_id,
                name=str(meta.get("strategy_name") or strategy_id),
                asset=str(meta.get("asset") or "USDC").upper(),
                protocol=str(meta.get("protocol") or "unknown").lower(),
                current_amount=0.0,
                target_amount=0.0,
                apy=float(meta.get("expected_apy") or 0.0),
            )
            account.strategies[strategy_id] = strategy
        account.available -= amount
        strategy.current_amount += amount
        strategy.target_amount += amount

    async def debit_strategy(self, user_id: str, strategy_id: str, amount: float) -> float:
        strategy = self._strategy(user_id, strategy_id)
        withdrawn = min(amount, strategy.current_amount)
        if strategy.current_amount > 0:
            strategy.target_amount *= 1 - withdrawn / strategy.current_amount
        strategy.current_amount -= withdrawn
        return withdrawn

    async def add_transaction(self, user_id: str, tx: Transaction) -> None:
        self._account(user_id).transactions.append(tx)

    async def get_active_strategies(self, user_id: str) -> Sequence[Strategy]:
        return [strategy for strategy in self._account(user_id).strategies.values() if strategy.current_amount > 0]

    async def get_transactions(self, user_id: str) -> Sequence[Transaction]:
        return list(self._account(user_id).transactions)

    async def get_accrued_yield(self, user_id: str, strategy_id: str) -> float:
        self._strategy(user_id, strategy_id)
        return self._account(user_id).accrued_yield.get(strategy_id, 0.0)

    async def claim_yield(self, user_id: str, strategy_id: str) -> float:
        self._strategy(user_id, strategy_id)
        return self._account(user_id).accrued_yield.pop(strategy_id, 0.0)

    async def apply_rebalance(self, user_id: str, asset: str, value_delta: float) -> None:
        account = self._account(user_id)
        holdings = [strategy for strategy in account.strategies.values() if strategy.asset.upper() == asset.upper()]
        if value_delta < 0:
            remaining = -value_delta
            if sum(strategy.current_amount for strategy in holdings) + 1e-9 < remaining:
                raise LedgerError(f"Not enough {asset} exposure to reduce by {remaining:.2f}", code="insufficient_funds")
            for strategy in holdings:
                taken = min(remaining, strategy.current_amount)
                strategy.current_amount -= taken
                account.available += taken
                remaining -= taken
                if remaining <= 0:
                    break
            return
        if account.available < value_delta:
            raise LedgerError(
                f"Insufficient available balance to buy {value_delta:.2f} of {asset}", code="insufficient_funds"
            )
        if holdings:
            target = holdings[0]
        else:
            target = Strategy(
                id=f"rebalance:{asset.lower()}",
                name=f"{asset.upper()} allocation",
                asset=asset.upper(),
                protocol="wallet",
                current_amount=0.0,
                target_amount=0.0,
            )
            account.strategies[target.id] = target
        account.available -= value_delta
        target.current_amount += value_delta
        target.target_amount += value_delta


__all__ = ["InMemoryLedger"]
