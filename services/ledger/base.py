"""Ledger interface consumed by automation handlers."""

from __future__ import annotations

import abc
import logging
from typing import Any, Mapping, Optional, Sequence

from portfolio_automation.models import Balance, Portfolio, Position, Strategy, Transaction

logger = logging.getLogger(__name__)


class LedgerError(RuntimeError):
    """Raised by ledger implementations when an operation cannot be applied."""

    def __init__(self, message: str, *, code: str = "ledger_error") -> None:
        self.code = code
        super().__init__(message)


class UnknownStrategyError(LedgerError):
    def __init__(self, user_id: str, strategy_id: str) -> None:
        self.user_id = user_id
        self.strategy_id = strategy_id
        super().__init__(f"Strategy {strategy_id} not found for user {user_id}", code="unknown_strategy")


class Ledger(abc.ABC):
    """Asynchronous access to user balances, strategies and transaction history.

    Implementations own the money; handlers only ask for movements and record
    the matching transaction.
    """

    @abc.abstractmethod
    async def get_balance(self, user_id: str) -> Balance:
        """Return the user's cash and invested totals."""

    @abc.abstractmethod
    async def credit_available(self, user_id: str, amount: float, reason: str) -> None:
        """Add ``amount`` to the user's available (uninvested) balance."""

    @abc.abstractmethod
    async def credit_strategy(
        self, user_id: str, strategy_id: str, amount: float, meta: Optional[Mapping[str, Any]] = None
    ) -> None:
        """Move ``amount`` from available funds into ``strategy_id``."""

    @abc.abstractmethod
    async def debit_strategy(self, user_id: str, strategy_id: str, amount: float) -> float:
        """Withdraw up to ``amount`` from ``strategy_id`` and return what was withdrawn."""

    @abc.abstractmethod
    async def add_transaction(self, user_id: str, tx: Transaction) -> None:
        """Append ``tx`` to the user's history."""

    @abc.abstractmethod
    async def get_active_strategies(self, user_id: str) -> Sequence[Strategy]:
        """Return strategies with a positive current amount."""

    async def get_transactions(self, user_id: str) -> Sequence[Transaction]:
        raise NotImplementedError

    async def get_accrued_yield(self, user_id: str, strategy_id: str) -> float:
        """Return the harvestable yield currently accrued by ``strategy_id``."""
        raise NotImplementedError

    async def claim_yield(self, user_id: str, strategy_id: str) -> float:
        """Claim accrued yield and return the claimed amount."""
        raise NotImplementedError

    async def apply_rebalance(self, user_id: str, asset: str, value_delta: float) -> None:
        """Shift ``value_delta`` of exposure into (positive) or out of (negative) ``asset``."""
        raise NotImplementedError

    async def get_portfolio(self, user_id: str) -> Portfolio:
        """Build a portfolio snapshot from the active strategies."""

        strategies = await self.get_active_strategies(user_id)
        positions = [
            Position(asset=strategy.asset.upper(), protocol=strategy.protocol.lower(), value=strategy.current_amount)
            for strategy in strategies
            if strategy.current_amount > 0
        ]
        return Portfolio.from_positions(positions, portfolio_id=user_id)


__all__ = ["Ledger", "LedgerError", "UnknownStrategyError"]
