import asyncio

import pytest

from portfolio_automation.models import Strategy
from services.ledger import InMemoryLedger, LedgerError, UnknownStrategyError


def _run(coro):
    return asyncio.run(coro)


def test_credit_strategy_moves_available_funds():
    ledger = InMemoryLedger()
    ledger.set_available("alice", 500)

    _run(ledger.credit_strategy("alice", "eth", 200, {"asset": "eth", "protocol": "Aave", "expected_apy": 4.2}))

    [strategy] = _run(ledger.get_active_strategies("alice"))
    assert (strategy.asset, strategy.protocol, strategy.apy) == ("ETH", "aave", 4.2)
    assert strategy.current_amount == strategy.target_amount == 200
    balance = _run(ledger.get_balance("alice"))
    assert (balance.total, balance.available, balance.invested) == (500, 300, 200)


def test_credit_strategy_requires_available_balance():
    ledger = InMemoryLedger()
    ledger.set_available("alice", 50)

    with pytest.raises(LedgerError) as excinfo:
        _run(ledger.credit_strategy("alice", "eth", 100))

    assert excinfo.value.code == "insufficient_funds"
    assert _run(ledger.get_active_strategies("alice")) == []


def test_debit_strategy_clamps_and_scales_principal():
    ledger = InMemoryLedger()
    ledger.add_strategy("alice", Strategy("s1", "Lending", "USDC", "aave", 800, 1_000))

    withdrawn = _run(ledger.debit_strategy("alice", "s1", 200))
    rest = _run(ledger.debit_strategy("alice", "s1", 10_000))

    assert withdrawn == 200
    assert rest == 600
    assert _run(ledger.get_active_strategies("alice")) == []


def test_unknown_strategy_raises():
    ledger = InMemoryLedger()

    with pytest.raises(UnknownStrategyError) as excinfo:
        _run(ledger.debit_strategy("alice", "ghost", 1))

    assert excinfo.value.code == "unknown_strategy"
    with pytest.raises(UnknownStrategyError):
        ledger.set_accrued_yield("alice", "ghost", 5)


def test_claim_yield_empties_accrual():
    ledger = InMemoryLedger()
    ledger.add_strategy("alice", Strategy("s1", "Curve", "USDC", "curve", 100, 100))
    ledger.set_accrued_yield("alice", "s1", 7.5)

    assert _run(ledger.get_accrued_yield("alice", "s1")) == 7.5
    assert _run(ledger.claim_yield("alice", "s1")) == 7.5
    assert _run(ledger.get_accrued_yield("alice", "s1")) == 0


def test_apply_rebalance_checks_exposure_and_cash():
    ledger = InMemoryLedger()
    ledger.add_strategy("alice", Strategy("s1", "ETH", "ETH", "aave", 300, 300))

    with pytest.raises(LedgerError):
        _run(ledger.apply_rebalance("alice", "ETH", -500))
    with pytest.raises(LedgerError):
        _run(ledger.apply_rebalance("alice", "USDC", 10_000))

    ledger.set_available("alice", 0)
    _run(ledger.apply_rebalance("alice", "eth", -100))
    _run(ledger.apply_rebalance("alice", "USDC", 100))

    holdings = {item.asset: item.current_amount for item in _run(ledger.get_active_strategies("alice"))}
    assert holdings == {"ETH": 200, "USDC": 100}


def test_portfolio_snapshot_excludes_idle_cash():
    ledger = InMemoryLedger()
    ledger.set_available("alice", 1_000)
    ledger.add_strategy("alice", Strategy("s1", "ETH", "eth", "Aave", 400, 400))

    portfolio = _run(ledger.get_portfolio("alice"))

    assert portfolio.id == "alice"
    assert portfolio.total_value == 400
    assert portfolio.asset_values() == {"ETH": 400}
    assert portfolio.protocol_values() == {"aave": 400}
