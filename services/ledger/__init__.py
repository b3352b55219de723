"""Ledger interface and implementations."""

from .base import Ledger, LedgerError, UnknownStrategyError
from .memory import InMemoryLedger

__all__ = ["InMemoryLedger", "Ledger", "LedgerError", "UnknownStrategyError"]
