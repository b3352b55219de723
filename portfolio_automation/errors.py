"""Exception hierarchy shared by the automation and risk components."""

from __future__ import annotations

from typing import Iterable, Optional, Sequence


class EngineError(Exception):
    """Base class for errors raised by the portfolio engine."""


class ValidationError(EngineError, ValueError):
    """Raised when an automation request or state transition is rejected."""

    def __init__(self, message: str, errors: Optional[Iterable[str]] = None) -> None:
        self.errors: Sequence[str] = tuple(errors or (message,))
        super().__init__(message)


class AutomationNotFoundError(EngineError, LookupError):
    """Raised when an automation id is not present in the store."""

    def __init__(self, automation_id: str) -> None:
        self.automation_id = automation_id
        super().__init__(f"Automation not found: {automation_id}")


class ConfigurationError(EngineError, ValueError):
    """Raised for unknown scenarios, tolerances, benchmarks or invalid config files."""


class ExecutionError(EngineError, RuntimeError):
    """Raised by automation handlers when a run fails.

    ``kind`` is one of :data:`EXECUTION_ERROR_KINDS`. The scheduler catches these
    and turns them into retry bookkeeping so they never escape a tick.
    """

    def __init__(self, message: str, *, kind: str = "unexpected", details: Optional[dict] = None) -> None:
        self.kind = kind if kind in EXECUTION_ERROR_KINDS else "unexpected"
        self.details = dict(details or {})
        super().__init__(message)


EXECUTION_ERROR_KINDS = frozenset(
    {
        "insufficient_funds",
        "unknown_strategy",
        "protocol_unavailable",
        "rebalance_failed",
        "harvest_failed",
        "unexpected",
    }
)


__all__ = [
    "AutomationNotFoundError",
    "ConfigurationError",
    "EngineError",
    "EXECUTION_ERROR_KINDS",
    "ExecutionError",
    "ValidationError",
]
