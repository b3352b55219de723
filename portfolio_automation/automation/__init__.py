"""Automation scheduling, execution and persistence."""

from .executor import AutomationExecutor, always_true
from .metrics import MetricRegistry, Timer
from .runner import run_scheduler
from .schedule import add_months, first_execution, next_execution, retry_delay, roll_forward
from .scheduler import AutomationScheduler, TickReport
from .store import AutomationStore, FileAutomationStore, InMemoryAutomationStore

__all__ = [
    "AutomationExecutor",
    "AutomationScheduler",
    "AutomationStore",
    "FileAutomationStore",
    "InMemoryAutomationStore",
    "MetricRegistry",
    "TickReport",
    "Timer",
    "add_months",
    "always_true",
    "first_execution",
    "next_execution",
    "retry_delay",
    "roll_forward",
    "run_scheduler",
]
