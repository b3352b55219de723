"""Automation lifecycle management and the periodic tick."""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from ..audit import AuditLogWriter
from ..config.models import SchedulerConfig
from ..errors import AutomationNotFoundError, ExecutionError, ValidationError
from ..models import (
    Automation,
    AutomationStatus,
    AutomationType,
    FailureRecord,
    Frequency,
    HandlerResult,
    parameters_from_mapping,
    parse_timestamp,
    utc_now,
)
from .executor import AutomationExecutor
from .metrics import MetricRegistry, Timer
from .schedule import first_execution, next_execution, retry_delay, roll_forward
from .store import AutomationStore, InMemoryAutomationStore

logger = logging.getLogger(__name__)

ACTOR = "scheduler"

_PAUSABLE = {AutomationStatus.ACTIVE}
_RESUMABLE = {AutomationStatus.PAUSED, AutomationStatus.FAILED}
_CANCELLABLE = {AutomationStatus.ACTIVE, AutomationStatus.PAUSED, AutomationStatus.FAILED}


def default_id_factory(now: datetime) -> str:
    return f"automation_{int(now.timestamp() * 1000)}_{secrets.token_hex(4)}"


@dataclass
class TickReport:
    """Summary of one tick: automation ids grouped by outcome."""

    started_at: datetime
    dropped: bool = False
    executed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)
    completed: List[str] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.executed) + len(self.skipped) + len(self.failed)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "dropped": self.dropped,
            "executed": list(self.executed),
            "skipped": list(self.skipped),
            "failed": list(self.failed),
            "completed": list(self.completed),
        }


def _parse_enum(enum_type, value: Any, label: str):
    if isinstance(value, enum_type):
        return value
    text = str(value).strip()
    try:
        return enum_type(text.lower())
    except ValueError:
        pass
    try:
        return enum_type[text.upper()]
    except KeyError as exc:
        raise ValidationError(f"Unknown {label} '{value}'") from exc


class AutomationScheduler:
    """Owns automation records and drives them through their lifecycle.

    Every mutation happens either through the explicit lifecycle calls or on
    the single execution path of :meth:`tick`. Overlapping ticks are dropped.
    """

    def __init__(
        self,
        executor: AutomationExecutor,
        *,
        store: Optional[AutomationStore] = None,
        config: Optional[SchedulerConfig] = None,
        audit_logger: Optional[AuditLogWriter] = None,
        metrics: Optional[MetricRegistry] = None,
        now: Callable[[], datetime] = utc_now,
        id_factory: Callable[[datetime], str] = default_id_factory,
    ) -> None:
        self._executor = executor
        self._store = store or InMemoryAutomationStore()
        self._config = config or SchedulerConfig()
        self._audit = audit_logger
        self._metrics = metrics or MetricRegistry()
        self._now = now
        self._id_factory = id_factory
        self._tick_in_flight = False

    @property
    def metrics(self) -> MetricRegistry:
        return self._metrics

    @property
    def tick_in_flight(self) -> bool:
        return self._tick_in_flight

    # Creation ------------------------------------------------------------

    def create_automation(self, spec: Optional[Mapping[str, Any]] = None, **fields: Any) -> Automation:
        """Validate ``spec`` and persist a new active automation.

        ``spec`` keys: ``type``, ``parameters``, and optionally ``name``,
        ``user_id``, ``frequency``, ``start_date`` and ``end_date``.
        """

        payload: Dict[str, Any] = dict(spec or {})
        payload.update(fields)
        if not payload.get("type"):
            raise ValidationError("Automation type is required")
        automation_type = _parse_enum(AutomationType, payload["type"], "automation type")
        frequency_value = payload.get("frequency")
        frequency = _parse_enum(Frequency, frequency_value, "frequency") if frequency_value else None
        parameters = parameters_from_mapping(automation_type, payload.get("parameters"))

        created_at = self._now()
        start_date = parse_timestamp(payload["start_date"]) if payload.get("start_date") else created_at
        end_date = parse_timestamp(payload["end_date"]) if payload.get("end_date") else None
        if end_date is not None and end_date < start_date:
            raise ValidationError("end_date cannot be earlier than start_date")
        first_run = first_execution(frequency, start_date, created_at)
        if end_date is not None and first_run > end_date:
            raise ValidationError("end_date leaves no room for a first execution")

        automation = Automation(
            id=str(payload.get("id") or self._id_factory(created_at)),
            type=automation_type,
            status=AutomationStatus.ACTIVE,
            user_id=str(payload.get("user_id") or "default"),
            name=str(payload.get("name") or automation_type.value.replace("_", " ").title()),
            parameters=parameters,
            created_at=created_at,
            start_date=start_date,
            frequency=frequency,
            end_date=end_date,
            next_execution=first_run,
            sequence=self._next_sequence(),
        )
        if self._store.load(automation.id) is not None:
            raise ValidationError(f"Automation {automation.id} already exists")
        self._store.save(automation)
        logger.info(
            "Automation created",
            extra={
                "automation_id": automation.id,
                "type": automation_type.value,
                "frequency": frequency.value if frequency else None,
                "next_execution": first_run.isoformat(),
            },
        )
        self._audit_event("automation.created", automation, {"parameters": parameters.to_dict()})
        return automation

    def create_scheduled_deposit(
        self,
        amount: float,
        frequency: Union[str, Frequency],
        *,
        target_strategy: Optional[str] = None,
        source_account: Optional[str] = None,
        **fields: Any,
    ) -> Automation:
        return self.create_automation(
            type=AutomationType.SCHEDULED_DEPOSIT,
            frequency=frequency,
            parameters={"amount": amount, "target_strategy": target_strategy, "source_account": source_account},
            **fields,
        )

    def create_strategy_execution(
        self,
        strategy_id: str,
        amount: float,
        *,
        conditions: Optional[Mapping[str, Any]] = None,
        risk_parameters: Optional[Mapping[str, Any]] = None,
        frequency: Union[str, Frequency, None] = None,
        **fields: Any,
    ) -> Automation:
        return self.create_automation(
            type=AutomationType.STRATEGY_EXECUTION,
            frequency=frequency,
            parameters={
                "strategy_id": strategy_id,
                "amount": amount,
                "conditions": dict(conditions or {}),
                "risk_parameters": dict(risk_parameters or {}),
            },
            **fields,
        )

    def create_rebalancing(
        self,
        risk_tolerance: str,
        frequency: Union[str, Frequency],
        *,
        target_allocations: Optional[List[Mapping[str, Any]]] = None,
        rebalance_threshold: Optional[float] = None,
        **fields: Any,
    ) -> Automation:
        parameters: Dict[str, Any] = {
            "risk_tolerance": risk_tolerance,
            "target_allocations": list(target_allocations or []),
        }
        if rebalance_threshold is not None:
            parameters["rebalance_threshold"] = rebalance_threshold
        return self.create_automation(
            type=AutomationType.REBALANCING, frequency=frequency, parameters=parameters, **fields
        )

    def create_take_profit(
        self,
        strategy_id: str,
        target_return: float,
        *,
        sell_percentage: float = 100.0,
        frequency: Union[str, Frequency] = Frequency.DAILY,
        **fields: Any,
    ) -> Automation:
        return self.create_automation(
            type=AutomationType.TAKE_PROFIT,
            frequency=frequency,
            parameters={"strategy_id": strategy_id, "target_return": target_return, "sell_percentage": sell_percentage},
            **fields,
        )

    def create_stop_loss(
        self,
        strategy_id: str,
        max_loss: float,
        *,
        sell_percentage: float = 100.0,
        frequency: Union[str, Frequency] = Frequency.DAILY,
        **fields: Any,
    ) -> Automation:
        return self.create_automation(
            type=AutomationType.STOP_LOSS,
            frequency=frequency,
            parameters={"strategy_id": strategy_id, "max_loss": max_loss, "sell_percentage": sell_percentage},
            **fields,
        )

    def create_yield_harvest(
        self,
        strategies: List[str],
        frequency: Union[str, Frequency],
        *,
        min_harvest_amount: float = 0.0,
        **fields: Any,
    ) -> Automation:
        return self.create_automation(
            type=AutomationType.YIELD_HARVEST,
            frequency=frequency,
            parameters={"strategies": list(strategies), "min_harvest_amount": min_harvest_amount},
            **fields,
        )

    # Lifecycle -----------------------------------------------------------

    def get_automation(self, automation_id: str) -> Automation:
        automation = self._store.load(automation_id)
        if automation is None:
            raise AutomationNotFoundError(automation_id)
        return automation

    def list_automations(
        self,
        *,
        status: Union[str, AutomationStatus, None] = None,
        user_id: Optional[str] = None,
    ) -> List[Automation]:
        wanted = _parse_enum(AutomationStatus, status, "status") if status else None
        records = [
            automation
            for automation in self._store.list()
            if (wanted is None or automation.status is wanted)
            and (user_id is None or automation.user_id == user_id)
        ]
        records.sort(key=lambda item: (item.created_at, item.sequence))
        return records

    def pause_automation(self, automation_id: str) -> Automation:
        automation = self._transition(automation_id, _PAUSABLE, "pause")
        automation.status = AutomationStatus.PAUSED
        automation.paused_at = self._now()
        return self._commit(automation, "automation.paused")

    def resume_automation(self, automation_id: str) -> Automation:
        """Reactivate a paused or failed automation on its next slot from now."""

        automation = self._transition(automation_id, _RESUMABLE, "resume")
        now = self._now()
        automation.status = AutomationStatus.ACTIVE
        automation.failure_count = 0
        automation.paused_at = None
        if automation.frequency is None or automation.next_execution is None:
            automation.next_execution = max(automation.next_execution or now, now)
        else:
            automation.next_execution = roll_forward(automation.frequency, automation.next_execution, now)
        return self._commit(automation, "automation.resumed")

    def cancel_automation(self, automation_id: str) -> Automation:
        automation = self._transition(automation_id, _CANCELLABLE, "cancel")
        automation.status = AutomationStatus.CANCELLED
        automation.cancelled_at = self._now()
        return self._commit(automation, "automation.cancelled")

    def delete_automation(self, automation_id: str) -> None:
        automation = self.get_automation(automation_id)
        self._store.delete(automation_id)
        logger.info("Automation deleted", extra={"automation_id": automation_id})
        self._audit_event("automation.deleted", automation)

    def _transition(self, automation_id: str, allowed: set, verb: str) -> Automation:
        automation = self.get_automation(automation_id)
        if automation.status not in allowed:
            raise ValidationError(f"Cannot {verb} automation {automation_id} in status {automation.status.value}")
        return automation

    def _commit(self, automation: Automation, action: str) -> Automation:
        self._store.save(automation)
        logger.info(
            "Automation status changed",
            extra={"automation_id": automation.id, "status": automation.status.value, "action": action},
        )
        self._audit_event(action, automation)
        return automation

    def _next_sequence(self) -> int:
        return max((automation.sequence for automation in self._store.list()), default=0) + 1

    # Tick ----------------------------------------------------------------

    def due_automations(self, now: datetime) -> List[Automation]:
        due = [
            automation
            for automation in self._store.list()
            if automation.status is AutomationStatus.ACTIVE
            and automation.next_execution is not None
            and automation.next_execution <= now
        ]
        due.sort(key=lambda item: (item.next_execution, item.created_at, item.sequence))
        return due

    async def tick(self, now: Optional[datetime] = None) -> TickReport:
        """Run every due automation once, sequentially, isolating failures."""

        now = parse_timestamp(now) if now is not None else self._now()
        report = TickReport(started_at=now)
        if self._tick_in_flight:
            report.dropped = True
            self._metrics.inc("automation_ticks_dropped_total")
            logger.warning("Tick dropped because a previous tick is still running", extra={"now": now.isoformat()})
            return report

        self._tick_in_flight = True
        try:
            with Timer(self._metrics, "automation_tick_latency_seconds"):
                for automation in self.due_automations(now):
                    await self._run_one(automation.id, now, report)
        finally:
            self._tick_in_flight = False
        if report.processed:
            logger.info(
                "Tick completed",
                extra={
                    "executed": len(report.executed),
                    "skipped": len(report.skipped),
                    "failed": len(report.failed),
                    "completed": len(report.completed),
                },
            )
        return report

    async def _run_one(self, automation_id: str, now: datetime, report: TickReport) -> None:
        automation = self._store.load(automation_id)
        # Pause or cancel issued earlier in this tick wins.
        if automation is None or automation.status is not AutomationStatus.ACTIVE:
            return
        labels = {"type": automation.type.value}
        try:
            result = await self._executor.execute(automation, now)
        except ExecutionError as exc:
            self._metrics.inc("automation_executions_total", labels={**labels, "outcome": "failed"})
            self._record_failure(automation_id, now, exc, report)
            return
        except Exception as exc:
            logger.error(
                "Automation handler raised unexpectedly",
                extra={"automation_id": automation_id, "type": automation.type.value},
                exc_info=True,
            )
            self._metrics.inc("automation_executions_total", labels={**labels, "outcome": "failed"})
            self._record_failure(automation_id, now, ExecutionError(str(exc), kind="unexpected"), report)
            return
        outcome = "skipped" if result.skipped else "executed"
        self._metrics.inc("automation_executions_total", labels={**labels, "outcome": outcome})
        self._record_success(automation_id, now, result, report)

    def _reload(self, automation_id: str) -> Optional[Automation]:
        return self._store.load(automation_id)

    def _record_success(self, automation_id: str, now: datetime, result: HandlerResult, report: TickReport) -> None:
        automation = self._reload(automation_id)
        if automation is None:
            return
        automation.last_executed = now
        automation.last_result = result.to_dict()
        if result.skipped:
            report.skipped.append(automation.id)
        else:
            automation.execution_count += 1
            automation.failure_count = 0
            report.executed.append(automation.id)

        if automation.status is AutomationStatus.ACTIVE:
            upcoming = next_execution(automation.frequency, now) if automation.frequency else None
            if upcoming is None or (automation.end_date is not None and upcoming > automation.end_date):
                automation.status = AutomationStatus.COMPLETED
                automation.next_execution = None
                report.completed.append(automation.id)
            else:
                automation.next_execution = upcoming
        self._store.save(automation)

        logger.info(
            "Automation skipped" if result.skipped else "Automation executed",
            extra={
                "automation_id": automation.id,
                "reason": result.reason,
                "status": automation.status.value,
                "next_execution": automation.next_execution.isoformat() if automation.next_execution else None,
            },
        )
        self._audit_event(
            "automation.skipped" if result.skipped else "automation.executed",
            automation,
            {"result": result.to_dict()},
        )
        if automation.status is AutomationStatus.COMPLETED:
            self._audit_event("automation.completed", automation)

    def _record_failure(self, automation_id: str, now: datetime, error: ExecutionError, report: TickReport) -> None:
        automation = self._reload(automation_id)
        if automation is None:
            return
        automation.failure_count += 1
        automation.last_failure = FailureRecord(timestamp=now, kind=error.kind, message=str(error))
        report.failed.append(automation.id)
        if automation.status is AutomationStatus.ACTIVE:
            if automation.failure_count >= self._config.retry_limit:
                automation.status = AutomationStatus.FAILED
            else:
                automation.next_execution = now + retry_delay(
                    automation.failure_count, self._config.retry_base_delay_seconds
                )
        self._store.save(automation)

        logger.warning(
            "Automation execution failed",
            extra={
                "automation_id": automation.id,
                "kind": error.kind,
                "error": str(error),
                "failure_count": automation.failure_count,
                "status": automation.status.value,
            },
        )
        self._audit_event(
            "automation.failed",
            automation,
            {"kind": error.kind, "error": str(error), "details": error.details},
        )

    def _audit_event(self, action: str, automation: Automation, details: Optional[Mapping[str, Any]] = None) -> None:
        if self._audit is None:
            return
        payload: Dict[str, Any] = {
            "automation_id": automation.id,
            "type": automation.type.value,
            "user_id": automation.user_id,
            "status": automation.status.value,
            "failure_count": automation.failure_count,
        }
        payload.update(details or {})
        try:
            self._audit.log(action, ACTOR, payload)
        except Exception as exc:  # pragma: no cover - audit failures must not stop automations
            logger.warning("Failed to emit audit entry %s: %s", action, exc)


__all__ = ["AutomationScheduler", "TickReport", "default_id_factory"]
