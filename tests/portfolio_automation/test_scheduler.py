import asyncio
import itertools
from datetime import datetime, timedelta, timezone
from typing import List

import pytest

from portfolio_automation.audit import AuditLogWriter, FileAuditSink, read_audit_entries, verify_audit_chain
from portfolio_automation.automation import AutomationExecutor, AutomationScheduler, MetricRegistry
from portfolio_automation.errors import AutomationNotFoundError, ValidationError
from portfolio_automation.models import AutomationStatus, HandlerResult, Strategy
from services.ledger import InMemoryLedger

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
FIRST_RUN = datetime(2024, 2, 1, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _ids():
    counter = itertools.count(1)
    return lambda _now: f"automation_{next(counter)}"


def _scheduler(ledger=None, executor=None, clock=None, **kwargs):
    ledger = ledger or InMemoryLedger()
    clock = clock or Clock(T0)
    executor = executor or AutomationExecutor(ledger)
    scheduler = AutomationScheduler(executor, now=clock, id_factory=_ids(), **kwargs)
    return scheduler, ledger, clock


def _deposit_spec(amount: float = 100.0, **overrides):
    spec = {"type": "scheduled_deposit", "frequency": "monthly", "parameters": {"amount": amount}}
    spec.update(overrides)
    return spec


def test_create_automation_computes_first_run() -> None:
    scheduler, _, _ = _scheduler()

    automation = scheduler.create_automation(_deposit_spec())

    assert automation.id == "automation_1"
    assert automation.status is AutomationStatus.ACTIVE
    assert automation.next_execution == FIRST_RUN
    assert automation.next_execution >= automation.created_at
    assert scheduler.get_automation("automation_1") == automation


@pytest.mark.parametrize(
    "spec",
    [
        {"frequency": "monthly", "parameters": {"amount": 1}},
        {"type": "teleport", "parameters": {"amount": 1}},
        {"type": "scheduled_deposit", "frequency": "hourly", "parameters": {"amount": 1}},
        {"type": "scheduled_deposit", "frequency": "daily"},
        {"type": "take_profit", "frequency": "daily", "parameters": {"strategy_id": "s1"}},
    ],
)
def test_create_automation_rejects_invalid_specs(spec) -> None:
    scheduler, _, _ = _scheduler()

    with pytest.raises(ValidationError):
        scheduler.create_automation(spec)

    assert scheduler.list_automations() == []


def test_create_automation_rejects_end_before_start() -> None:
    scheduler, _, _ = _scheduler()

    with pytest.raises(ValidationError):
        scheduler.create_automation(_deposit_spec(start_date="2024-03-01T00:00:00Z", end_date="2024-02-01T00:00:00Z"))


def test_successful_deposit_reschedules_and_records_transaction() -> None:
    scheduler, ledger, clock = _scheduler()
    ledger.set_available("default", 500)
    automation = scheduler.create_automation(_deposit_spec())

    report = asyncio.run(scheduler.tick(FIRST_RUN))

    assert report.executed == [automation.id]
    stored = scheduler.get_automation(automation.id)
    assert stored.execution_count == 1
    assert stored.failure_count == 0
    assert stored.last_executed == FIRST_RUN
    assert stored.next_execution == datetime(2024, 3, 1, tzinfo=timezone.utc)
    transactions = asyncio.run(ledger.get_transactions("default"))
    assert [tx.kind.value for tx in transactions] == ["deposit"]
    assert transactions[0].automation_id == automation.id


def test_insufficient_balance_backs_off_instead_of_failing() -> None:
    scheduler, ledger, _ = _scheduler()
    ledger.set_available("default", 50)
    automation = scheduler.create_automation(_deposit_spec(amount=100))

    report = asyncio.run(scheduler.tick(FIRST_RUN))

    assert report.failed == [automation.id]
    stored = scheduler.get_automation(automation.id)
    assert stored.status is AutomationStatus.ACTIVE
    assert stored.failure_count == 1
    assert stored.last_failure.kind == "insufficient_funds"
    assert stored.next_execution == FIRST_RUN + timedelta(seconds=5)


def test_three_failures_mark_automation_failed_and_freeze_schedule() -> None:
    scheduler, ledger, _ = _scheduler()
    ledger.set_available("default", 0)
    automation = scheduler.create_automation(_deposit_spec())

    moment = FIRST_RUN
    for _ in range(3):
        asyncio.run(scheduler.tick(moment))
        moment = scheduler.get_automation(automation.id).next_execution

    stored = scheduler.get_automation(automation.id)
    assert stored.status is AutomationStatus.FAILED
    assert stored.failure_count == 3
    assert stored.next_execution == FIRST_RUN + timedelta(seconds=15)

    later = asyncio.run(scheduler.tick(FIRST_RUN + timedelta(days=10)))
    assert later.processed == 0
    assert scheduler.get_automation(automation.id).next_execution == FIRST_RUN + timedelta(seconds=15)


def test_success_after_failure_resets_failure_count() -> None:
    scheduler, ledger, _ = _scheduler()
    ledger.set_available("default", 0)
    automation = scheduler.create_automation(_deposit_spec())
    asyncio.run(scheduler.tick(FIRST_RUN))

    ledger.set_available("default", 1_000)
    retry_at = FIRST_RUN + timedelta(seconds=5)
    asyncio.run(scheduler.tick(retry_at))

    stored = scheduler.get_automation(automation.id)
    assert stored.failure_count == 0
    assert stored.execution_count == 1
    assert stored.next_execution == datetime(2024, 3, 1, 0, 0, 5, tzinfo=timezone.utc)


def test_pause_then_resume_without_elapsed_time_keeps_schedule() -> None:
    scheduler, _, clock = _scheduler()
    untouched = scheduler.create_automation(_deposit_spec())
    paused = scheduler.create_automation(_deposit_spec())

    clock.now = T0 + timedelta(days=3)
    scheduler.pause_automation(paused.id)
    resumed = scheduler.resume_automation(paused.id)

    assert resumed.status is AutomationStatus.ACTIVE
    assert resumed.next_execution == scheduler.get_automation(untouched.id).next_execution


def test_resume_after_missed_runs_rolls_to_next_slot() -> None:
    scheduler, _, clock = _scheduler()
    automation = scheduler.create_automation(_deposit_spec())
    scheduler.pause_automation(automation.id)

    clock.now = datetime(2024, 4, 15, tzinfo=timezone.utc)
    resumed = scheduler.resume_automation(automation.id)

    assert resumed.next_execution == datetime(2024, 5, 1, tzinfo=timezone.utc)


def test_paused_automation_is_not_executed() -> None:
    scheduler, ledger, _ = _scheduler()
    ledger.set_available("default", 500)
    automation = scheduler.create_automation(_deposit_spec())
    scheduler.pause_automation(automation.id)

    report = asyncio.run(scheduler.tick(FIRST_RUN))

    assert report.processed == 0
    assert scheduler.get_automation(automation.id).execution_count == 0


def test_resume_from_failed_clears_failures() -> None:
    scheduler, ledger, clock = _scheduler()
    ledger.set_available("default", 0)
    automation = scheduler.create_automation(_deposit_spec())
    moment = FIRST_RUN
    for _ in range(3):
        asyncio.run(scheduler.tick(moment))
        moment = scheduler.get_automation(automation.id).next_execution

    clock.now = FIRST_RUN + timedelta(hours=1)
    resumed = scheduler.resume_automation(automation.id)

    assert resumed.status is AutomationStatus.ACTIVE
    assert resumed.failure_count == 0
    assert resumed.next_execution == datetime(2024, 3, 1, 0, 0, 15, tzinfo=timezone.utc)


def test_invalid_transitions_are_rejected() -> None:
    scheduler, _, _ = _scheduler()
    automation = scheduler.create_automation(_deposit_spec())

    with pytest.raises(ValidationError):
        scheduler.resume_automation(automation.id)
    scheduler.cancel_automation(automation.id)
    with pytest.raises(ValidationError):
        scheduler.pause_automation(automation.id)
    with pytest.raises(ValidationError):
        scheduler.cancel_automation(automation.id)
    with pytest.raises(AutomationNotFoundError):
        scheduler.pause_automation("missing")


def test_cancelled_records_are_retained_until_deleted() -> None:
    scheduler, _, _ = _scheduler()
    automation = scheduler.create_automation(_deposit_spec())
    scheduler.cancel_automation(automation.id)

    assert scheduler.list_automations(status="cancelled")[0].id == automation.id
    scheduler.delete_automation(automation.id)
    with pytest.raises(AutomationNotFoundError):
        scheduler.get_automation(automation.id)


def test_end_date_completes_automation() -> None:
    scheduler, ledger, _ = _scheduler()
    ledger.set_available("default", 1_000)
    automation = scheduler.create_automation(_deposit_spec(end_date="2024-02-15T00:00:00Z"))

    report = asyncio.run(scheduler.tick(FIRST_RUN))

    assert report.completed == [automation.id]
    stored = scheduler.get_automation(automation.id)
    assert stored.status is AutomationStatus.COMPLETED
    assert stored.execution_count == 1
    assert stored.next_execution is None


def test_one_shot_automation_runs_once_and_completes() -> None:
    scheduler, ledger, _ = _scheduler()
    ledger.set_available("default", 1_000)
    automation = scheduler.create_strategy_execution("aave-usdc", 250)

    assert automation.next_execution == T0
    report = asyncio.run(scheduler.tick(T0))

    assert report.executed == [automation.id]
    assert scheduler.get_automation(automation.id).status is AutomationStatus.COMPLETED
    strategies = asyncio.run(ledger.get_active_strategies("default"))
    assert [(item.id, item.current_amount) for item in strategies] == [("aave-usdc", 250)]


def test_skipped_run_advances_schedule_without_touching_counters() -> None:
    ledger = InMemoryLedger()
    ledger.add_strategy("default", Strategy("s1", "Aave USDC", "USDC", "aave", 1_000, 1_000))
    scheduler, _, _ = _scheduler(ledger=ledger)
    automation = scheduler.create_take_profit("s1", 20, frequency="daily")
    run_at = T0 + timedelta(days=1)

    report = asyncio.run(scheduler.tick(run_at))

    assert report.skipped == [automation.id]
    stored = scheduler.get_automation(automation.id)
    assert stored.execution_count == 0
    assert stored.failure_count == 0
    assert stored.last_result["reason"] == "target_not_reached"
    assert stored.next_execution == run_at + timedelta(days=1)


class RecordingExecutor:
    def __init__(self) -> None:
        self.calls: List[str] = []

    async def execute(self, automation, now):
        self.calls.append(automation.name)
        return HandlerResult.ok()


def test_tick_orders_by_next_execution_then_creation() -> None:
    executor = RecordingExecutor()
    scheduler, _, _ = _scheduler(executor=executor)
    scheduler.create_automation(_deposit_spec(name="second-created-same-slot"))
    scheduler.create_automation(_deposit_spec(name="early", frequency="weekly"))
    scheduler.create_automation(_deposit_spec(name="third-created-same-slot"))

    asyncio.run(scheduler.tick(FIRST_RUN))

    assert executor.calls == ["early", "second-created-same-slot", "third-created-same-slot"]


class ExplodingExecutor:
    async def execute(self, automation, now):
        raise KeyError("boom")


def test_unexpected_handler_error_is_isolated() -> None:
    scheduler, _, _ = _scheduler(executor=ExplodingExecutor())
    automation = scheduler.create_automation(_deposit_spec())

    report = asyncio.run(scheduler.tick(FIRST_RUN))

    assert report.failed == [automation.id]
    assert scheduler.get_automation(automation.id).last_failure.kind == "unexpected"


class BlockingExecutor:
    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def execute(self, automation, now):
        self.started.set()
        await self.release.wait()
        return HandlerResult.ok()


def test_overlapping_tick_is_dropped() -> None:
    async def scenario():
        executor = BlockingExecutor()
        metrics = MetricRegistry()
        scheduler, _, _ = _scheduler(executor=executor, metrics=metrics)
        automation = scheduler.create_automation(_deposit_spec())

        first = asyncio.create_task(scheduler.tick(FIRST_RUN))
        await executor.started.wait()
        second = await scheduler.tick(FIRST_RUN)
        executor.release.set()
        first_report = await first
        return automation, first_report, second, metrics

    automation, first_report, second, metrics = asyncio.run(scenario())

    assert second.dropped is True
    assert second.processed == 0
    assert first_report.executed == [automation.id]
    assert metrics.counter("automation_ticks_dropped_total") == 1


def test_pause_during_tick_wins_over_reschedule() -> None:
    async def scenario():
        executor = BlockingExecutor()
        scheduler, _, _ = _scheduler(executor=executor)
        automation = scheduler.create_automation(_deposit_spec())
        task = asyncio.create_task(scheduler.tick(FIRST_RUN))
        await executor.started.wait()
        scheduler.pause_automation(automation.id)
        executor.release.set()
        await task
        return scheduler.get_automation(automation.id)

    stored = asyncio.run(scenario())

    assert stored.status is AutomationStatus.PAUSED
    assert stored.execution_count == 1
    assert stored.next_execution == FIRST_RUN


def test_lifecycle_events_are_audited(tmp_path) -> None:
    log_path = tmp_path / "audit.log"
    audit = AuditLogWriter(file_sink=FileAuditSink(log_path))
    scheduler, ledger, _ = _scheduler(audit_logger=audit)
    ledger.set_available("default", 0)
    automation = scheduler.create_automation(_deposit_spec(parameters={"amount": 10, "source_account": "IBAN123"}))
    asyncio.run(scheduler.tick(FIRST_RUN))
    scheduler.pause_automation(automation.id)

    actions = [entry["action"] for entry in read_audit_entries(log_path)]

    assert actions == ["automation.created", "automation.failed", "automation.paused"]
    created = read_audit_entries(log_path, action="automation.created")[0]
    assert created["details"]["parameters"]["source_account"] == "<redacted>"
    assert verify_audit_chain(log_path) is None


def test_execution_metrics_are_labelled_by_outcome() -> None:
    metrics = MetricRegistry()
    scheduler, ledger, _ = _scheduler(metrics=metrics)
    ledger.set_available("default", 0)
    scheduler.create_automation(_deposit_spec())

    asyncio.run(scheduler.tick(FIRST_RUN))

    assert metrics.counter(
        "automation_executions_total", labels={"type": "scheduled_deposit", "outcome": "failed"}
    ) == 1
    assert len(metrics.samples("automation_tick_latency_seconds")) == 1
