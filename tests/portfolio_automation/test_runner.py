import asyncio
from datetime import datetime, timezone

from portfolio_automation.automation import TickReport, run_scheduler


class StubScheduler:
    def __init__(self, stop_after=None, fail_on=()) -> None:
        self.calls = 0
        self.stop_after = stop_after
        self.fail_on = set(fail_on)
        self.stop_event = None

    async def tick(self):
        self.calls += 1
        if self.calls in self.fail_on:
            raise RuntimeError("store unavailable")
        if self.stop_after is not None and self.calls >= self.stop_after and self.stop_event is not None:
            self.stop_event.set()
        return TickReport(started_at=datetime.now(timezone.utc))


def test_runs_requested_number_of_iterations() -> None:
    scheduler = StubScheduler()

    ticks = asyncio.run(run_scheduler(scheduler, 0, iterations=3))

    assert ticks == 3
    assert scheduler.calls == 3


def test_stop_event_ends_the_loop() -> None:
    async def scenario():
        scheduler = StubScheduler(stop_after=2)
        scheduler.stop_event = asyncio.Event()
        ticks = await run_scheduler(scheduler, 0.01, stop_event=scheduler.stop_event)
        return scheduler, ticks

    scheduler, ticks = asyncio.run(scenario())

    assert ticks == 2
    assert scheduler.calls == 2


def test_tick_errors_do_not_stop_the_loop() -> None:
    scheduler = StubScheduler(fail_on={1})

    ticks = asyncio.run(run_scheduler(scheduler, 0, iterations=2))

    assert ticks == 2
    assert scheduler.calls == 2
