"""Drive :meth:`AutomationScheduler.tick` on a fixed interval."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .scheduler import AutomationScheduler, TickReport

logger = logging.getLogger(__name__)


async def run_scheduler(
    scheduler: AutomationScheduler,
    interval_seconds: float,
    *,
    stop_event: Optional[asyncio.Event] = None,
    iterations: Optional[int] = None,
) -> int:
    """Tick until ``stop_event`` is set or ``iterations`` ticks have run.

    Errors escaping a tick are logged and the loop keeps going; automation
    level failures are already absorbed by the scheduler itself.
    Returns the number of ticks attempted.
    """

    stop_event = stop_event or asyncio.Event()
    count = 0
    while not stop_event.is_set():
        try:
            report: TickReport = await scheduler.tick()
        except Exception as exc:  # pragma: no cover - next tick retries
            logger.error("Scheduler tick failed", extra={"error": str(exc)}, exc_info=True)
        else:
            if report.dropped:
                logger.debug("Scheduler tick dropped", extra={"started_at": report.started_at.isoformat()})
        count += 1
        if iterations is not None and count >= iterations:
            break
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
        except asyncio.TimeoutError:
            continue
    logger.info("Scheduler loop stopped", extra={"ticks": count})
    return count


__all__ = ["run_scheduler"]
