"""Health tracking and circuit breaking for calls to external collaborators."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class ResiliencePolicy:
    """Timeout and breaker settings. Retries stay with the scheduler, so none happen here."""

    request_timeout: float = 10.0
    circuit_breaker_threshold: int = 3
    circuit_breaker_reset_s: float = 30.0


class CircuitOpenError(RuntimeError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Circuit open for {name}")


@dataclass
class CircuitBreakerState:
    threshold: int
    reset_seconds: float
    failure_count: int = 0
    opened_at: Optional[float] = None

    def is_open(self, now: float) -> bool:
        if self.opened_at is None:
            return False
        if now - self.opened_at >= self.reset_seconds:
            self.failure_count = 0
            self.opened_at = None
            return False
        return True

    def record_failure(self, now: float) -> None:
        self.failure_count += 1
        if self.failure_count >= self.threshold and self.opened_at is None:
            self.opened_at = now

    def record_success(self) -> None:
        self.failure_count = 0
        self.opened_at = None


@dataclass
class ServiceStatus:
    status: str
    reason: Optional[str] = None
    last_success: Optional[datetime] = None
    last_checked: Optional[datetime] = None
    failures: int = 0
    successes: int = 0


class Telemetry:
    """Records collaborator health and guards calls with a timeout and a breaker."""

    def __init__(
        self,
        *,
        policy: Optional[ResiliencePolicy] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.policy = policy or ResiliencePolicy()
        self.service_status: Dict[str, ServiceStatus] = {}
        self._circuit_breakers: Dict[str, CircuitBreakerState] = {}
        self._clock = clock

    def _breaker_for(self, name: str) -> CircuitBreakerState:
        breaker = self._circuit_breakers.get(name)
        if breaker is None:
            breaker = CircuitBreakerState(
                threshold=self.policy.circuit_breaker_threshold,
                reset_seconds=self.policy.circuit_breaker_reset_s,
            )
            self._circuit_breakers[name] = breaker
        return breaker

    def _status_for(self, name: str) -> ServiceStatus:
        return self.service_status.setdefault(name, ServiceStatus(status="unknown"))

    def mark_service_healthy(self, name: str) -> None:
        status = self._status_for(name)
        now = datetime.now(timezone.utc)
        status.status = "healthy"
        status.reason = None
        status.last_success = now
        status.last_checked = now
        status.successes += 1

    def mark_service_degraded(self, name: str, reason: str) -> None:
        status = self._status_for(name)
        status.status = "degraded"
        status.reason = reason
        status.last_checked = datetime.now(timezone.utc)
        status.failures += 1

    async def call(self, name: str, func: Callable[[], Awaitable[Any]]) -> Any:
        """Await ``func()`` under the policy timeout, tracking failures for ``name``."""

        breaker = self._breaker_for(name)
        if breaker.is_open(self._clock()):
            self.mark_service_degraded(name, "circuit_open")
            raise CircuitOpenError(name)
        try:
            result = await asyncio.wait_for(func(), timeout=self.policy.request_timeout)
        except Exception as exc:
            breaker.record_failure(self._clock())
            self.mark_service_degraded(name, str(exc) or type(exc).__name__)
            logger.warning(
                "Collaborator call failed",
                extra={"service": name, "error": str(exc), "failures": breaker.failure_count},
            )
            raise
        breaker.record_success()
        self.mark_service_healthy(name)
        return result

    def health_snapshot(self) -> Dict[str, Any]:
        services: Dict[str, Any] = {}
        overall = "healthy"
        for name, status in self.service_status.items():
            services[name] = {
                "status": status.status,
                "reason": status.reason,
                "last_success": status.last_success.isoformat() if status.last_success else None,
                "last_checked": status.last_checked.isoformat() if status.last_checked else None,
                "failures": status.failures,
                "successes": status.successes,
            }
            if status.status == "degraded":
                overall = "degraded"
        return {"status": overall, "services": services}


__all__ = ["CircuitBreakerState", "CircuitOpenError", "ResiliencePolicy", "Telemetry"]
