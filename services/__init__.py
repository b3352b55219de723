"""Collaborator interfaces consumed by the portfolio engine."""

from .telemetry import CircuitBreakerState, CircuitOpenError, ResiliencePolicy, Telemetry

__all__ = ["CircuitBreakerState", "CircuitOpenError", "ResiliencePolicy", "Telemetry"]
