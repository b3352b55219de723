"""Protocol health lookups used when scoring protocol risk."""

from __future__ import annotations

import abc
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, Mapping, Optional

from portfolio_automation.models import utc_now

DEFAULT_PROTOCOL_RISK: Mapping[str, float] = {
    "compound": 15.0,
    "aave": 20.0,
    "uniswap": 35.0,
    "curve": 25.0,
}


class ProtocolUnavailableError(RuntimeError):
    """Raised when a protocol's health cannot be determined."""

    def __init__(self, protocol_id: str, reason: str = "unavailable") -> None:
        self.protocol_id = protocol_id
        super().__init__(f"Protocol {protocol_id} health unavailable: {reason}")


@dataclass(frozen=True)
class ProtocolHealth:
    protocol: str
    healthy: bool
    risk_score: Optional[float] = None
    checked_at: Optional[datetime] = None


class ProtocolDirectory(abc.ABC):
    @abc.abstractmethod
    async def get_protocol_health(self, protocol_id: str) -> ProtocolHealth:
        """Return health information for ``protocol_id``."""


class StaticProtocolDirectory(ProtocolDirectory):
    """Serves a fixed risk table; protocols listed in ``unhealthy`` report as unhealthy."""

    def __init__(
        self,
        risk_scores: Optional[Mapping[str, float]] = None,
        *,
        unhealthy: Iterable[str] = (),
    ) -> None:
        self._risk_scores: Dict[str, float] = {
            key.lower(): float(value) for key, value in (risk_scores or DEFAULT_PROTOCOL_RISK).items()
        }
        self._unhealthy = {item.lower() for item in unhealthy}

    def mark_unhealthy(self, protocol_id: str) -> None:
        self._unhealthy.add(protocol_id.lower())

    def mark_healthy(self, protocol_id: str) -> None:
        self._unhealthy.discard(protocol_id.lower())

    async def get_protocol_health(self, protocol_id: str) -> ProtocolHealth:
        key = protocol_id.lower()
        return ProtocolHealth(
            protocol=key,
            healthy=key not in self._unhealthy,
            risk_score=self._risk_scores.get(key),
            checked_at=utc_now(),
        )
