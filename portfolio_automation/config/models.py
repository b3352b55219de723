from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from ..audit import AuditSettings


@dataclass()
class SchedulerConfig:
    """Tick cadence and retry policy for automations."""

    tick_interval_seconds: float = 60.0
    retry_limit: int = 3
    retry_base_delay_seconds: float = 5.0


@dataclass()
class RiskConfig:
    """Caching and rebalancing thresholds for the risk components."""

    assessment_cache_ttl_seconds: float = 600.0
    rebalance_threshold: float = 0.05
    min_action_value: float = 100.0


@dataclass()
class PerformanceConfig:
    """Defaults used by the performance analyzer."""

    cache_ttl_seconds: float = 900.0
    risk_free_rate: float = 2.5
    default_volatility: float = 15.0


@dataclass()
class BenchmarkConfig:
    """A benchmark row supplied through configuration."""

    id: str
    name: str
    symbol: str
    apy: float
    volatility: float
    category: str = "other"


@dataclass()
class EngineConfig:
    """Top level configuration for the automation and risk engine."""

    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    performance: PerformanceConfig = field(default_factory=PerformanceConfig)
    store_path: Optional[Path] = None
    audit: Optional[AuditSettings] = None
    benchmarks: Dict[str, BenchmarkConfig] = field(default_factory=dict)
    debug_level: int = 1
    config_path: Optional[Path] = None
    extra: Dict[str, Any] = field(default_factory=dict)
