from .models import BenchmarkConfig, EngineConfig, PerformanceConfig, RiskConfig, SchedulerConfig

__all__ = [
    "BenchmarkConfig",
    "EngineConfig",
    "PerformanceConfig",
    "RiskConfig",
    "SchedulerConfig",
]
