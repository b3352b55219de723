"""Loading engine configuration files and applying environment overrides."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, MutableMapping, Optional

from .audit import DEFAULT_REDACT_FIELDS, AuditSettings
from .config.models import BenchmarkConfig, EngineConfig, PerformanceConfig, RiskConfig, SchedulerConfig
from .errors import ConfigurationError

logger = logging.getLogger(__name__)


def _ensure_logger_level(target: logging.Logger, level: int) -> None:
    """Lower ``target`` and its handlers to ``level`` when they are stricter."""

    if target.level == logging.NOTSET or target.level > level:
        target.setLevel(level)
    for handler in target.handlers:
        if handler.level == logging.NOTSET or handler.level > level:
            handler.setLevel(level)


def _debug_to_logging_level(debug_level: int) -> int:
    """Map a debug verbosity integer to a logging level."""

    if debug_level <= 0:
        return logging.WARNING
    if debug_level == 1:
        return logging.INFO
    return logging.DEBUG


def configure_logging(debug_level: int = 1) -> bool:
    """Install a basic handler when none exists and apply ``debug_level``.

    Returns ``True`` when this call installed the root handler.
    """

    root_logger = logging.getLogger()
    already_configured = bool(root_logger.handlers)
    desired_level = _debug_to_logging_level(debug_level)
    if not already_configured:
        logging.basicConfig(
            level=desired_level,
            format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        )
    _ensure_logger_level(root_logger, desired_level)
    _ensure_logger_level(logging.getLogger("portfolio_automation"), desired_level)
    _ensure_logger_level(logging.getLogger("services"), desired_level)
    return not already_configured


def _load_json(path: Path) -> Dict[str, Any]:
    """Return parsed JSON payload from ``path`` with helpful error messages."""

    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise FileNotFoundError(f"Configuration file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Invalid JSON in configuration file {path}: {exc}") from exc


def _ensure_mapping(payload: Any, *, description: str) -> MutableMapping[str, Any]:
    if isinstance(payload, MutableMapping):
        return payload
    if isinstance(payload, Mapping):
        return dict(payload)
    raise ConfigurationError(f"{description} must be a JSON object, not {type(payload).__name__}.")


def _resolve_path_relative_to(base: Path, candidate: Any) -> Path:
    path = Path(str(candidate)).expanduser()
    if not path.is_absolute():
        path = base / path
    return path.resolve()


def _coerce_bool(value: Any, default: bool = False) -> bool:
    """Return a boolean for ``value`` supporting common string representations."""

    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"", "default", "auto"}:
            return default
        if lowered in {"1", "true", "yes", "on", "enabled"}:
            return True
        if lowered in {"0", "false", "no", "off", "disabled"}:
            return False
    return bool(value)


def _coerce_number(section: Mapping[str, Any], key: str, default: float, *, description: str) -> float:
    value = section.get(key, default)
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{description}.{key} must be numeric, got {value!r}") from exc
    if number < 0:
        raise ConfigurationError(f"{description}.{key} cannot be negative")
    return number


def _parse_scheduler(raw: Any) -> SchedulerConfig:
    section = _ensure_mapping(raw or {}, description="scheduler")
    defaults = SchedulerConfig()
    retry_limit = int(_coerce_number(section, "retry_limit", defaults.retry_limit, description="scheduler"))
    if retry_limit < 1:
        raise ConfigurationError("scheduler.retry_limit must be at least 1")
    interval = _coerce_number(section, "tick_interval_seconds", defaults.tick_interval_seconds, description="scheduler")
    if interval <= 0:
        raise ConfigurationError("scheduler.tick_interval_seconds must be greater than zero")
    return SchedulerConfig(
        tick_interval_seconds=interval,
        retry_limit=retry_limit,
        retry_base_delay_seconds=_coerce_number(
            section, "retry_base_delay_seconds", defaults.retry_base_delay_seconds, description="scheduler"
        ),
    )


def _parse_risk(raw: Any) -> RiskConfig:
    section = _ensure_mapping(raw or {}, description="risk")
    defaults = RiskConfig()
    return RiskConfig(
        assessment_cache_ttl_seconds=_coerce_number(
            section, "assessment_cache_ttl_seconds", defaults.assessment_cache_ttl_seconds, description="risk"
        ),
        rebalance_threshold=_coerce_number(
            section, "rebalance_threshold", defaults.rebalance_threshold, description="risk"
        ),
        min_action_value=_coerce_number(section, "min_action_value", defaults.min_action_value, description="risk"),
    )


def _parse_performance(raw: Any) -> PerformanceConfig:
    section = _ensure_mapping(raw or {}, description="performance")
    defaults = PerformanceConfig()
    return PerformanceConfig(
        cache_ttl_seconds=_coerce_number(
            section, "cache_ttl_seconds", defaults.cache_ttl_seconds, description="performance"
        ),
        risk_free_rate=_coerce_number(section, "risk_free_rate", defaults.risk_free_rate, description="performance"),
        default_volatility=_coerce_number(
            section, "default_volatility", defaults.default_volatility, description="performance"
        ),
    )


def _parse_audit(raw: Any, *, base_dir: Path) -> Optional[AuditSettings]:
    if raw is None:
        return None
    section = _ensure_mapping(raw, description="audit")
    log_path = section.get("log_path")
    if not log_path:
        raise ConfigurationError("audit.log_path is required when audit logging is configured")
    redact = section.get("redact_fields")
    return AuditSettings(
        log_path=_resolve_path_relative_to(base_dir, log_path),
        enabled=_coerce_bool(section.get("enabled"), True),
        redact_fields=tuple(str(item) for item in redact) if redact else DEFAULT_REDACT_FIELDS,
        mirror_to_logger=_coerce_bool(section.get("mirror_to_logger"), False),
    )


def _parse_benchmarks(raw: Any) -> Dict[str, BenchmarkConfig]:
    if raw is None:
        return {}
    section = _ensure_mapping(raw, description="benchmarks")
    benchmarks: Dict[str, BenchmarkConfig] = {}
    for benchmark_id, entry in section.items():
        entry = _ensure_mapping(entry, description=f"benchmarks.{benchmark_id}")
        missing = [key for key in ("name", "apy", "volatility") if key not in entry]
        if missing:
            raise ConfigurationError(f"benchmarks.{benchmark_id} is missing {', '.join(missing)}")
        benchmarks[str(benchmark_id)] = BenchmarkConfig(
            id=str(benchmark_id),
            name=str(entry["name"]),
            symbol=str(entry.get("symbol") or benchmark_id).upper(),
            apy=float(entry["apy"]),
            volatility=float(entry["volatility"]),
            category=str(entry.get("category") or "other"),
        )
    return benchmarks


def validate_engine_config(
    payload: Mapping[str, Any],
    *,
    source_path: Optional[Path] = None,
) -> EngineConfig:
    """Normalise a raw configuration mapping into :class:`EngineConfig`."""

    data = _ensure_mapping(payload, description="Engine configuration")
    base_dir = source_path.parent if source_path else Path.cwd()
    store_path = data.get("store_path")
    try:
        debug_level = int(data.get("debug_level", 1))
    except (TypeError, ValueError) as exc:
        raise ConfigurationError("debug_level must be an integer") from exc
    known = {"scheduler", "risk", "performance", "store_path", "audit", "benchmarks", "debug_level"}
    extra = {key: value for key, value in data.items() if key not in known}
    if extra:
        logger.debug("Ignoring unknown configuration keys", extra={"keys": sorted(extra)})
    return EngineConfig(
        scheduler=_parse_scheduler(data.get("scheduler")),
        risk=_parse_risk(data.get("risk")),
        performance=_parse_performance(data.get("performance")),
        store_path=_resolve_path_relative_to(base_dir, store_path) if store_path else None,
        audit=_parse_audit(data.get("audit"), base_dir=base_dir),
        benchmarks=_parse_benchmarks(data.get("benchmarks")),
        debug_level=debug_level,
        config_path=source_path,
        extra=extra,
    )


def load_engine_payload(path: Path | str) -> tuple[MutableMapping[str, Any], Path]:
    resolved = Path(path).expanduser().resolve()
    payload = _ensure_mapping(_load_json(resolved), description="Engine configuration")
    return payload, resolved


def load_engine_config(path: Path | str) -> EngineConfig:
    """Load and validate an engine configuration file from disk."""

    payload, resolved_path = load_engine_payload(path)
    return validate_engine_config(payload, source_path=resolved_path)


@dataclass
class Settings:
    """Engine configuration with ``AUTOMATION_*`` environment overrides applied."""

    engine: EngineConfig = field(default_factory=EngineConfig)

    @classmethod
    def from_environment(
        cls, *, engine: Optional[EngineConfig] = None, env: Optional[Mapping[str, str]] = None
    ) -> "Settings":
        env = os.environ if env is None else env
        config_path = env.get("AUTOMATION_CONFIG")
        if engine is None:
            engine = load_engine_config(config_path) if config_path else EngineConfig()

        interval = _env_float(env.get("AUTOMATION_TICK_INTERVAL_SECONDS"))
        if interval is not None and interval > 0:
            engine.scheduler.tick_interval_seconds = interval
        retry_limit = _env_int(env.get("AUTOMATION_RETRY_LIMIT"))
        if retry_limit is not None and retry_limit > 0:
            engine.scheduler.retry_limit = retry_limit
        base_delay = _env_float(env.get("AUTOMATION_RETRY_BASE_DELAY_SECONDS"))
        if base_delay is not None and base_delay >= 0:
            engine.scheduler.retry_base_delay_seconds = base_delay

        risk_ttl = _env_float(env.get("AUTOMATION_RISK_CACHE_TTL_SECONDS"))
        if risk_ttl is not None:
            engine.risk.assessment_cache_ttl_seconds = risk_ttl
        threshold = _env_float(env.get("AUTOMATION_REBALANCE_THRESHOLD"))
        if threshold is not None and threshold > 0:
            engine.risk.rebalance_threshold = threshold
        perf_ttl = _env_float(env.get("AUTOMATION_PERFORMANCE_CACHE_TTL_SECONDS"))
        if perf_ttl is not None:
            engine.performance.cache_ttl_seconds = perf_ttl

        store_path = env.get("AUTOMATION_STORE_PATH")
        if store_path:
            engine.store_path = Path(store_path).expanduser()
        audit_path = env.get("AUTOMATION_AUDIT_LOG")
        if audit_path:
            engine.audit = AuditSettings(log_path=Path(audit_path).expanduser())
        debug_level = _env_int(env.get("AUTOMATION_DEBUG_LEVEL"))
        if debug_level is not None:
            engine.debug_level = debug_level
        return cls(engine=engine)


def _env_float(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _env_int(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


__all__ = [
    "EngineConfig",
    "Settings",
    "configure_logging",
    "load_engine_config",
    "load_engine_payload",
    "validate_engine_config",
]
