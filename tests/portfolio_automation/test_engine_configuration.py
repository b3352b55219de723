import json
import logging
from pathlib import Path

import pytest

from portfolio_automation.configuration import (
    Settings,
    configure_logging,
    load_engine_config,
    validate_engine_config,
)
from portfolio_automation.config.models import EngineConfig
from portfolio_automation.errors import ConfigurationError


def _write(tmp_path: Path, payload) -> Path:
    path = tmp_path / "engine.json"
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


def test_defaults_apply_to_empty_config() -> None:
    config = validate_engine_config({})

    assert config.scheduler.tick_interval_seconds == 60
    assert config.scheduler.retry_limit == 3
    assert config.scheduler.retry_base_delay_seconds == 5
    assert config.risk.assessment_cache_ttl_seconds == 600
    assert config.risk.rebalance_threshold == 0.05
    assert config.risk.min_action_value == 100
    assert config.performance.cache_ttl_seconds == 900
    assert config.performance.risk_free_rate == 2.5
    assert config.store_path is None
    assert config.audit is None


def test_load_resolves_paths_relative_to_file(tmp_path) -> None:
    path = _write(
        tmp_path,
        {
            "scheduler": {"tick_interval_seconds": 30, "retry_limit": 5},
            "store_path": "state/automations.json",
            "audit": {"log_path": "logs/audit.log", "mirror_to_logger": "yes"},
            "benchmarks": {"defi": {"name": "DeFi Pulse", "apy": 25, "volatility": 45, "category": "crypto"}},
            "notes": "kept aside",
        },
    )

    config = load_engine_config(path)

    assert config.scheduler.tick_interval_seconds == 30
    assert config.scheduler.retry_limit == 5
    assert config.store_path == (tmp_path / "state" / "automations.json").resolve()
    assert config.audit.log_path == (tmp_path / "logs" / "audit.log").resolve()
    assert config.audit.mirror_to_logger is True
    assert config.benchmarks["defi"].symbol == "DEFI"
    assert config.benchmarks["defi"].category == "crypto"
    assert config.extra == {"notes": "kept aside"}
    assert config.config_path == path.resolve()


@pytest.mark.parametrize(
    "payload",
    [
        {"scheduler": {"retry_limit": 0}},
        {"scheduler": {"tick_interval_seconds": 0}},
        {"risk": {"rebalance_threshold": -1}},
        {"performance": {"risk_free_rate": "lots"}},
        {"audit": {"enabled": True}},
        {"benchmarks": {"btc": {"name": "Bitcoin"}}},
        {"scheduler": "fast"},
        {"debug_level": "loud"},
    ],
)
def test_invalid_values_raise(payload) -> None:
    with pytest.raises(ConfigurationError):
        validate_engine_config(payload)


def test_invalid_json_raises(tmp_path) -> None:
    path = tmp_path / "engine.json"
    path.write_text("{broken", encoding="utf-8")

    with pytest.raises(ConfigurationError):
        load_engine_config(path)


def test_missing_file_raises(tmp_path) -> None:
    with pytest.raises(FileNotFoundError):
        load_engine_config(tmp_path / "missing.json")


def test_environment_overrides(tmp_path) -> None:
    env = {
        "AUTOMATION_TICK_INTERVAL_SECONDS": "15",
        "AUTOMATION_RETRY_LIMIT": "4",
        "AUTOMATION_RETRY_BASE_DELAY_SECONDS": "2.5",
        "AUTOMATION_REBALANCE_THRESHOLD": "0.1",
        "AUTOMATION_STORE_PATH": str(tmp_path / "store.json"),
        "AUTOMATION_AUDIT_LOG": str(tmp_path / "audit.log"),
        "AUTOMATION_DEBUG_LEVEL": "2",
    }

    engine = Settings.from_environment(engine=EngineConfig(), env=env).engine

    assert engine.scheduler.tick_interval_seconds == 15
    assert engine.scheduler.retry_limit == 4
    assert engine.scheduler.retry_base_delay_seconds == 2.5
    assert engine.risk.rebalance_threshold == 0.1
    assert engine.store_path == tmp_path / "store.json"
    assert engine.audit.log_path == tmp_path / "audit.log"
    assert engine.debug_level == 2


def test_environment_ignores_unparseable_values() -> None:
    engine = Settings.from_environment(
        engine=EngineConfig(), env={"AUTOMATION_RETRY_LIMIT": "many", "AUTOMATION_TICK_INTERVAL_SECONDS": "-1"}
    ).engine

    assert engine.scheduler.retry_limit == 3
    assert engine.scheduler.tick_interval_seconds == 60


def test_environment_config_path_is_loaded(tmp_path) -> None:
    path = _write(tmp_path, {"risk": {"min_action_value": 250}})

    engine = Settings.from_environment(env={"AUTOMATION_CONFIG": str(path)}).engine

    assert engine.risk.min_action_value == 250


def test_configure_logging_lowers_package_levels(monkeypatch) -> None:
    root = logging.getLogger()
    package_logger = logging.getLogger("portfolio_automation")
    monkeypatch.setattr(root, "handlers", [logging.NullHandler()])
    monkeypatch.setattr(root, "level", logging.WARNING)
    monkeypatch.setattr(package_logger, "level", logging.WARNING)

    installed = configure_logging(2)

    assert installed is False
    assert root.level == logging.DEBUG
    assert package_logger.level == logging.DEBUG
