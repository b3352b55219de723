"""Domain records shared by the scheduler, the handlers and the risk engine."""

from __future__ import annotations

import json
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from hashlib import sha256
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence, Tuple, Type, Union

from ..errors import ConfigurationError, ValidationError


class AutomationType(str, Enum):
    SCHEDULED_DEPOSIT = "scheduled_deposit"
    STRATEGY_EXECUTION = "strategy_execution"
    REBALANCING = "rebalancing"
    TAKE_PROFIT = "take_profit"
    STOP_LOSS = "stop_loss"
    YIELD_HARVEST = "yield_harvest"


class AutomationStatus(str, Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class Frequency(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"


class RiskTolerance(str, Enum):
    CONSERVATIVE = "Conservative"
    MODERATE = "Moderate"
    BALANCED = "Balanced"
    AGGRESSIVE = "Aggressive"
    VERY_AGGRESSIVE = "Very Aggressive"

    @classmethod
    def parse(cls, value: Union[str, "RiskTolerance"]) -> "RiskTolerance":
        """Return the tolerance for ``value`` accepting labels and member names."""

        if isinstance(value, cls):
            return value
        text = str(value or "").strip()
        for member in cls:
            if text.lower() in {member.value.lower(), member.name.lower()}:
                return member
        raise ConfigurationError(f"Unknown risk tolerance '{value}'")


class RiskLevel(str, Enum):
    VERY_LOW = "Very Low"
    LOW = "Low"
    MODERATE = "Moderate"
    HIGH = "High"
    VERY_HIGH = "Very High"


class TransactionKind(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    START_STRATEGY = "start_strategy"
    STOP_STRATEGY = "stop_strategy"
    HARVEST = "harvest"
    REBALANCE = "rebalance"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Return an aware UTC ``datetime`` for ISO strings, epoch seconds or datetimes."""

    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise ValidationError(f"Invalid timestamp '{value}'") from exc
        return parse_timestamp(parsed)
    raise ValidationError(f"Invalid timestamp '{value}'")


def _optional_timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return parse_timestamp(value)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def require_number(value: Any, name: str) -> float:
    if isinstance(value, bool):
        raise ValidationError(f"{name} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{name} must be a number") from exc
    if not math.isfinite(number):
        raise ValidationError(f"{name} must be a finite number")
    return number


def _require_positive(value: Any, name: str) -> float:
    number = require_number(value, name)
    if number <= 0:
        raise ValidationError(f"{name} must be greater than zero")
    return number


def _require_text(payload: Mapping[str, Any], key: str) -> str:
    value = payload.get(key)
    if value is None or str(value).strip() == "":
        raise ValidationError(f"Missing required parameter '{key}'")
    return str(value)


def _sell_percentage(value: Any) -> float:
    percentage = _require_positive(100.0 if value is None else value, "sell_percentage")
    if percentage > 100:
        raise ValidationError("sell_percentage cannot exceed 100")
    return percentage


# ---------------------------------------------------------------------------
# Automation parameters


@dataclass(frozen=True)
class DepositParameters:
    amount: float
    source_account: Optional[str] = None
    target_strategy: Optional[str] = None
    currency: str = "USD"

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "DepositParameters":
        if "amount" not in payload:
            raise ValidationError("Missing required parameter 'amount'")
        return cls(
            amount=_require_positive(payload.get("amount"), "amount"),
            source_account=payload.get("source_account"),
            target_strategy=payload.get("target_strategy"),
            currency=str(payload.get("currency") or "USD"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "amount": self.amount,
            "source_account": self.source_account,
            "target_strategy": self.target_strategy,
            "currency": self.currency,
        }


@dataclass(frozen=True)
class RiskParameters:
    require_risk_check: bool = False
    risk_tolerance: str = RiskTolerance.MODERATE.value

    @classmethod
    def from_mapping(cls, payload: Optional[Mapping[str, Any]]) -> "RiskParameters":
        payload = payload or {}
        tolerance = payload.get("risk_tolerance") or RiskTolerance.MODERATE.value
        try:
            tolerance = RiskTolerance.parse(tolerance).value
        except ConfigurationError as exc:
            raise ValidationError(str(exc)) from exc
        return cls(require_risk_check=bool(payload.get("require_risk_check", False)), risk_tolerance=tolerance)

    def to_dict(self) -> Dict[str, Any]:
        return {"require_risk_check": self.require_risk_check, "risk_tolerance": self.risk_tolerance}


@dataclass(frozen=True)
class StrategyExecutionParameters:
    strategy_id: str
    amount: float
    conditions: Mapping[str, Any] = field(default_factory=dict)
    risk_parameters: RiskParameters = field(default_factory=RiskParameters)
    strategy_name: Optional[str] = None
    protocol: Optional[str] = None
    expected_apy: Optional[float] = None

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "StrategyExecutionParameters":
        if "amount" not in payload:
            raise ValidationError("Missing required parameter 'amount'")
        apy = payload.get("expected_apy")
        return cls(
            strategy_id=_require_text(payload, "strategy_id"),
            amount=_require_positive(payload.get("amount"), "amount"),
            conditions=dict(payload.get("conditions") or {}),
            risk_parameters=RiskParameters.from_mapping(payload.get("risk_parameters")),
            strategy_name=payload.get("strategy_name"),
            protocol=payload.get("protocol"),
            expected_apy=require_number(apy, "expected_apy") if apy is not None else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy_id": self.strategy_id,
            "amount": self.amount,
            "conditions": dict(self.conditions),
            "risk_parameters": self.risk_parameters.to_dict(),
            "strategy_name": self.strategy_name,
            "protocol": self.protocol,
            "expected_apy": self.expected_apy,
        }


@dataclass(frozen=True)
class TargetAllocation:
    asset: str
    weight: float

    def to_dict(self) -> Dict[str, Any]:
        return {"asset": self.asset, "weight": self.weight}


@dataclass(frozen=True)
class RebalancingParameters:
    risk_tolerance: str
    portfolio_id: str = "default"
    target_allocations: Tuple[TargetAllocation, ...] = ()
    rebalance_threshold: float = 0.05

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "RebalancingParameters":
        try:
            tolerance = RiskTolerance.parse(_require_text(payload, "risk_tolerance")).value
        except ConfigurationError as exc:
            raise ValidationError(str(exc)) from exc
        allocations = []
        for entry in payload.get("target_allocations") or ():
            if not isinstance(entry, Mapping) or "asset" not in entry:
                raise ValidationError("target_allocations entries require 'asset' and 'weight'")
            weight = require_number(entry.get("weight", 0.0), "weight")
            if weight < 0 or weight > 1:
                raise ValidationError("target allocation weights must be between 0 and 1")
            allocations.append(TargetAllocation(asset=str(entry["asset"]), weight=weight))
        threshold = require_number(payload.get("rebalance_threshold", 0.05), "rebalance_threshold")
        if threshold <= 0:
            raise ValidationError("rebalance_threshold must be greater than zero")
        return cls(
            risk_tolerance=tolerance,
            portfolio_id=str(payload.get("portfolio_id") or "default"),
            target_allocations=tuple(allocations),
            rebalance_threshold=threshold,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "risk_tolerance": self.risk_tolerance,
            "portfolio_id": self.portfolio_id,
            "target_allocations": [allocation.to_dict() for allocation in self.target_allocations],
            "rebalance_threshold": self.rebalance_threshold,
        }


@dataclass(frozen=True)
class TakeProfitParameters:
    strategy_id: str
    target_return: float
    sell_percentage: float = 100.0
    conditions: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "TakeProfitParameters":
        if "target_return" not in payload:
            raise ValidationError("Missing required parameter 'target_return'")
        return cls(
            strategy_id=_require_text(payload, "strategy_id"),
            target_return=require_number(payload["target_return"], "target_return"),
            sell_percentage=_sell_percentage(payload.get("sell_percentage")),
            conditions=dict(payload.get("conditions") or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy_id": self.strategy_id,
            "target_return": self.target_return,
            "sell_percentage": self.sell_percentage,
            "conditions": dict(self.conditions),
        }


@dataclass(frozen=True)
class StopLossParameters:
    strategy_id: str
    max_loss: float
    sell_percentage: float = 100.0
    conditions: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "StopLossParameters":
        if "max_loss" not in payload:
            raise ValidationError("Missing required parameter 'max_loss'")
        return cls(
            strategy_id=_require_text(payload, "strategy_id"),
            max_loss=_require_positive(payload["max_loss"], "max_loss"),
            sell_percentage=_sell_percentage(payload.get("sell_percentage")),
            conditions=dict(payload.get("conditions") or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy_id": self.strategy_id,
            "max_loss": self.max_loss,
            "sell_percentage": self.sell_percentage,
            "conditions": dict(self.conditions),
        }


@dataclass(frozen=True)
class YieldHarvestParameters:
    strategies: Tuple[str, ...]
    min_harvest_amount: float = 0.0

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "YieldHarvestParameters":
        strategies = payload.get("strategies")
        if isinstance(strategies, str):
            strategies = [strategies]
        if not strategies:
            raise ValidationError("Missing required parameter 'strategies'")
        minimum = require_number(payload.get("min_harvest_amount", 0.0) or 0.0, "min_harvest_amount")
        if minimum < 0:
            raise ValidationError("min_harvest_amount cannot be negative")
        return cls(strategies=tuple(str(item) for item in strategies), min_harvest_amount=minimum)

    def to_dict(self) -> Dict[str, Any]:
        return {"strategies": list(self.strategies), "min_harvest_amount": self.min_harvest_amount}


AutomationParameters = Union[
    DepositParameters,
    StrategyExecutionParameters,
    RebalancingParameters,
    TakeProfitParameters,
    StopLossParameters,
    YieldHarvestParameters,
]

PARAMETER_TYPES: Dict[AutomationType, Type[Any]] = {
    AutomationType.SCHEDULED_DEPOSIT: DepositParameters,
    AutomationType.STRATEGY_EXECUTION: StrategyExecutionParameters,
    AutomationType.REBALANCING: RebalancingParameters,
    AutomationType.TAKE_PROFIT: TakeProfitParameters,
    AutomationType.STOP_LOSS: StopLossParameters,
    AutomationType.YIELD_HARVEST: YieldHarvestParameters,
}


def parameters_from_mapping(automation_type: AutomationType, payload: Any) -> AutomationParameters:
    """Build the parameter variant for ``automation_type`` from ``payload``."""

    expected = PARAMETER_TYPES[automation_type]
    if isinstance(payload, expected):
        return payload
    if payload is None:
        raise ValidationError(f"Parameters are required for {automation_type.value} automations")
    if not isinstance(payload, Mapping):
        raise ValidationError(
            f"Parameters of type {type(payload).__name__} do not match automation type {automation_type.value}"
        )
    return expected.from_mapping(payload)


# ---------------------------------------------------------------------------
# Automation record


@dataclass(frozen=True)
class FailureRecord:
    timestamp: datetime
    kind: str
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {"timestamp": self.timestamp.isoformat(), "kind": self.kind, "message": self.message}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "FailureRecord":
        return cls(
            timestamp=parse_timestamp(payload["timestamp"]),
            kind=str(payload.get("kind") or "unexpected"),
            message=str(payload.get("message") or ""),
        )


@dataclass
class Automation:
    """Durable record describing a scheduled operation and its lifecycle."""

    id: str
    type: AutomationType
    status: AutomationStatus
    user_id: str
    name: str
    parameters: AutomationParameters
    created_at: datetime
    start_date: datetime
    frequency: Optional[Frequency] = None
    end_date: Optional[datetime] = None
    next_execution: Optional[datetime] = None
    last_executed: Optional[datetime] = None
    execution_count: int = 0
    failure_count: int = 0
    last_failure: Optional[FailureRecord] = None
    last_result: Optional[Dict[str, Any]] = None
    sequence: int = 0
    paused_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "status": self.status.value,
            "user_id": self.user_id,
            "name": self.name,
            "parameters": self.parameters.to_dict(),
            "created_at": self.created_at.isoformat(),
            "start_date": self.start_date.isoformat(),
            "frequency": self.frequency.value if self.frequency else None,
            "end_date": _isoformat(self.end_date),
            "next_execution": _isoformat(self.next_execution),
            "last_executed": _isoformat(self.last_executed),
            "execution_count": self.execution_count,
            "failure_count": self.failure_count,
            "last_failure": self.last_failure.to_dict() if self.last_failure else None,
            "last_result": self.last_result,
            "sequence": self.sequence,
            "paused_at": _isoformat(self.paused_at),
            "cancelled_at": _isoformat(self.cancelled_at),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Automation":
        automation_type = AutomationType(payload["type"])
        frequency = payload.get("frequency")
        failure = payload.get("last_failure")
        return cls(
            id=str(payload["id"]),
            type=automation_type,
            status=AutomationStatus(payload["status"]),
            user_id=str(payload.get("user_id") or "default"),
            name=str(payload.get("name") or ""),
            parameters=parameters_from_mapping(automation_type, payload.get("parameters")),
            created_at=parse_timestamp(payload["created_at"]),
            start_date=parse_timestamp(payload["start_date"]),
            frequency=Frequency(frequency) if frequency else None,
            end_date=_optional_timestamp(payload.get("end_date")),
            next_execution=_optional_timestamp(payload.get("next_execution")),
            last_executed=_optional_timestamp(payload.get("last_executed")),
            execution_count=int(payload.get("execution_count", 0)),
            failure_count=int(payload.get("failure_count", 0)),
            last_failure=FailureRecord.from_dict(failure) if isinstance(failure, Mapping) else None,
            last_result=dict(payload["last_result"]) if isinstance(payload.get("last_result"), Mapping) else None,
            sequence=int(payload.get("sequence", 0)),
            paused_at=_optional_timestamp(payload.get("paused_at")),
            cancelled_at=_optional_timestamp(payload.get("cancelled_at")),
        )


# ---------------------------------------------------------------------------
# Portfolio and ledger records


@dataclass(frozen=True)
class Position:
    asset: str
    protocol: str
    value: float

    def to_dict(self) -> Dict[str, Any]:
        return {"asset": self.asset, "protocol": self.protocol, "value": self.value}


@dataclass(frozen=True)
class Portfolio:
    """Immutable snapshot of a user's holdings valued in the reference currency."""

    total_value: float
    positions: Tuple[Position, ...] = ()
    id: str = "default"

    @classmethod
    def from_positions(cls, positions: Iterable[Position], *, portfolio_id: str = "default") -> "Portfolio":
        items = tuple(positions)
        return cls(total_value=sum(position.value for position in items), positions=items, id=portfolio_id)

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "Portfolio":
        positions = []
        for entry in payload.get("positions") or ():
            if not isinstance(entry, Mapping):
                raise ValidationError("positions must be objects with asset, protocol and value")
            positions.append(
                Position(
                    asset=str(entry.get("asset") or "").upper(),
                    protocol=str(entry.get("protocol") or "").lower(),
                    value=require_number(entry.get("value") or 0.0, "value"),
                )
            )
        total = payload.get("total_value")
        if total is None:
            total = sum(position.value for position in positions)
        return cls(
            total_value=require_number(total, "total_value"),
            positions=tuple(positions),
            id=str(payload.get("id") or "default"),
        )

    def weight(self, value: float) -> float:
        if self.total_value <= 0:
            return 0.0
        return value / self.total_value

    def asset_values(self) -> Dict[str, float]:
        values: Dict[str, float] = {}
        for position in self.positions:
            values[position.asset] = values.get(position.asset, 0.0) + position.value
        return values

    def protocol_values(self) -> Dict[str, float]:
        values: Dict[str, float] = {}
        for position in self.positions:
            values[position.protocol] = values.get(position.protocol, 0.0) + position.value
        return values

    def fingerprint(self) -> str:
        """Stable hash of the holdings used as a cache key."""

        canonical = json.dumps(
            {
                "total_value": round(self.total_value, 8),
                "positions": sorted(
                    (position.asset, position.protocol, round(position.value, 8)) for position in self.positions
                ),
            },
            sort_keys=True,
            separators=(",", ":"),
        )
        return sha256(canonical.encode("utf-8")).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "total_value": self.total_value,
            "positions": [position.to_dict() for position in self.positions],
        }


@dataclass
class Strategy:
    id: str
    name: str
    asset: str
    protocol: str
    current_amount: float
    target_amount: float
    apy: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "asset": self.asset,
            "protocol": self.protocol,
            "current_amount": self.current_amount,
            "target_amount": self.target_amount,
            "apy": self.apy,
        }


@dataclass
class Balance:
    total: float
    available: float
    invested: float
    currency: str = "USD"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "available": self.available,
            "invested": self.invested,
            "currency": self.currency,
        }


@dataclass
class Transaction:
    kind: TransactionKind
    amount: float
    timestamp: datetime
    strategy_id: Optional[str] = None
    automation_id: Optional[str] = None
    asset: Optional[str] = None
    currency: str = "USD"
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "Transaction":
        kind = payload.get("kind") or payload.get("type")
        try:
            parsed_kind = TransactionKind(str(kind))
        except ValueError as exc:
            raise ValidationError(f"Unknown transaction kind '{kind}'") from exc
        return cls(
            kind=parsed_kind,
            amount=require_number(payload.get("amount") or 0.0, "amount"),
            timestamp=parse_timestamp(payload.get("timestamp")),
            strategy_id=payload.get("strategy_id"),
            automation_id=payload.get("automation_id"),
            asset=payload.get("asset"),
            currency=str(payload.get("currency") or "USD"),
            metadata=dict(payload.get("metadata") or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "amount": self.amount,
            "timestamp": self.timestamp.isoformat(),
            "strategy_id": self.strategy_id,
            "automation_id": self.automation_id,
            "asset": self.asset,
            "currency": self.currency,
            "metadata": dict(self.metadata),
        }


@dataclass
class HandlerResult:
    """Outcome returned by an automation handler."""

    success: bool = True
    skipped: bool = False
    reason: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, **data: Any) -> "HandlerResult":
        return cls(success=True, skipped=False, data=data)

    @classmethod
    def skip(cls, reason: str, **data: Any) -> "HandlerResult":
        return cls(success=True, skipped=True, reason=reason, data=data)

    def to_dict(self) -> Dict[str, Any]:
        return {"success": self.success, "skipped": self.skipped, "reason": self.reason, "data": dict(self.data)}


def transactions_from_payload(entries: Sequence[Any]) -> list[Transaction]:
    return [entry if isinstance(entry, Transaction) else Transaction.from_mapping(entry) for entry in entries]


__all__ = [
    "Automation",
    "AutomationParameters",
    "AutomationStatus",
    "AutomationType",
    "Balance",
    "DepositParameters",
    "FailureRecord",
    "Frequency",
    "HandlerResult",
    "PARAMETER_TYPES",
    "Portfolio",
    "Position",
    "RebalancingParameters",
    "RiskLevel",
    "RiskParameters",
    "RiskTolerance",
    "StopLossParameters",
    "Strategy",
    "StrategyExecutionParameters",
    "TakeProfitParameters",
    "TargetAllocation",
    "Transaction",
    "TransactionKind",
    "YieldHarvestParameters",
    "parameters_from_mapping",
    "parse_timestamp",
    "require_number",
    "transactions_from_payload",
    "utc_now",
]
