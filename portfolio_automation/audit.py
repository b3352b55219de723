"""Tamper-evident audit trail for automation lifecycle and risk events.

Every record is a single JSON line carrying the SHA-256 hash of its canonical
form and the hash of the previous record, so editing or dropping a line breaks
the chain and is detected by :func:`verify_audit_chain`.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from hashlib import sha256
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64

DEFAULT_REDACT_FIELDS: tuple[str, ...] = (
    "password",
    "secret",
    "token",
    "api_key",
    "private_key",
    "account_number",
    "source_account",
)


@dataclass(frozen=True)
class AuditSettings:
    """Where audit records go and which detail keys are masked."""

    log_path: Path
    enabled: bool = True
    redact_fields: Sequence[str] = DEFAULT_REDACT_FIELDS
    mirror_to_logger: bool = False


class AuditSink:
    def write(self, payload: str) -> None:  # pragma: no cover - interface method
        raise NotImplementedError


class FileAuditSink(AuditSink):
    """Append audit records to a JSONL file."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    def bootstrap_hash(self) -> str:
        """Return the hash of the last stored record so the chain resumes after restarts."""

        last_entry: Optional[Dict[str, Any]] = None
        for entry in iter_audit_entries(self._path):
            last_entry = entry
        if last_entry is None:
            return GENESIS_HASH
        return str(last_entry.get("hash") or GENESIS_HASH)

    def write(self, payload: str) -> None:
        with self._path.open("a", encoding="utf-8") as handle:
            handle.write(payload)


class LoggerAuditSink(AuditSink):
    """Mirror audit records onto a standard logger."""

    def __init__(self, name: str = "portfolio_automation.audit.trail") -> None:
        self._logger = logging.getLogger(name)

    def write(self, payload: str) -> None:
        self._logger.info(payload.rstrip("\n"))


class AuditLogWriter:
    """Append-only writer maintaining the hash chain across sinks."""

    def __init__(
        self,
        *,
        file_sink: FileAuditSink,
        redact_fields: Sequence[str] = DEFAULT_REDACT_FIELDS,
        extra_sinks: Sequence[AuditSink] = (),
    ) -> None:
        self._file_sink = file_sink
        self._sinks: List[AuditSink] = [file_sink, *extra_sinks]
        self._lock = threading.Lock()
        self._redact_keys = {_normalise_key(item) for item in redact_fields}
        self._last_hash = file_sink.bootstrap_hash()

    def _redact(self, value: Any) -> Any:
        if isinstance(value, Mapping):
            redacted: Dict[str, Any] = {}
            for key, item in value.items():
                norm_key = _normalise_key(str(key))
                if any(candidate in norm_key for candidate in self._redact_keys):
                    redacted[key] = "<redacted>"
                else:
                    redacted[key] = self._redact(item)
            return redacted
        if isinstance(value, (list, tuple, set)):
            return [self._redact(item) for item in value]
        if isinstance(value, datetime):
            return value.isoformat()
        return value

    def log(self, action: str, actor: str, details: Mapping[str, Any] | None = None) -> str:
        """Append a record for ``action`` performed by ``actor`` and return its hash."""

        timestamp = datetime.now(timezone.utc).isoformat()
        with self._lock:
            record: Dict[str, Any] = {
                "timestamp": timestamp,
                "action": str(action),
                "actor": str(actor),
                "details": self._redact(dict(details or {})),
                "prev_hash": self._last_hash,
            }
            record_hash = _record_hash(record)
            record["hash"] = record_hash
            payload = json.dumps(record, sort_keys=True, default=str) + "\n"
            for sink in self._sinks:
                try:
                    sink.write(payload)
                except Exception as exc:  # pragma: no cover - sink failures must not stop automations
                    logger.warning("Failed to write audit record via %s: %s", type(sink).__name__, exc)
            self._last_hash = record_hash
        return record_hash

    @property
    def log_path(self) -> Path:
        return self._file_sink.path


def _normalise_key(key: str) -> str:
    return key.replace(" ", "").replace("-", "_").lower()


def _record_hash(record: Mapping[str, Any]) -> str:
    canonical = json.dumps(
        {key: record[key] for key in ("timestamp", "action", "actor", "details", "prev_hash")},
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return sha256(canonical.encode("utf-8")).hexdigest()


def iter_audit_entries(path: Path) -> Iterator[Dict[str, Any]]:
    """Yield parsed audit records from ``path``."""

    try:
        with Path(path).open("r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                try:
                    yield json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("Skipping invalid audit record in %s", path)
    except FileNotFoundError:
        return


def read_audit_entries(
    path: Path,
    *,
    limit: Optional[int] = None,
    action: Optional[str] = None,
    actor: Optional[str] = None,
) -> list[Dict[str, Any]]:
    """Return audit entries from ``path`` filtered by action and actor."""

    action_norm = action.lower() if action else None
    actor_norm = actor.lower() if actor else None
    results: list[Dict[str, Any]] = []
    for entry in iter_audit_entries(path):
        if action_norm and str(entry.get("action", "")).lower() != action_norm:
            continue
        if actor_norm and str(entry.get("actor", "")).lower() != actor_norm:
            continue
        results.append(entry)
    if limit is not None:
        return results[-limit:]
    return results


def verify_audit_chain(path: Path) -> Optional[int]:
    """Return the index of the first broken record, or ``None`` when the chain is intact."""

    previous = GENESIS_HASH
    for index, entry in enumerate(iter_audit_entries(path)):
        if entry.get("prev_hash") != previous:
            return index
        try:
            expected = _record_hash(entry)
        except KeyError:
            return index
        if entry.get("hash") != expected:
            return index
        previous = expected
    return None


_audit_registry: Dict[Path, AuditLogWriter] = {}
_registry_lock = threading.Lock()


def reset_audit_registry() -> None:
    """Drop cached writers. Used by tests."""

    with _registry_lock:
        _audit_registry.clear()


def get_audit_logger(settings: Optional[AuditSettings]) -> Optional[AuditLogWriter]:
    """Return the shared :class:`AuditLogWriter` for ``settings.log_path``."""

    if settings is None or not settings.enabled:
        return None
    log_path = Path(settings.log_path)
    with _registry_lock:
        writer = _audit_registry.get(log_path)
        if writer is not None:
            return writer
        extra_sinks: list[AuditSink] = []
        if settings.mirror_to_logger:
            extra_sinks.append(LoggerAuditSink())
        writer = AuditLogWriter(
            file_sink=FileAuditSink(log_path),
            redact_fields=settings.redact_fields,
            extra_sinks=tuple(extra_sinks),
        )
        _audit_registry[log_path] = writer
        return writer


__all__ = [
    "AuditLogWriter",
    "AuditSettings",
    "AuditSink",
    "FileAuditSink",
    "GENESIS_HASH",
    "LoggerAuditSink",
    "get_audit_logger",
    "iter_audit_entries",
    "read_audit_entries",
    "reset_audit_registry",
    "verify_audit_chain",
]
