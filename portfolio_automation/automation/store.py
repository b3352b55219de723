"""Persistence for automation records."""

from __future__ import annotations

import copy
import json
import logging
import tempfile
import threading
from pathlib import Path
from typing import Dict, List, Optional

from ..errors import ConfigurationError
from ..models import Automation

logger = logging.getLogger(__name__)


class AutomationStore:
    def load(self, automation_id: str) -> Optional[Automation]:  # pragma: no cover - interface
        raise NotImplementedError

    def save(self, automation: Automation) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def list(self) -> List[Automation]:  # pragma: no cover - interface
        raise NotImplementedError

    def delete(self, automation_id: str) -> bool:  # pragma: no cover - interface
        raise NotImplementedError


class InMemoryAutomationStore(AutomationStore):
    """Keeps copies of records so callers cannot mutate stored state by accident."""

    def __init__(self) -> None:
        self._records: Dict[str, Automation] = {}

    def load(self, automation_id: str) -> Optional[Automation]:
        record = self._records.get(automation_id)
        return copy.deepcopy(record) if record is not None else None

    def save(self, automation: Automation) -> None:
        self._records[automation.id] = copy.deepcopy(automation)

    def list(self) -> List[Automation]:
        return [copy.deepcopy(record) for record in self._records.values()]

    def delete(self, automation_id: str) -> bool:
        return self._records.pop(automation_id, None) is not None


class FileAutomationStore(AutomationStore):
    """JSON-backed store; every write replaces the file atomically."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def _read(self) -> Dict[str, dict]:
        if not self._path.exists():
            return {}
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ConfigurationError(f"Automation store {self._path} is not valid JSON: {exc}") from exc
        records = payload.get("automations") if isinstance(payload, dict) else None
        if not isinstance(records, dict):
            logger.warning("Automation store has no 'automations' object", extra={"path": str(self._path)})
            return {}
        return records

    def _write(self, records: Dict[str, dict]) -> None:
        _atomic_write(self._path, json.dumps({"version": 1, "automations": records}, indent=2, sort_keys=True))

    def load(self, automation_id: str) -> Optional[Automation]:
        with self._lock:
            record = self._read().get(automation_id)
        return Automation.from_dict(record) if record is not None else None

    def save(self, automation: Automation) -> None:
        with self._lock:
            records = self._read()
            records[automation.id] = automation.to_dict()
            self._write(records)

    def list(self) -> List[Automation]:
        with self._lock:
            records = self._read()
        automations: List[Automation] = []
        for automation_id, record in records.items():
            try:
                automations.append(Automation.from_dict(record))
            except (KeyError, ValueError) as exc:
                logger.error(
                    "Skipping unreadable automation record",
                    extra={"automation_id": automation_id, "error": str(exc), "path": str(self._path)},
                )
        return automations

    def delete(self, automation_id: str) -> bool:
        with self._lock:
            records = self._read()
            if records.pop(automation_id, None) is None:
                return False
            self._write(records)
            return True


def _atomic_write(path: Path, content: str) -> None:
    tmp = tempfile.NamedTemporaryFile("w", delete=False, dir=path.parent, encoding="utf-8")
    try:
        with tmp as handle:
            handle.write(content)
            handle.flush()
        Path(tmp.name).replace(path)
    except Exception:
        Path(tmp.name).unlink(missing_ok=True)
        raise
