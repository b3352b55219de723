"""In-process counters and latency histograms for automation runs."""

from __future__ import annotations

import time
from collections import defaultdict
from dataclasses import dataclass, field
from statistics import fmean
from typing import Any, Dict, List, Mapping, MutableMapping, Tuple

LabelKey = Tuple[Tuple[str, str], ...]


@dataclass
class MetricRegistry:
    """Prometheus-style collector keyed by metric name and sorted labels."""

    counters: MutableMapping[Tuple[str, LabelKey], float] = field(default_factory=lambda: defaultdict(float))
    histograms: MutableMapping[Tuple[str, LabelKey], List[float]] = field(
        default_factory=lambda: defaultdict(list)
    )

    def inc(self, name: str, *, labels: Mapping[str, str] | None = None, amount: float = 1.0) -> None:
        self.counters[self._key(name, labels)] += amount

    def observe(self, name: str, value: float, *, labels: Mapping[str, str] | None = None) -> None:
        self.histograms[self._key(name, labels)].append(value)

    def counter(self, name: str, *, labels: Mapping[str, str] | None = None) -> float:
        return self.counters.get(self._key(name, labels), 0.0)

    def samples(self, name: str, *, labels: Mapping[str, str] | None = None) -> List[float]:
        return list(self.histograms.get(self._key(name, labels), []))

    def snapshot(self) -> Dict[str, Any]:
        """Flatten the registry into a JSON friendly mapping."""

        counters = [
            {"name": name, "labels": dict(labels), "value": value} for (name, labels), value in self.counters.items()
        ]
        histograms = [
            {
                "name": name,
                "labels": dict(labels),
                "count": len(values),
                "mean": fmean(values) if values else 0.0,
                "max": max(values) if values else 0.0,
            }
            for (name, labels), values in self.histograms.items()
        ]
        return {"counters": counters, "histograms": histograms}

    @staticmethod
    def _key(name: str, labels: Mapping[str, str] | None) -> Tuple[str, LabelKey]:
        return name, tuple(sorted((str(k), str(v)) for k, v in (labels or {}).items()))


class Timer:
    """Context manager recording elapsed wall time into a histogram."""

    def __init__(self, registry: MetricRegistry, name: str, *, labels: Mapping[str, str] | None = None) -> None:
        self._registry = registry
        self._name = name
        self._labels = labels
        self._start: float | None = None
        self.elapsed: float = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._start is None:
            return
        self.elapsed = time.perf_counter() - self._start
        self._registry.observe(self._name, self.elapsed, labels=self._labels)
