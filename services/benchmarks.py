"""Benchmark reference data for performance comparisons."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Mapping, Optional

from portfolio_automation.errors import ConfigurationError


@dataclass(frozen=True)
class Benchmark:
    id: str
    name: str
    symbol: str
    apy: float
    volatility: float
    category: str

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "symbol": self.symbol,
            "apy": self.apy,
            "volatility": self.volatility,
            "category": self.category,
        }


DEFAULT_BENCHMARKS: Mapping[str, Benchmark] = {
    "sp500": Benchmark("sp500", "S&P 500", "SPY", 10.5, 15.8, "equity"),
    "bonds": Benchmark("bonds", "US Treasury Bonds", "TLT", 3.2, 8.1, "fixed_income"),
    "reits": Benchmark("reits", "Real Estate Investment Trusts", "VNQ", 8.7, 19.2, "real_estate"),
    "savings": Benchmark("savings", "High-Yield Savings Account", "HYSA", 1.5, 0.1, "cash"),
}

# Information ratio is measured against this benchmark.
MARKET_BENCHMARK_ID = "sp500"


class BenchmarkSource:
    def list_benchmarks(self) -> List[Benchmark]:  # pragma: no cover - interface
        raise NotImplementedError

    def get_benchmark(self, benchmark_id: str) -> Benchmark:  # pragma: no cover - interface
        raise NotImplementedError


class StaticBenchmarkSource(BenchmarkSource):
    """Ships the default table; ``extra`` rows (e.g. a DeFi index or BTC) override or extend it."""

    def __init__(self, extra: Optional[Iterable[Benchmark]] = None, *, include_defaults: bool = True) -> None:
        self._benchmarks: Dict[str, Benchmark] = dict(DEFAULT_BENCHMARKS) if include_defaults else {}
        for benchmark in extra or ():
            self._benchmarks[benchmark.id] = benchmark

    def list_benchmarks(self) -> List[Benchmark]:
        return list(self._benchmarks.values())

    def get_benchmark(self, benchmark_id: str) -> Benchmark:
        try:
            return self._benchmarks[benchmark_id]
        except KeyError as exc:
            raise ConfigurationError(f"Unknown benchmark '{benchmark_id}'") from exc


__all__ = [
    "Benchmark",
    "BenchmarkSource",
    "DEFAULT_BENCHMARKS",
    "MARKET_BENCHMARK_ID",
    "StaticBenchmarkSource",
]
