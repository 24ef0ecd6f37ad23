import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any


@dataclass
class Counter:
    value: int = 0

    def add(self, value: int = 1):
        self.value += value


@dataclass
class Gauge:
    value: float = 0.0


@dataclass
class Histogram:
    values: list[float] = field(default_factory=list)

    def record(self, value: float):
        self.values.append(value)

    def summary(self) -> dict[str, float]:
        if not self.values:
            return dict.fromkeys(("count", "sum", "min", "max", "p50", "p99"), 0)
        ordered = sorted(self.values)
        last = len(ordered) - 1
        return {
            "count": len(ordered),
            "sum": round(sum(ordered), 3),
            "min": ordered[0],
            "max": ordered[-1],
            "p50": ordered[min(int(len(ordered) * 0.50), last)],
            "p99": ordered[min(int(len(ordered) * 0.99), last)],
        }


def _labels_key(labels: dict[str, str] | None) -> tuple:
    return tuple(sorted((labels or {}).items()))


def _labels_text(key: tuple) -> str:
    if not key:
        return ""
    return "{" + ",".join(f'{k}="{v}"' for k, v in key) + "}"


class MetricsCollector:
    """Counters, gauges and latency histograms keyed by name and labels."""

    def __init__(self) -> None:
        self._counters: dict[str, dict[tuple, Counter]] = defaultdict(
            lambda: defaultdict(Counter)
        )
        self._gauges: dict[str, dict[tuple, Gauge]] = defaultdict(
            lambda: defaultdict(Gauge)
        )
        self._histograms: dict[str, dict[tuple, Histogram]] = defaultdict(
            lambda: defaultdict(Histogram)
        )
        self._lock = asyncio.Lock()

    async def increment_counter(
        self, name: str, labels: dict[str, str] | None = None, value: int = 1
    ):
        async with self._lock:
            self._counters[name][_labels_key(labels)].add(value)

    async def set_gauge(
        self, name: str, value: float, labels: dict[str, str] | None = None
    ):
        async with self._lock:
            self._gauges[name][_labels_key(labels)].value = value

    async def record_histogram(
        self, name: str, value: float, labels: dict[str, str] | None = None
    ):
        async with self._lock:
            self._histograms[name][_labels_key(labels)].record(value)

    async def get_metrics(self) -> dict[str, Any]:
        async with self._lock:
            return {
                "counters": {
                    name: {_labels_text(k): c.value for k, c in by_labels.items()}
                    for name, by_labels in self._counters.items()
                },
                "gauges": {
                    name: {_labels_text(k): g.value for k, g in by_labels.items()}
                    for name, by_labels in self._gauges.items()
                },
                "histograms": {
                    name: {_labels_text(k): h.summary() for k, h in by_labels.items()}
                    for name, by_labels in self._histograms.items()
                },
            }

    async def export_prometheus(self) -> str:
        async with self._lock:
            lines = []
            for name, by_labels in self._counters.items():
                metric = f"lb_{name.replace('.', '_')}"
                for key, counter in by_labels.items():
                    lines.append(f"{metric}{_labels_text(key)} {counter.value}")
            for name, by_labels in self._gauges.items():
                metric = f"lb_{name.replace('.', '_')}"
                for key, gauge in by_labels.items():
                    lines.append(f"{metric}{_labels_text(key)} {gauge.value}")
            for name, by_labels in self._histograms.items():
                metric = f"lb_{name.replace('.', '_')}"
                for key, hist in by_labels.items():
                    stats = hist.summary()
                    if not stats["count"]:
                        continue
                    suffix = _labels_text(key)
                    lines.append(f"{metric}_sum{suffix} {stats['sum']}")
                    lines.append(f"{metric}_count{suffix} {stats['count']}")
                    lines.append(f"{metric}_p50{suffix} {stats['p50']}")
                    lines.append(f"{metric}_p99{suffix} {stats['p99']}")
            return "\n".join(lines)
