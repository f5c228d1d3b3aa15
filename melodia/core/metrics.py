"""Process-local counters rendered in the Prometheus text exposition format."""

from __future__ import annotations

import re
import threading
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Tuple

LabelValues = Tuple[str, ...]


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")


class Counter:
    """Monotonic counter keyed by a fixed, ordered set of label names."""

    def __init__(self, name: str, label_names: Optional[Iterable[str]] = None):
        self.name = name
        self.label_names: Tuple[str, ...] = tuple(label_names or ())
        self._series: Dict[LabelValues, float] = defaultdict(float)
        self._lock = threading.Lock()

    def _key(self, labels: Optional[Dict[str, str]]) -> LabelValues:
        labels = labels or {}
        return tuple(str(labels.get(name, "")) for name in self.label_names)

    def inc(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0) -> None:
        key = self._key(labels)
        with self._lock:
            self._series[key] += float(amount)

    def value(self, labels: Optional[Dict[str, str]] = None) -> float:
        key = self._key(labels)
        with self._lock:
            return self._series.get(key, 0.0)

    def export(self) -> List[str]:
        with self._lock:
            series = sorted(self._series.items())
        lines = [f"# TYPE {self.name} counter"]
        for values, total in series:
            if self.label_names:
                rendered = ",".join(f'{n}="{_escape(v)}"' for n, v in zip(self.label_names, values))
                lines.append(f"{self.name}{{{rendered}}} {total}")
            else:
                lines.append(f"{self.name} {total}")
        return lines

    def reset(self) -> None:
        with self._lock:
            self._series.clear()


class MetricsRegistry:
    def __init__(self):
        self._counters: Dict[str, Counter] = {}
        self._lock = threading.Lock()

    def counter(self, name: str, label_names: Optional[Iterable[str]] = None) -> Counter:
        """Get or register a counter; the first registration fixes its labels."""
        with self._lock:
            return self._counters.setdefault(name, Counter(name, label_names))

    def export_prometheus(self) -> str:
        with self._lock:
            counters = list(self._counters.values())
        return "".join(line + "\n" for counter in counters for line in counter.export())

    def reset(self) -> None:
        with self._lock:
            counters = list(self._counters.values())
        for counter in counters:
            counter.reset()


METRICS = MetricsRegistry()

http_requests_total = METRICS.counter("http_requests_total", ["method", "path", "status"])
payment_transactions_created_total = METRICS.counter("payment_transactions_created_total", ["plan_id"])
payment_notifications_total = METRICS.counter("payment_notifications_total", ["outcome"])
entitlement_grants_total = METRICS.counter("entitlement_grants_total", ["plan_id", "source"])
entitlement_corrections_total = METRICS.counter("entitlement_corrections_total")


# Path segments that would explode label cardinality
_ID_SEGMENT = re.compile(r"^(\d+|[0-9a-fA-F-]{8,}|[A-Z]+-\d{10,}-[0-9a-f]+)$")


def normalize_path(path: str) -> str:
    segments = [s for s in path.split("/") if s]
    return "/" + "/".join(":id" if _ID_SEGMENT.match(s) else s for s in segments)
