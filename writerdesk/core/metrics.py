"""In-process counters rendered in Prometheus text format."""

from __future__ import annotations

import re
import threading
from typing import Dict, Iterable, List, Optional, Tuple


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\"", "\\\"")


def _render_labels(names: List[str], values: Tuple[str, ...]) -> str:
    if not names:
        return ""
    body = ",".join(f'{name}="{_escape(val)}"' for name, val in zip(names, values))
    return "{" + body + "}"


class Counter:
    def __init__(self, name: str, label_names: Optional[Iterable[str]] = None, help_text: str = ""):
        self.name = name
        self.help_text = help_text
        self.label_names = list(label_names or [])
        self._values: Dict[Tuple[str, ...], float] = {}
        self._lock = threading.Lock()

    def inc(self, labels: Optional[Dict[str, str]] = None, amount: float = 1.0):
        key = self._key(labels)
        with self._lock:
            self._values[key] = self._values.get(key, 0.0) + float(amount)

    def value(self, labels: Optional[Dict[str, str]] = None) -> float:
        with self._lock:
            return self._values.get(self._key(labels), 0.0)

    def _key(self, labels: Optional[Dict[str, str]]) -> Tuple[str, ...]:
        labels = labels or {}
        return tuple(str(labels.get(name, "")) for name in self.label_names)

    def export(self) -> List[str]:
        lines = []
        if self.help_text:
            lines.append(f"# HELP {self.name} {self.help_text}")
        lines.append(f"# TYPE {self.name} counter")
        with self._lock:
            for key, value in sorted(self._values.items()):
                lines.append(f"{self.name}{_render_labels(self.label_names, key)} {value}")
        return lines

    def reset(self):
        with self._lock:
            self._values.clear()


class MetricsRegistry:
    def __init__(self):
        self.counters: Dict[str, Counter] = {}
        self._lock = threading.Lock()

    def counter(self, name: str, label_names: Optional[Iterable[str]] = None, help_text: str = "") -> Counter:
        with self._lock:
            if name not in self.counters:
                self.counters[name] = Counter(name, label_names, help_text)
            return self.counters[name]

    def export_prometheus(self) -> str:
        lines: List[str] = []
        for metric in list(self.counters.values()):
            lines.extend(metric.export())
        return "\n".join(lines) + "\n"

    def reset(self):
        for metric in self.counters.values():
            metric.reset()


METRICS = MetricsRegistry()

http_requests_total = METRICS.counter(
    "http_requests_total", ["method", "path", "status"], "HTTP requests by route and status"
)
billing_webhook_events_total = METRICS.counter(
    "billing_webhook_events_total", ["event_type", "outcome"], "Billing webhook events by outcome"
)
billing_webhook_rejected_total = METRICS.counter(
    "billing_webhook_rejected_total", ["reason"], "Webhook deliveries rejected before processing"
)
entitlement_decisions_total = METRICS.counter(
    "entitlement_decisions_total", ["action", "allowed"], "Entitlement gating decisions"
)
usage_metering_total = METRICS.counter(
    "usage_metering_total", ["outcome"], "Usage metering calls by outcome"
)


_ID_SEGMENT_RE = re.compile(r"^(?:[0-9a-fA-F-]{8,}|user_[A-Za-z0-9]+|\d+)$")


def normalize_path(path: str) -> str:
    """Reduce cardinality by replacing id-like segments with :id."""
    parts = []
    for segment in path.split("/"):
        if not segment:
            continue
        parts.append(":id" if _ID_SEGMENT_RE.match(segment) else segment)
    return "/" + "/".join(parts)
