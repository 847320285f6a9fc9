"""In-process metrics and notification events.

A :class:`Telemetry` instance is built once by the engine and handed to every
component that reports something.  Counters, duration summaries and gauges
are keyed by metric name plus a label set and can be rendered in the
Prometheus text exposition format.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from imagecertinfo.models import EOL_WINDOWS, CertificationStatus, InventorySummary

logger = logging.getLogger(__name__)

METRICS_NAMESPACE = "imagecertinfo"

EVENT_NORMAL = "Normal"
EVENT_WARNING = "Warning"

# Event reasons
IMAGE_DISCOVERED = "ImageDiscovered"
CERTIFICATION_CHANGED = "CertificationChanged"
VULNERABILITIES_FOUND = "VulnerabilitiesFound"
EOL_APPROACHING = "EOLApproaching"
HEALTH_DEGRADED = "HealthDegraded"

HEALTH_GRADES = ("A", "B", "C", "D", "E", "F")
SEVERITIES = ("critical", "important", "moderate", "low")

_COUNTER = "counter"
_GAUGE = "gauge"
_SUMMARY = "summary"

_METRICS: dict[str, tuple[str, str]] = {
    # Inventory
    "images_total": (_GAUGE, "Total number of images tracked by certification status"),
    "images_by_health": (_GAUGE, "Number of images by health grade (A-F)"),
    "vulnerabilities_total": (_GAUGE, "Total number of vulnerabilities across all images by severity"),
    "images_eol_within_days": (_GAUGE, "Number of images reaching end-of-life within specified days"),
    "images_past_eol": (_GAUGE, "Number of images that have passed their end-of-life date"),
    # Certification lookups
    "lookup_requests_total": (_COUNTER, "Total number of certification provider requests"),
    "lookup_duration_seconds": (_SUMMARY, "Duration of certification provider requests in seconds"),
    "cache_lookups_total": (_COUNTER, "Total number of lookup cache hits and misses"),
    # Reconciliation
    "reconcile_total": (_COUNTER, "Total number of reconciliation attempts"),
    "reconcile_duration_seconds": (_SUMMARY, "Duration of reconciliation in seconds"),
    "images_discovered_total": (_COUNTER, "Total number of new images discovered"),
    "events_emitted_total": (_COUNTER, "Total number of notification events emitted"),
    # Refresh and cleanup
    "refresh_cycles_total": (_COUNTER, "Total number of completed image refresh cycles"),
    "refresh_duration_seconds": (_SUMMARY, "Duration of image refresh cycles in seconds"),
    "images_refreshed_total": (_COUNTER, "Total number of individual images refreshed"),
    "certification_status_changes_total": (_COUNTER, "Total number of certification status changes"),
    "stale_references_pruned_total": (_COUNTER, "Total number of stale workload references removed"),
}

_LabelKey = tuple[tuple[str, str], ...]


def _label_key(labels: dict[str, str] | None) -> _LabelKey:
    if not labels:
        return ()
    return tuple(sorted((k, str(v)) for k, v in labels.items()))


def _format_labels(key: _LabelKey) -> str:
    if not key:
        return ""
    inner = ",".join(f'{k}="{_escape(v)}"' for k, v in key)
    return "{" + inner + "}"


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _format_value(value: float) -> str:
    if value == int(value):
        return str(int(value))
    return repr(value)


@dataclass(frozen=True)
class Event:
    """A notification about a record, analogous to a Kubernetes Event."""

    record: str
    type: str
    reason: str
    message: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class Telemetry:
    """Thread-safe metric registry and recent-event buffer."""

    def __init__(self, *, namespace: str = METRICS_NAMESPACE, max_events: int = 256) -> None:
        self.namespace = namespace
        self._lock = threading.Lock()
        self._counters: dict[tuple[str, _LabelKey], float] = {}
        self._gauges: dict[tuple[str, _LabelKey], float] = {}
        # name/labels -> [count, sum]
        self._summaries: dict[tuple[str, _LabelKey], list[float]] = {}
        self._events: deque[Event] = deque(maxlen=max_events)

    # ── Primitive operations ──────────────────────────────────────────────

    def inc(self, name: str, labels: dict[str, str] | None = None, value: float = 1.0) -> None:
        key = (name, _label_key(labels))
        with self._lock:
            self._counters[key] = self._counters.get(key, 0.0) + value

    def observe(self, name: str, seconds: float, labels: dict[str, str] | None = None) -> None:
        key = (name, _label_key(labels))
        with self._lock:
            entry = self._summaries.setdefault(key, [0.0, 0.0])
            entry[0] += 1
            entry[1] += seconds

    def set_gauge(self, name: str, value: float, labels: dict[str, str] | None = None) -> None:
        with self._lock:
            self._gauges[(name, _label_key(labels))] = float(value)

    def counter(self, name: str, labels: dict[str, str] | None = None) -> float:
        with self._lock:
            return self._counters.get((name, _label_key(labels)), 0.0)

    def gauge(self, name: str, labels: dict[str, str] | None = None) -> float | None:
        with self._lock:
            return self._gauges.get((name, _label_key(labels)))

    def observations(self, name: str, labels: dict[str, str] | None = None) -> int:
        """Number of durations recorded for a summary metric."""
        with self._lock:
            entry = self._summaries.get((name, _label_key(labels)))
            return int(entry[0]) if entry else 0

    # ── Domain helpers ────────────────────────────────────────────────────

    def record_lookup(self, source: str, outcome: str, endpoint: str, seconds: float) -> None:
        self.inc("lookup_requests_total", {"source": source, "outcome": outcome, "endpoint": endpoint})
        self.observe("lookup_duration_seconds", seconds, {"source": source, "endpoint": endpoint})

    def record_cache(self, source: str, hit: bool) -> None:
        self.inc("cache_lookups_total", {"source": source, "result": "hit" if hit else "miss"})

    def record_reconcile(self, result: str, seconds: float) -> None:
        self.inc("reconcile_total", {"result": result})
        self.observe("reconcile_duration_seconds", seconds)

    def record_refresh_cycle(self, seconds: float) -> None:
        self.inc("refresh_cycles_total")
        self.observe("refresh_duration_seconds", seconds)

    def record_status_change(self, previous: str, current: str) -> None:
        self.inc("certification_status_changes_total", {"from": previous, "to": current})

    # ── Events ────────────────────────────────────────────────────────────

    def emit(self, record: str, event_type: str, reason: str, message: str) -> Event:
        """Publish a notification event about *record*."""
        event = Event(record=record, type=event_type, reason=reason, message=message)
        if event_type == EVENT_WARNING:
            logger.warning("%s %s: %s", reason, record, message)
        else:
            logger.info("%s %s: %s", reason, record, message)
        with self._lock:
            self._events.append(event)
        self.inc("events_emitted_total", {"type": event_type, "reason": reason})
        return event

    def events(self, reason: str = "") -> list[Event]:
        with self._lock:
            items = list(self._events)
        if reason:
            return [e for e in items if e.reason == reason]
        return items

    # ── Inventory gauges ──────────────────────────────────────────────────

    def update_inventory(self, summary: InventorySummary) -> None:
        """Publish the inventory gauges from an aggregated summary."""
        for status in CertificationStatus:
            self.set_gauge("images_total", summary.by_status.get(status.value, 0), {"status": status.value})
        grades = set(HEALTH_GRADES) | set(summary.by_health)
        for grade in sorted(grades):
            self.set_gauge("images_by_health", summary.by_health.get(grade, 0), {"grade": grade})
        for severity in SEVERITIES:
            self.set_gauge(
                "vulnerabilities_total", summary.vulnerabilities.get(severity, 0), {"severity": severity}
            )
        for days in EOL_WINDOWS:
            self.set_gauge(
                "images_eol_within_days", summary.eol_within_days.get(days, 0), {"days": str(days)}
            )
        self.set_gauge("images_past_eol", summary.past_eol)

    # ── Export ────────────────────────────────────────────────────────────

    def exposition(self) -> str:
        """Render every metric in the Prometheus text exposition format."""
        with self._lock:
            counters = dict(self._counters)
            gauges = dict(self._gauges)
            summaries = {k: list(v) for k, v in self._summaries.items()}

        lines: list[str] = []
        for name, (kind, help_text) in _METRICS.items():
            full = f"{self.namespace}_{name}"
            if kind == _COUNTER:
                series = sorted((k[1], v) for k, v in counters.items() if k[0] == name)
            elif kind == _GAUGE:
                series = sorted((k[1], v) for k, v in gauges.items() if k[0] == name)
            else:
                series = sorted((k[1], v) for k, v in summaries.items() if k[0] == name)
            if not series:
                continue
            lines.append(f"# HELP {full} {help_text}")
            lines.append(f"# TYPE {full} {kind}")
            for labels, value in series:
                if kind == _SUMMARY:
                    count, total = value
                    lines.append(f"{full}_count{_format_labels(labels)} {_format_value(count)}")
                    lines.append(f"{full}_sum{_format_labels(labels)} {_format_value(total)}")
                else:
                    lines.append(f"{full}{_format_labels(labels)} {_format_value(value)}")
        return "\n".join(lines) + "\n" if lines else ""

    def snapshot(self) -> dict[str, Any]:
        """Return every metric as plain data, e.g. for JSON output."""

        def _series(items: dict[tuple[str, _LabelKey], Any]) -> dict[str, list[dict[str, Any]]]:
            out: dict[str, list[dict[str, Any]]] = {}
            for (name, labels), value in sorted(items.items()):
                out.setdefault(name, []).append({"labels": dict(labels), "value": value})
            return out

        with self._lock:
            counters = _series(self._counters)
            gauges = _series(self._gauges)
            summaries = {
                name: [{"labels": s["labels"], "count": s["value"][0], "sum": s["value"][1]} for s in series]
                for name, series in _series({k: list(v) for k, v in self._summaries.items()}).items()
            }
            events = len(self._events)
        return {
            "counters": counters,
            "gauges": gauges,
            "summaries": summaries,
            "recent_events": events,
        }
