"""Background loops: stale-reference cleanup, periodic refresh, cache sweeps.

Every loop is a :class:`PeriodicTask` on a daemon thread waiting on a shared
``threading.Event``.  Setting the event stops all loops at their next wait
without draining in-flight work.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from imagecertinfo.cache import CachedClient
from imagecertinfo.cluster import WorkloadReader
from imagecertinfo.errors import InventoryError, RecordConflict, StoreError, WorkloadReadError
from imagecertinfo.models import ImageRecord, InventorySummary, WorkloadReference
from imagecertinfo.reconciler import InventoryReconciler, record_reference
from imagecertinfo.store import RecordStore
from imagecertinfo.telemetry import Telemetry

logger = logging.getLogger(__name__)

DEFAULT_CLEANUP_INTERVAL = 300.0
DEFAULT_REFRESH_INTERVAL = 86400.0
DEFAULT_REFRESH_JITTER = 300.0


class PeriodicTask:
    """Run :meth:`run_once` every ``interval`` seconds until ``stop`` is set.

    The first run happens after ``initial_delay`` (defaults to one interval).
    Exceptions from a run are logged and the loop carries on.
    """

    name = "periodic-task"

    def __init__(
        self,
        interval: float,
        stop: threading.Event,
        *,
        initial_delay: float | None = None,
    ) -> None:
        self.interval = interval
        self.stop = stop
        self.initial_delay = interval if initial_delay is None else initial_delay
        self._thread: threading.Thread | None = None

    def run_once(self) -> object:
        raise NotImplementedError

    @property
    def enabled(self) -> bool:
        return self.interval > 0

    def start(self) -> threading.Thread | None:
        if not self.enabled:
            logger.info("%s disabled", self.name)
            return None
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        logger.info("%s started (interval %.0fs)", self.name, self.interval)
        return self._thread

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def _loop(self) -> None:
        delay = self.initial_delay
        while not self.stop.wait(delay):
            try:
                self.run_once()
            except Exception:
                logger.exception("%s run failed", self.name)
            delay = self.interval
        logger.debug("%s stopped", self.name)


# ── Stale-reference cleanup ───────────────────────────────────────────────


class StaleReferenceSweeper(PeriodicTask):
    """Drop workload references whose pod is confirmed gone."""

    name = "stale-reference-sweeper"

    def __init__(
        self,
        store: RecordStore,
        workloads: WorkloadReader,
        stop: threading.Event,
        *,
        interval: float = DEFAULT_CLEANUP_INTERVAL,
        telemetry: Telemetry | None = None,
    ) -> None:
        super().__init__(interval, stop)
        self.store = store
        self.workloads = workloads
        self.telemetry = telemetry or Telemetry()

    def run_once(self) -> int:
        return self.sweep()

    def sweep(self) -> int:
        """One cleanup pass.  Returns the number of references pruned."""
        pruned = 0
        for record in self.store.list():
            if self.stop.is_set():
                break
            kept = [ref for ref in record.status.workload_references if self._keep(ref)]
            removed = len(record.status.workload_references) - len(kept)
            if not removed:
                continue
            record.status.workload_references = kept
            try:
                self.store.update_status(record)
            except RecordConflict:
                logger.info("record %s changed during cleanup, leaving it for the next pass", record.name)
                continue
            except StoreError as exc:
                logger.error("failed to update stale references of %s: %s", record.name, exc)
                continue
            pruned += removed
            logger.info("pruned %d stale reference(s) from %s", removed, record.name)
        if pruned:
            self.telemetry.inc("stale_references_pruned_total", value=pruned)
        return pruned

    def _keep(self, ref: WorkloadReference) -> bool:
        try:
            return self.workloads.get_pod(ref.namespace, ref.name) is not None
        except WorkloadReadError as exc:
            logger.error("error checking pod %s/%s, keeping reference: %s", ref.namespace, ref.name, exc)
            return True


# ── Periodic refresh ──────────────────────────────────────────────────────


@dataclass
class RefreshSummary:
    """Outcome of one refresh cycle."""

    checked: int = 0
    refreshed: int = 0
    skipped: int = 0
    failed: int = 0
    status_changes: int = 0
    degraded: list[str] = field(default_factory=list)
    eol_approaching: list[str] = field(default_factory=list)
    duration_seconds: float = 0.0


class RefreshScheduler(PeriodicTask):
    """Re-run enrichment for records whose last check is older than the interval."""

    name = "refresh-scheduler"

    def __init__(
        self,
        reconciler: InventoryReconciler,
        stop: threading.Event,
        *,
        interval: float = DEFAULT_REFRESH_INTERVAL,
        jitter: float = DEFAULT_REFRESH_JITTER,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        rng = rng or random.Random()
        super().__init__(interval, stop, initial_delay=rng.uniform(0, jitter) if jitter > 0 else 0.0)
        self.reconciler = reconciler
        self.store = reconciler.store
        self.telemetry = reconciler.telemetry
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def run_once(self) -> RefreshSummary:
        return self.refresh()

    def is_due(self, record: ImageRecord, now: datetime) -> bool:
        last = record.status.last_certification_check_at
        if last is None or self.interval <= 0:
            return True
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)
        return now - last >= timedelta(seconds=self.interval)

    def refresh(self) -> RefreshSummary:
        """Run one refresh cycle sequentially over every eligible, stale record."""
        start = time.monotonic()
        now = self._clock()
        summary = RefreshSummary()
        records = self.store.list()
        logger.info("refresh cycle started over %d record(s)", len(records))

        for record in records:
            if self.stop.is_set():
                break
            summary.checked += 1
            ref = record_reference(record)
            if self.reconciler.source_for(ref) is None or not self.is_due(record, now):
                summary.skipped += 1
                continue
            try:
                outcome = self.reconciler.enrich(record.name, ref, cancel=self.stop)
            except InventoryError as exc:
                logger.error("refresh of %s failed: %s", record.name, exc)
                summary.failed += 1
                continue
            if outcome is None:
                summary.skipped += 1
                continue
            if outcome.error:
                summary.failed += 1
            else:
                summary.refreshed += 1
                self.telemetry.inc("images_refreshed_total")
            if outcome.changed:
                summary.status_changes += 1
            if outcome.degraded:
                summary.degraded.append(record.name)
            if outcome.eol_approaching:
                summary.eol_approaching.append(record.name)

        summary.duration_seconds = time.monotonic() - start
        self.telemetry.record_refresh_cycle(summary.duration_seconds)
        try:
            self.telemetry.update_inventory(InventorySummary.from_records(self.store.list()))
        except StoreError as exc:
            logger.error("failed to update inventory gauges: %s", exc)
        logger.info(
            "refresh cycle done: %d checked, %d refreshed, %d skipped, %d failed in %.1fs",
            summary.checked,
            summary.refreshed,
            summary.skipped,
            summary.failed,
            summary.duration_seconds,
        )
        return summary


# ── Cache eviction ────────────────────────────────────────────────────────


class CacheSweeper(PeriodicTask):
    """Evict expired lookup-cache entries every ``ttl / 2``."""

    name = "cache-sweeper"

    def __init__(self, cache: CachedClient, stop: threading.Event, *, source: str = "") -> None:
        super().__init__(cache.ttl / 2, stop)
        self.cache = cache
        if source:
            self.name = f"{source}-cache-sweeper"

    def run_once(self) -> int:
        return self.cache.sweep()
