"""Turn pod observations into inventory records and enrich them.

For each running or pending pod, every container status with an ``imageID``
is resolved to a record key.  Unknown images get a new record and, when a
certification source serves their registry, a detached enrichment on a
bounded background executor.  Known images get the workload reference added
(or their ``last_seen_at`` refreshed).

Enrichment write-back applies one lookup result to the record:

* data returned   -> ``Certified``, enrichment payload replaced wholesale
* confirmed miss  -> ``NotCertified``, payload and derived fields cleared
* provider error  -> ``Error``, payload left as it was
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from imagecertinfo.certification import CertificationSource, select_source
from imagecertinfo.cluster import WorkloadReader
from imagecertinfo.errors import (
    CertificationError,
    InventoryError,
    LookupCancelled,
    MalformedReference,
    RecordConflict,
    RecordExists,
    StoreError,
    WorkloadReadError,
)
from imagecertinfo.models import (
    CVE_ANNOTATION,
    CertificationData,
    CertificationStatus,
    Condition,
    ImageRecord,
    ImageRecordStatus,
    WorkloadReference,
)
from imagecertinfo.reference import (
    DEFAULT_TRUSTED_REGISTRIES,
    ImageReference,
    classify_registry,
    parse_image_id,
)
from imagecertinfo.store import RecordStore
from imagecertinfo.telemetry import (
    CERTIFICATION_CHANGED,
    EOL_APPROACHING,
    EVENT_NORMAL,
    EVENT_WARNING,
    HEALTH_DEGRADED,
    IMAGE_DISCOVERED,
    VULNERABILITIES_FOUND,
    Telemetry,
)

logger = logging.getLogger(__name__)

ACTIVE_PHASES = ("Running", "Pending")
EOL_WARNING_DAYS = 90
DEFAULT_ENRICHMENT_WORKERS = 4

# Lower rank is healthier.
_HEALTH_RANK = {"A": 0, "B": 1, "C": 2, "D": 3, "E": 4, "F": 5}


# ── Pure helpers ──────────────────────────────────────────────────────────


def is_health_degraded(previous: str, current: str) -> bool:
    """True only when both grades are known and *current* is strictly worse."""
    old = _HEALTH_RANK.get(previous.upper()) if previous else None
    new = _HEALTH_RANK.get(current.upper()) if current else None
    if old is None or new is None:
        return False
    return new > old


def format_duration(delta: timedelta) -> str:
    """Human-readable age such as ``"45 days"`` or ``"1 year 2 months"``."""
    days = int(delta.total_seconds() // 86400)
    if days < 1:
        return "less than a day"
    if days == 1:
        return "1 day"
    if days < 30:
        return f"{days} days"
    months = days // 30
    if months == 1:
        return "1 month"
    if months < 12:
        return f"{months} months"
    years, remaining = divmod(months, 12)
    year_part = "1 year" if years == 1 else f"{years} years"
    if remaining == 0:
        return year_part
    return f"{year_part} {remaining} months"


def days_until(target: datetime, now: datetime) -> int:
    """Whole days from *now* until *target*, truncated toward zero."""
    return int((_aware(target) - now).total_seconds() / 86400)


def record_reference(record: ImageRecord) -> ImageReference:
    return ImageReference(
        registry=record.registry,
        repository=record.repository,
        digest=record.digest,
        tag=record.tag,
        full_reference=record.full_reference,
    )


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Results ───────────────────────────────────────────────────────────────


@dataclass
class ReconcileResult:
    """What one pod observation did to the inventory."""

    namespace: str
    name: str
    skipped: bool = False
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    enrichments: list[Future] = field(default_factory=list, repr=False)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass
class EnrichmentOutcome:
    """Result of one enrichment write-back."""

    key: str
    source: str
    previous_status: CertificationStatus
    status: CertificationStatus
    degraded: bool = False
    eol_approaching: bool = False
    error: str = ""

    @property
    def changed(self) -> bool:
        return self.previous_status != self.status


@dataclass
class _PendingEvent:
    type: str
    reason: str
    message: str


# ── Reconciler ────────────────────────────────────────────────────────────


class InventoryReconciler:
    """Create and maintain one record per unique image seen in running pods.

    Parameters
    ----------
    store
        Where records live.
    workloads
        Reads pods (``get_pod``).
    sources
        Certification sources in priority order.  The first one whose
        predicate accepts an image enriches it.
    enrichment_workers : int
        Size of the background executor running detached enrichments.
    """

    def __init__(
        self,
        store: RecordStore,
        workloads: WorkloadReader,
        sources: Sequence[CertificationSource] = (),
        *,
        telemetry: Telemetry | None = None,
        trusted_registries: Sequence[str] = DEFAULT_TRUSTED_REGISTRIES,
        enrichment_workers: int = DEFAULT_ENRICHMENT_WORKERS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.workloads = workloads
        self.sources = list(sources)
        self.telemetry = telemetry or Telemetry()
        self.trusted_registries = tuple(trusted_registries)
        self._clock = clock
        self._cancel = threading.Event()
        self._executor = ThreadPoolExecutor(
            max_workers=enrichment_workers, thread_name_prefix="enrich"
        )
        self._pending: set[Future] = set()
        self._pending_lock = threading.Lock()

    # ── Observation ───────────────────────────────────────────────────────

    def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        """Read one pod and observe it.

        Raises :class:`WorkloadReadError` only when the pod itself could not
        be read.  A pod that no longer exists is a successful no-op.
        """
        start = time.monotonic()
        try:
            pod = self.workloads.get_pod(namespace, name)
        except WorkloadReadError:
            self.telemetry.record_reconcile("error", time.monotonic() - start)
            raise
        if pod is None:
            logger.debug("pod %s/%s no longer exists", namespace, name)
            self.telemetry.record_reconcile("success", time.monotonic() - start)
            return ReconcileResult(namespace=namespace, name=name, skipped=True)
        return self.observe(pod)

    def observe(self, pod: dict[str, Any]) -> ReconcileResult:
        """Fold one pod observation into the inventory."""
        start = time.monotonic()
        metadata = pod.get("metadata", {})
        status = pod.get("status", {})
        result = ReconcileResult(
            namespace=metadata.get("namespace", ""), name=metadata.get("name", "")
        )

        if status.get("phase") not in ACTIVE_PHASES:
            result.skipped = True
            self.telemetry.record_reconcile("success", time.monotonic() - start)
            return result

        statuses = list(status.get("containerStatuses") or [])
        statuses += status.get("initContainerStatuses") or []
        for container in statuses:
            image_id = container.get("imageID", "")
            if not image_id:
                continue
            workload = WorkloadReference(
                namespace=result.namespace, name=result.name, container=container.get("name", "")
            )
            try:
                self._observe_container(image_id, workload, result)
            except MalformedReference as exc:
                logger.debug("skipping unparseable image id %r: %s", image_id, exc)
            except InventoryError as exc:
                logger.error("failed to record %s for %s: %s", image_id, workload.qualified_name, exc)
                result.errors.append(f"{workload.qualified_name}: {exc}")

        self.telemetry.record_reconcile(
            "error" if result.errors else "success", time.monotonic() - start
        )
        return result

    def _observe_container(
        self, image_id: str, workload: WorkloadReference, result: ReconcileResult
    ) -> None:
        ref = parse_image_id(image_id)
        key = ref.key
        record = self.store.get(key)
        if record is None:
            try:
                self._create(ref, key, workload, result)
                return
            except RecordExists:
                logger.debug("record %s created concurrently, adding reference", key)
        self._add_reference(key, workload, record)
        result.updated.append(key)

    def _create(
        self,
        ref: ImageReference,
        key: str,
        workload: WorkloadReference,
        result: ReconcileResult,
    ) -> None:
        now = self._clock()
        source = self.source_for(ref)
        record = ImageRecord(
            name=key,
            registry=ref.registry,
            repository=ref.repository,
            tag=ref.tag,
            digest=ref.digest,
            full_reference=ref.full_reference,
            status=ImageRecordStatus(
                registry_type=classify_registry(ref.registry, self.trusted_registries),
                certification_status=(
                    CertificationStatus.PENDING if source else CertificationStatus.UNKNOWN
                ),
                workload_references=[workload],
                first_seen_at=now,
                last_seen_at=now,
                conditions=[
                    Condition(
                        type="Available",
                        status="True",
                        reason=IMAGE_DISCOVERED,
                        message="Image has been discovered in the cluster",
                        last_transition_time=now,
                    )
                ],
            ),
        )
        self.store.create(record)
        result.created.append(key)
        logger.info("created record %s (registry %s)", key, ref.registry)
        self.telemetry.inc("images_discovered_total")
        self.telemetry.emit(key, EVENT_NORMAL, IMAGE_DISCOVERED, f"Discovered image {ref.full_reference}")

        if source is not None:
            result.enrichments.append(self.enrich_async(key, ref))

    def _add_reference(
        self, key: str, workload: WorkloadReference, record: ImageRecord | None
    ) -> None:
        for attempt in range(2):
            if record is None:
                record = self.store.get(key)
                if record is None:
                    raise StoreError(f"record {key} disappeared while adding a reference")
            if not record.has_reference(workload):
                record.status.workload_references.append(workload)
            record.status.last_seen_at = self._clock()
            try:
                self.store.update_status(record)
                return
            except RecordConflict:
                if attempt:
                    raise
                logger.debug("conflict updating references of %s, retrying", key)
                record = None

    # ── Enrichment ────────────────────────────────────────────────────────

    def source_for(self, ref: ImageReference) -> CertificationSource | None:
        return select_source(self.sources, ref)

    def enrich_async(self, key: str, ref: ImageReference) -> Future:
        """Schedule :meth:`enrich` on the background executor."""
        future = self._executor.submit(self._enrich_logged, key, ref)
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def _forget(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def _enrich_logged(self, key: str, ref: ImageReference) -> EnrichmentOutcome | None:
        try:
            return self.enrich(key, ref)
        except StoreError as exc:
            logger.error("enrichment of %s failed: %s", key, exc)
            return None

    def wait_for_enrichment(self, timeout: float | None = None) -> None:
        """Block until every scheduled enrichment has finished."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._pending_lock:
                pending = [f for f in self._pending if not f.done()]
            if not pending:
                return
            for future in pending:
                remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                future.exception(timeout=remaining)

    def enrich(
        self, key: str, ref: ImageReference, cancel: threading.Event | None = None
    ) -> EnrichmentOutcome | None:
        """Look up *ref* and write the result back to record *key*.

        Returns *None* when nothing was written: no eligible source, the
        lookup was cancelled, or the record is gone.
        """
        source = self.source_for(ref)
        if source is None:
            return None
        cancel = cancel or self._cancel

        data: CertificationData | None = None
        error: CertificationError | None = None
        try:
            data = source.client.lookup(ref.registry, ref.repository, ref.digest, cancel)
        except LookupCancelled:
            logger.info("lookup for %s cancelled", key)
            return None
        except CertificationError as exc:
            logger.error("%s lookup for %s failed: %s", source.name, key, exc)
            error = exc

        outcome: EnrichmentOutcome | None = None
        events: list[_PendingEvent] = []
        for attempt in range(2):
            record = self.store.get(key)
            if record is None:
                logger.warning("record %s disappeared before enrichment write-back", key)
                return None
            outcome, events = self._apply(record, source.name, data, error)
            try:
                self.store.update_status(record)
                break
            except RecordConflict:
                if attempt:
                    raise
                logger.debug("conflict writing enrichment of %s, retrying", key)

        assert outcome is not None
        for event in events:
            self.telemetry.emit(key, event.type, event.reason, event.message)
        if outcome.changed:
            self.telemetry.record_status_change(outcome.previous_status.value, outcome.status.value)

        if data is not None and data.cves:
            self._write_cves(key, data.cves)
        return outcome

    def _apply(
        self,
        record: ImageRecord,
        source: str,
        data: CertificationData | None,
        error: CertificationError | None,
    ) -> tuple[EnrichmentOutcome, list[_PendingEvent]]:
        now = self._clock()
        st = record.status
        previous = st.certification_status
        previous_grade = st.enrichment.health_index if st.enrichment else ""
        st.last_certification_check_at = now
        outcome = EnrichmentOutcome(
            key=record.name, source=source, previous_status=previous, status=previous
        )
        events: list[_PendingEvent] = []

        if error is not None:
            st.certification_status = CertificationStatus.ERROR
            outcome.error = str(error)
        elif data is None:
            st.certification_status = CertificationStatus.NOT_CERTIFIED
            st.enrichment = None
            st.image_age = ""
            st.days_until_eol = None
        else:
            st.certification_status = CertificationStatus.CERTIFIED
            enrichment = data.to_enrichment()
            if not enrichment.source:
                enrichment.source = source
            st.enrichment = enrichment

            st.image_age = (
                format_duration(now - _aware(enrichment.published_at))
                if enrichment.published_at
                else ""
            )
            st.days_until_eol = None
            if enrichment.eol_date is not None:
                remaining = days_until(enrichment.eol_date, now)
                st.days_until_eol = remaining
                if 0 <= remaining <= EOL_WARNING_DAYS:
                    outcome.eol_approaching = True
                    message = f"Image reaches EOL in {remaining} days"
                    if enrichment.replaced_by:
                        message += f", replacement: {enrichment.replaced_by}"
                    events.append(_PendingEvent(EVENT_WARNING, EOL_APPROACHING, message))

            vulns = enrichment.vulnerabilities
            if vulns is not None and vulns.needs_attention:
                events.append(
                    _PendingEvent(
                        EVENT_WARNING,
                        VULNERABILITIES_FOUND,
                        f"Found {vulns.critical} critical, {vulns.important} important vulnerabilities",
                    )
                )

            if is_health_degraded(previous_grade, enrichment.health_index):
                outcome.degraded = True
                events.append(
                    _PendingEvent(
                        EVENT_WARNING,
                        HEALTH_DEGRADED,
                        f"Health index degraded from {previous_grade} to {enrichment.health_index}",
                    )
                )

        outcome.status = st.certification_status
        if outcome.changed:
            events.insert(
                0,
                _PendingEvent(
                    EVENT_NORMAL,
                    CERTIFICATION_CHANGED,
                    f"Certification status changed from {previous.value} to {outcome.status.value}",
                ),
            )
        return outcome, events

    def _write_cves(self, key: str, cves: list[str]) -> None:
        record = self.store.get(key)
        if record is None:
            return
        record.annotations[CVE_ANNOTATION] = ",".join(cves)
        try:
            self.store.update_metadata(record)
        except StoreError as exc:
            logger.error("failed to update CVE annotation of %s: %s", key, exc)

    # ── Lifecycle ─────────────────────────────────────────────────────────

    def shutdown(self, wait: bool = False) -> None:
        """Cancel in-flight lookups and stop the enrichment executor."""
        self._cancel.set()
        self._executor.shutdown(wait=wait, cancel_futures=True)
