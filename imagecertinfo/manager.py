"""Wire settings into a running inventory engine."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor

from imagecertinfo.certification import CertificationSource, cached_rate_limited
from imagecertinfo.cluster import ClusterClient
from imagecertinfo.config import Settings
from imagecertinfo.dockerhub import SOURCE as DOCKERHUB
from imagecertinfo.dockerhub import DockerHubClient
from imagecertinfo.errors import WorkloadReadError
from imagecertinfo.pyxis import SOURCE as PYXIS
from imagecertinfo.pyxis import PyxisClient
from imagecertinfo.reconciler import InventoryReconciler
from imagecertinfo.reference import DEFAULT_REGISTRY, is_trusted_registry
from imagecertinfo.scheduler import CacheSweeper, PeriodicTask, RefreshScheduler, StaleReferenceSweeper
from imagecertinfo.store import KubectlRecordStore, RecordStore, SqliteRecordStore
from imagecertinfo.telemetry import Telemetry

logger = logging.getLogger(__name__)


def build_sources(settings: Settings, telemetry: Telemetry) -> list[CertificationSource]:
    """Enabled providers in priority order, each wrapped as Cache -> Rate limiter."""
    sources: list[CertificationSource] = []
    trusted = tuple(settings.trusted_registries)
    if settings.pyxis_enabled:
        base = PyxisClient(
            settings.pyxis_base_url,
            settings.pyxis_api_key,
            ca_cert=settings.ca_cert,
            trusted_registries=trusted,
            telemetry=telemetry,
        )
        cache = cached_rate_limited(
            base,
            settings.pyxis_cache_ttl,
            settings.pyxis_rate_limit,
            settings.pyxis_rate_burst,
            telemetry=telemetry,
            source=PYXIS,
        )
        sources.append(
            CertificationSource(
                name=PYXIS,
                client=cache,
                eligible=lambda ref: is_trusted_registry(ref.registry, trusted),
                cache=cache,
            )
        )
    if settings.dockerhub_enabled:
        base = DockerHubClient(settings.dockerhub_base_url, ca_cert=settings.ca_cert, telemetry=telemetry)
        cache = cached_rate_limited(
            base,
            settings.dockerhub_cache_ttl,
            settings.dockerhub_rate_limit,
            settings.dockerhub_rate_burst,
            telemetry=telemetry,
            source=DOCKERHUB,
        )
        sources.append(
            CertificationSource(
                name=DOCKERHUB,
                client=cache,
                eligible=lambda ref: ref.registry == DEFAULT_REGISTRY,
                cache=cache,
            )
        )
    return sources


def build_store(settings: Settings, cluster: ClusterClient) -> RecordStore:
    if settings.store == "sqlite":
        return SqliteRecordStore(settings.resolved_sqlite_path)
    return KubectlRecordStore(cluster)


class PodResync(PeriodicTask):
    """List every pod and queue an observation of each one."""

    name = "pod-resync"

    def __init__(self, engine: "InventoryEngine", stop: threading.Event, interval: float) -> None:
        super().__init__(interval, stop, initial_delay=0.0)
        self.engine = engine

    def run_once(self) -> int:
        return self.engine.resync()


class InventoryEngine:
    """The reconciler plus every background loop, sharing one stop event."""

    def __init__(
        self,
        settings: Settings,
        *,
        cluster: ClusterClient | None = None,
        store: RecordStore | None = None,
        sources: list[CertificationSource] | None = None,
        telemetry: Telemetry | None = None,
    ) -> None:
        self.settings = settings
        self.telemetry = telemetry or Telemetry()
        self.cluster = cluster or ClusterClient(kubeconfig=settings.kubeconfig, context=settings.kube_context)
        self.store = store if store is not None else build_store(settings, self.cluster)
        self.sources = sources if sources is not None else build_sources(settings, self.telemetry)
        self.stop_event = threading.Event()
        self.reconciler = InventoryReconciler(
            self.store,
            self.cluster,
            self.sources,
            telemetry=self.telemetry,
            trusted_registries=settings.trusted_registries,
            enrichment_workers=settings.enrichment_workers,
        )
        self._executor = ThreadPoolExecutor(
            max_workers=settings.reconcile_workers, thread_name_prefix="reconcile"
        )
        self.sweeper = StaleReferenceSweeper(
            self.store,
            self.cluster,
            self.stop_event,
            interval=settings.cleanup_interval,
            telemetry=self.telemetry,
        )
        self.refresher = RefreshScheduler(
            self.reconciler,
            self.stop_event,
            interval=settings.refresh_interval,
            jitter=settings.refresh_jitter,
        )
        self.tasks: list[PeriodicTask] = [
            PodResync(self, self.stop_event, settings.resync_interval),
            self.sweeper,
            self.refresher,
        ]
        for source in self.sources:
            if source.cache is not None:
                self.tasks.append(CacheSweeper(source.cache, self.stop_event, source=source.name))

    def resync(self) -> int:
        """Queue an observation of every pod.  Returns the number queued."""
        try:
            pods = self.cluster.list_pods()
        except WorkloadReadError as exc:
            logger.error("pod resync failed: %s", exc)
            return 0
        for pod in pods:
            self._executor.submit(self._observe, pod)
        logger.debug("queued %d pod observation(s)", len(pods))
        return len(pods)

    def _observe(self, pod: dict) -> None:
        meta = pod.get("metadata", {})
        try:
            self.reconciler.observe(pod)
        except Exception:
            logger.exception("observation of pod %s/%s failed", meta.get("namespace"), meta.get("name"))

    def start(self) -> None:
        logger.info(
            "starting inventory engine (store=%s, sources=%s)",
            self.settings.store,
            ", ".join(s.name for s in self.sources) or "none",
        )
        for task in self.tasks:
            task.start()

    def wait(self, timeout: float | None = None) -> bool:
        """Block until :meth:`stop` is called.  Returns True once stopped."""
        return self.stop_event.wait(timeout)

    def stop(self) -> None:
        """Signal every loop and in-flight lookup to stop; does not drain work."""
        logger.info("stopping inventory engine")
        self.stop_event.set()
        self.reconciler.shutdown(wait=False)
        self._executor.shutdown(wait=False, cancel_futures=True)
