"""Tests for imagecertinfo.manager and source composition."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import httpx
import pytest

from conftest import NGINX_IMAGE_ID, UBI_IMAGE_ID, FakeCertificationClient, make_pod
from imagecertinfo.cache import CachedClient
from imagecertinfo.certification import CertificationClient, CertificationSource, select_source
from imagecertinfo.config import Settings
from imagecertinfo.errors import WorkloadReadError
from imagecertinfo.manager import InventoryEngine, PodResync, build_sources, build_store
from imagecertinfo.models import CertificationData
from imagecertinfo.reference import parse_image_id
from imagecertinfo.scheduler import CacheSweeper, RefreshScheduler, StaleReferenceSweeper
from imagecertinfo.store import KubectlRecordStore, SqliteRecordStore
from imagecertinfo.telemetry import Telemetry


@pytest.fixture()
def no_http():
    with patch.object(httpx, "Client"):
        yield


class TestSelectSource:
    def test_first_eligible_wins(self):
        a = CertificationSource(name="a", client=FakeCertificationClient(), eligible=lambda ref: False)
        b = CertificationSource(name="b", client=FakeCertificationClient(), eligible=lambda ref: True)
        c = CertificationSource(name="c", client=FakeCertificationClient(), eligible=lambda ref: True)
        assert select_source([a, b, c], parse_image_id(UBI_IMAGE_ID)).name == "b"

    def test_none_eligible(self):
        a = CertificationSource(name="a", client=FakeCertificationClient(), eligible=lambda ref: False)
        assert select_source([a], parse_image_id(UBI_IMAGE_ID)) is None

    def test_fake_satisfies_protocol(self):
        assert isinstance(FakeCertificationClient(), CertificationClient)


class TestBuildSources:
    def test_priority_and_eligibility(self, no_http):
        sources = build_sources(Settings(), Telemetry())
        assert [s.name for s in sources] == ["pyxis", "dockerhub"]
        ubi, nginx = parse_image_id(UBI_IMAGE_ID), parse_image_id(NGINX_IMAGE_ID)
        assert select_source(sources, ubi).name == "pyxis"
        assert select_source(sources, nginx).name == "dockerhub"
        assert select_source(sources, parse_image_id("quay.io/org/app@sha256:" + "0" * 64)) is None
        assert all(isinstance(s.cache, CachedClient) for s in sources)

    def test_custom_trusted_registries(self, no_http):
        sources = build_sources(Settings(trusted_registries=["registry.example.com"]), Telemetry())
        ref = parse_image_id("registry.example.com/team/app@sha256:" + "0" * 64)
        assert select_source(sources, ref).name == "pyxis"
        assert select_source(sources, parse_image_id(UBI_IMAGE_ID)) is None

    def test_disabled(self, no_http):
        assert build_sources(Settings(pyxis_enabled=False, dockerhub_enabled=False), Telemetry()) == []

    def test_cache_ttl_applied(self, no_http):
        [source] = build_sources(Settings(dockerhub_enabled=False, pyxis_cache_ttl="10m"), Telemetry())
        assert source.cache.ttl == 600


class TestBuildStore:
    def test_sqlite(self, tmp_path):
        store = build_store(Settings(store="sqlite", sqlite_path=str(tmp_path / "r.db")), MagicMock())
        assert isinstance(store, SqliteRecordStore)
        store.close()

    def test_kubectl(self):
        assert isinstance(build_store(Settings(), MagicMock()), KubectlRecordStore)


@pytest.fixture()
def engine(store, workloads):
    client = FakeCertificationClient(CertificationData(publisher="Red Hat"))
    cache = CachedClient(client, ttl=60)
    source = CertificationSource(
        name="pyxis", client=cache, eligible=lambda ref: ref.registry == "registry.redhat.io", cache=cache
    )
    e = InventoryEngine(
        Settings(reconcile_workers=2), cluster=workloads, store=store, sources=[source]
    )
    yield e
    e.stop()


class TestInventoryEngine:
    def test_tasks(self, engine):
        kinds = [type(t) for t in engine.tasks]
        assert kinds == [PodResync, StaleReferenceSweeper, RefreshScheduler, CacheSweeper]
        assert engine.tasks[0].initial_delay == 0
        assert engine.tasks[3].interval == 30

    def test_resync_observes_every_pod(self, engine, workloads, store):
        workloads.add(make_pod("prod", "web-1", {"app": UBI_IMAGE_ID}))
        workloads.add(make_pod("prod", "proxy-1", {"proxy": NGINX_IMAGE_ID}))

        assert engine.resync() == 2
        engine._executor.shutdown(wait=True)
        engine.reconciler.wait_for_enrichment(timeout=5)
        assert len(store) == 2

    def test_resync_survives_list_failure(self, engine, workloads):
        workloads.list_pods = MagicMock(side_effect=WorkloadReadError("down"))
        assert engine.resync() == 0

    def test_stop_releases_wait(self, engine):
        assert engine.wait(timeout=0.01) is False
        engine.stop()
        assert engine.wait(timeout=0.01) is True

    def test_start_and_stop(self, engine):
        engine.start()
        engine.stop()
        for task in engine.tasks:
            task.join(2)
