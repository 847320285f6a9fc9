"""Shared test fixtures."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any

import pytest

from imagecertinfo.errors import WorkloadReadError
from imagecertinfo.models import CertificationData
from imagecertinfo.store import SqliteRecordStore

UBI_DIGEST = "sha256:abc123de" + "f" * 56
NGINX_DIGEST = "sha256:1234abcd" + "0" * 56
UBI_IMAGE_ID = f"docker-pullable://registry.redhat.io/ubi8/ubi@{UBI_DIGEST}"
NGINX_IMAGE_ID = f"docker-pullable://docker.io/library/nginx@{NGINX_DIGEST}"


class FakeCertificationClient:
    """Certification client returning scripted results.

    Each entry in *results* is either a value to return or an exception to
    raise; the last entry repeats.
    """

    def __init__(self, *results: Any, healthy: bool = True) -> None:
        self.results = list(results) or [None]
        self.calls: list[tuple[str, str, str]] = []
        self.is_healthy = healthy
        self._lock = threading.Lock()

    def lookup(self, registry, repository, digest, cancel=None):
        with self._lock:
            self.calls.append((registry, repository, digest))
            result = self.results[0] if len(self.results) == 1 else self.results.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result

    def healthy(self) -> bool:
        return self.is_healthy


class FakeWorkloads:
    """In-memory pod reader keyed by (namespace, name)."""

    def __init__(self) -> None:
        self.pods: dict[tuple[str, str], dict] = {}
        self.failing: set[tuple[str, str]] = set()

    def add(self, pod: dict) -> dict:
        meta = pod["metadata"]
        self.pods[(meta["namespace"], meta["name"])] = pod
        return pod

    def get_pod(self, namespace: str, name: str) -> dict | None:
        if (namespace, name) in self.failing:
            raise WorkloadReadError(f"cannot read {namespace}/{name}")
        return self.pods.get((namespace, name))

    def list_pods(self) -> list[dict]:
        return list(self.pods.values())


def make_pod(
    namespace: str,
    name: str,
    containers: dict[str, str],
    *,
    phase: str = "Running",
    init_containers: dict[str, str] | None = None,
) -> dict:
    """Build a pod object with container statuses mapping container name -> imageID."""
    return {
        "metadata": {"namespace": namespace, "name": name},
        "status": {
            "phase": phase,
            "containerStatuses": [{"name": c, "imageID": i} for c, i in containers.items()],
            "initContainerStatuses": [
                {"name": c, "imageID": i} for c, i in (init_containers or {}).items()
            ],
        },
    }


@pytest.fixture()
def store(tmp_path: Path) -> SqliteRecordStore:
    """Return a fresh SqliteRecordStore backed by a temp database."""
    s = SqliteRecordStore(tmp_path / "records.db")
    yield s
    s.close()


@pytest.fixture()
def workloads() -> FakeWorkloads:
    return FakeWorkloads()


@pytest.fixture()
def certified() -> CertificationData:
    """Certification data as the primary provider would return it."""
    return CertificationData(
        source="pyxis",
        image_id="img-1",
        publisher="Red Hat, Inc.",
        project_id="ubi8-container",
        health_index="A",
        catalog_url="https://catalog.redhat.com/software/containers/abc",
        cves=["CVE-2024-0001", "CVE-2024-0002"],
    )


@pytest.fixture()
def fake_client_factory():
    return FakeCertificationClient


@pytest.fixture()
def pod_factory():
    return make_pod
