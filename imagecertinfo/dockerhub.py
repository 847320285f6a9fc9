"""Docker Hub API client.

Docker Hub does not certify images, but it does mark Docker Official Images
(namespace ``library``) and Verified Publishers.  Only repositories with one
of those marks produce data; anything else is reported as a miss.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any

import httpx

from imagecertinfo.errors import AuthError, LookupCancelled, RateLimited, TransportError
from imagecertinfo.models import CertificationData
from imagecertinfo.reference import DEFAULT_NAMESPACE
from imagecertinfo.telemetry import Telemetry

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://hub.docker.com/v2"
SOURCE = "dockerhub"
VERIFIED_PUBLISHER_BADGE = "verified_publisher"

_TIMEOUT = httpx.Timeout(30.0, connect=5.0)


def format_pull_count(count: int) -> str:
    """Compact pull count, e.g. ``1.2B``, ``45M``, ``300K``."""
    if count >= 1_000_000_000:
        return f"{count / 1_000_000_000:.1f}B"
    if count >= 1_000_000:
        return f"{count / 1_000_000:.0f}M"
    if count >= 1_000:
        return f"{count / 1_000:.0f}K"
    return str(count)


class DockerHubClient:
    """Docker Hub HTTP client implementing the certification client interface."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        ca_cert: str = "",
        telemetry: Telemetry | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._telemetry = telemetry
        verify: bool | str = ca_cert if ca_cert else True
        self._client = httpx.Client(
            base_url=self.base_url,
            headers={"Accept": "application/json"},
            timeout=_TIMEOUT,
            verify=verify,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "DockerHubClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    def _record(self, outcome: str, endpoint: str, start: float) -> None:
        if self._telemetry is not None:
            self._telemetry.record_lookup(SOURCE, outcome, endpoint, time.monotonic() - start)

    # ── Lookup ────────────────────────────────────────────────────────────

    def lookup(
        self,
        registry: str,
        repository: str,
        digest: str,
        cancel: threading.Event | None = None,
    ) -> CertificationData | None:
        """Return repository metadata for official or verified-publisher images."""
        if cancel is not None and cancel.is_set():
            raise LookupCancelled("lookup cancelled")
        namespace, sep, name = repository.partition("/")
        if not sep:
            namespace, name = DEFAULT_NAMESPACE, repository

        repo = self._get_repository(namespace, name)
        if repo is None:
            return None

        official = namespace == DEFAULT_NAMESPACE
        verified = False
        if not official:
            if cancel is not None and cancel.is_set():
                raise LookupCancelled("lookup cancelled")
            verified = self._is_verified_publisher(namespace)
        if not official and not verified:
            logger.debug("%s/%s is neither official nor a verified publisher", namespace, name)
            return None

        catalog_url = (
            f"https://hub.docker.com/_/{name}" if official else f"https://hub.docker.com/r/{namespace}/{name}"
        )
        return CertificationData(
            source=SOURCE,
            publisher="Docker Official Images" if official else namespace,
            catalog_url=catalog_url,
            official=official,
            verified_publisher=verified,
            pull_count=repo.get("pull_count") or 0,
            star_count=repo.get("star_count") or 0,
            description=repo.get("description") or "",
        )

    def _get_repository(self, namespace: str, name: str) -> dict[str, Any] | None:
        path = f"/repositories/{namespace}/{name}"
        start = time.monotonic()
        try:
            resp = self._client.get(path)
        except httpx.HTTPError as exc:
            self._record("error", "repository", start)
            raise TransportError(f"GET {path}: {exc}") from exc

        status = resp.status_code
        if status == 404:
            self._record("not_found", "repository", start)
            return None
        if status == 429:
            self._record("rate_limited", "repository", start)
            raise RateLimited("rate limited by Docker Hub")
        if status in (401, 403):
            self._record("error", "repository", start)
            raise AuthError(f"authentication failed for {path}: HTTP {status}")
        if status != 200:
            self._record("error", "repository", start)
            raise TransportError(f"unexpected response status {status} for {path}: {resp.text[:500]}")
        try:
            body = resp.json()
        except ValueError as exc:
            self._record("error", "repository", start)
            raise TransportError(f"failed to parse response from {path}: {exc}") from exc
        self._record("success", "repository", start)
        return body

    def _is_verified_publisher(self, namespace: str) -> bool:
        """Best-effort check of the organisation badge; any failure means no."""
        start = time.monotonic()
        try:
            resp = self._client.get(f"/orgs/{namespace}")
        except httpx.HTTPError as exc:
            self._record("error", "orgs", start)
            logger.debug("org lookup for %s failed: %s", namespace, exc)
            return False
        if resp.status_code != 200:
            self._record("not_found" if resp.status_code == 404 else "error", "orgs", start)
            logger.debug("org lookup for %s returned HTTP %d", namespace, resp.status_code)
            return False
        try:
            badge = resp.json().get("badge", "")
        except ValueError:
            self._record("error", "orgs", start)
            return False
        self._record("success", "orgs", start)
        return badge == VERIFIED_PUBLISHER_BADGE

    # ── Health ────────────────────────────────────────────────────────────

    def healthy(self) -> bool:
        """Docker Hub has no health endpoint; probe a well-known repository."""
        try:
            resp = self._client.head("/repositories/library/alpine")
            return resp.status_code == 200
        except httpx.HTTPError as exc:
            logger.debug("Docker Hub not reachable: %s", exc)
            return False
