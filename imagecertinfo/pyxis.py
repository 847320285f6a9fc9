"""Red Hat Pyxis catalog API client.

Looks up certification data for an image digest.  The public API serves
read-only queries without authentication; an optional API key can be sent
in the ``X-API-KEY`` header.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote

import httpx

from imagecertinfo.errors import AuthError, LookupCancelled, RateLimited, TransportError
from imagecertinfo.models import CertificationData, VulnerabilitySummary
from imagecertinfo.reference import DEFAULT_TRUSTED_REGISTRIES
from imagecertinfo.telemetry import Telemetry

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://catalog.redhat.com/api/containers/v1"
CATALOG_URL = "https://catalog.redhat.com/software/containers/{id}"
SOURCE = "pyxis"

_TIMEOUT = httpx.Timeout(30.0, connect=5.0)


def parse_timestamp(value: str) -> datetime | None:
    """Parse an RFC 3339 timestamp or a bare ``YYYY-MM-DD`` date."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        logger.debug("unparseable timestamp %r", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class PyxisClient:
    """Pyxis HTTP client implementing the certification client interface.

    Parameters
    ----------
    base_url : str
        Base URL of the Pyxis API.
    api_key : str
        Optional API key.  Empty means anonymous access.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        api_key: str = "",
        *,
        ca_cert: str = "",
        trusted_registries: tuple[str, ...] | list[str] = DEFAULT_TRUSTED_REGISTRIES,
        telemetry: Telemetry | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.trusted_registries = tuple(trusted_registries)
        self._telemetry = telemetry
        headers = {"Accept": "application/json"}
        if api_key:
            headers["X-API-KEY"] = api_key
        verify: bool | str = ca_cert if ca_cert else True
        self._client = httpx.Client(
            base_url=self.base_url,
            headers=headers,
            timeout=_TIMEOUT,
            verify=verify,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "PyxisClient":
        return self

    def __exit__(self, *args: Any) -> None:
        self.close()

    # ── Raw helpers ───────────────────────────────────────────────────────

    def _record(self, outcome: str, endpoint: str, start: float) -> None:
        if self._telemetry is not None:
            self._telemetry.record_lookup(SOURCE, outcome, endpoint, time.monotonic() - start)

    def _get(
        self, path: str, endpoint: str, params: dict[str, str] | None = None
    ) -> dict[str, Any] | None:
        """GET *path* and return the decoded JSON body, or *None* on 404.

        Raises AuthError on 401/403, RateLimited on 429 and TransportError
        for network failures, other statuses and undecodable bodies.
        """
        start = time.monotonic()
        try:
            resp = self._client.get(path, params=params)
        except httpx.HTTPError as exc:
            self._record("error", endpoint, start)
            raise TransportError(f"GET {path}: {exc}") from exc

        status = resp.status_code
        if status == 404:
            self._record("not_found", endpoint, start)
            return None
        if status in (401, 403):
            self._record("error", endpoint, start)
            raise AuthError(f"authentication failed for {path}: HTTP {status}")
        if status == 429:
            self._record("rate_limited", endpoint, start)
            raise RateLimited(f"rate limited by Pyxis on {path}")
        if status != 200:
            self._record("error", endpoint, start)
            raise TransportError(f"unexpected response status {status} for {path}: {resp.text[:500]}")
        try:
            body = resp.json()
        except ValueError as exc:
            self._record("error", endpoint, start)
            raise TransportError(f"failed to parse response from {path}: {exc}") from exc
        self._record("success", endpoint, start)
        return body

    # ── Certification lookup ──────────────────────────────────────────────

    def lookup(
        self,
        registry: str,
        repository: str,
        digest: str,
        cancel: threading.Event | None = None,
    ) -> CertificationData | None:
        """Return certification data for *digest*, or *None* if Pyxis has none.

        Single-architecture images are matched on ``image_id``; multi-arch
        images on ``repositories.manifest_list_digest``.
        """
        for field_name in ("image_id", "repositories.manifest_list_digest"):
            _check_cancel(cancel)
            image = self._find_image(field_name, digest)
            if image is None:
                continue
            if not self._from_trusted_registry(image):
                logger.debug("Pyxis image for %s is not from a trusted registry", digest)
                return None
            return self._to_certification_data(image, cancel)
        return None

    def _find_image(self, field_name: str, digest: str) -> dict[str, Any] | None:
        body = self._get("/images", "images", params={"filter": f"{field_name}=={digest}"})
        if not body:
            return None
        data = body.get("data") or []
        return data[0] if data else None

    def _from_trusted_registry(self, image: dict[str, Any]) -> bool:
        repos = image.get("repositories") or []
        if not repos:
            return True
        return any(r.get("registry") in self.trusted_registries for r in repos)

    def _to_certification_data(
        self, image: dict[str, Any], cancel: threading.Event | None
    ) -> CertificationData:
        grades = image.get("content_stream_grades") or []
        data = CertificationData(
            source=SOURCE,
            image_id=image.get("_id", ""),
            auto_rebuild_enabled=bool(image.get("can_auto_release_cve_rebuild", False)),
            compressed_size_bytes=image.get("total_size_bytes") or 0,
            uncompressed_size_bytes=image.get("total_uncompressed_size_bytes") or 0,
            layer_count=image.get("layer_count") or 0,
            build_date=image.get("build_date") or "",
            architectures=sorted({g["architecture"] for g in grades if g.get("architecture")}),
            architecture_health={
                g["architecture"]: g["grade"] for g in grades if g.get("architecture") and g.get("grade")
            },
        )

        freshness = image.get("freshness_grades") or []
        if freshness:
            data.health_index = freshness[0].get("grade", "")

        labels = (image.get("parsed_data") or {}).get("labels") or []
        for label in labels:
            name, value = label.get("name"), label.get("value", "")
            if name in ("vendor", "maintainer") and not data.publisher:
                data.publisher = value
            elif name == "com.redhat.component" and not data.project_id:
                data.project_id = value

        summary = image.get("vulnerability_summary")
        if summary:
            data.vulnerabilities = VulnerabilitySummary(
                critical=summary.get("critical", 0),
                important=summary.get("important", 0),
                moderate=summary.get("moderate", 0),
                low=summary.get("low", 0),
            )

        repos = image.get("repositories") or []
        if repos:
            first = repos[0]
            data.published_at = parse_timestamp(first.get("push_date", ""))
            _check_cancel(cancel)
            self._add_repository_info(data, first.get("registry", ""), first.get("repository", ""))

        if data.image_id:
            _check_cancel(cancel)
            self._add_vulnerabilities(data)
        return data

    # ── Best-effort extras ────────────────────────────────────────────────

    def _add_repository_info(self, data: CertificationData, registry: str, repository: str) -> None:
        """Catalog URL and lifecycle data from the repository endpoint."""
        if not registry or not repository:
            return
        path = f"/repositories/registry/{registry}/repository/{quote(repository, safe='')}"
        try:
            repo = self._get(path, "repository")
        except (TransportError, AuthError, RateLimited) as exc:
            logger.debug("repository info for %s/%s unavailable: %s", registry, repository, exc)
            return
        if not repo:
            return
        if repo.get("_id"):
            data.catalog_url = CATALOG_URL.format(id=repo["_id"])
        data.eol_date = parse_timestamp(repo.get("eol_date", ""))
        categories = repo.get("release_categories") or []
        if categories:
            data.release_category = categories[0]
        data.replaced_by = repo.get("replaced_by_repository_name", "") or ""

    def _add_vulnerabilities(self, data: CertificationData) -> None:
        """CVE ids and advisory ids from the vulnerabilities endpoint."""
        try:
            body = self._get(f"/images/id/{data.image_id}/vulnerabilities", "vulnerabilities")
        except (TransportError, AuthError, RateLimited) as exc:
            logger.debug("vulnerabilities for %s unavailable: %s", data.image_id, exc)
            return
        if not body:
            return
        advisories: set[str] = set()
        for vuln in body.get("data") or []:
            if vuln.get("cve_id"):
                data.cves.append(vuln["cve_id"])
            if vuln.get("advisory_id"):
                advisories.add(vuln["advisory_id"])
        data.advisory_ids = sorted(advisories)

    # ── Health ────────────────────────────────────────────────────────────

    def healthy(self) -> bool:
        """Check that the Pyxis API answers ``/ping``."""
        try:
            resp = self._client.get("/ping")
            return resp.status_code == 200
        except httpx.HTTPError as exc:
            logger.debug("Pyxis not reachable: %s", exc)
            return False


def _check_cancel(cancel: threading.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise LookupCancelled("lookup cancelled")
