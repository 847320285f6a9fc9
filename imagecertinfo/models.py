"""Pydantic models for image inventory records and certification data."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

API_VERSION = "security.telco.openshift.io/v1alpha1"
RECORD_KIND = "ImageCertificationInfo"
CVE_ANNOTATION = "security.telco.openshift.io/cves"


class _CamelModel(BaseModel):
    """Serialises to the camelCase layout used by the cluster custom resource."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ──────────────────────────── Enumerations ────────────────────────────────────


class RegistryType(str, Enum):
    """Trust class of the registry an image was pulled from."""

    TRUSTED = "Trusted"
    PARTNER = "Partner"
    COMMUNITY = "Community"
    PRIVATE = "Private"
    UNKNOWN = "Unknown"


class CertificationStatus(str, Enum):
    """Certification state of an image record."""

    CERTIFIED = "Certified"
    NOT_CERTIFIED = "NotCertified"
    PENDING = "Pending"
    UNKNOWN = "Unknown"
    ERROR = "Error"


# ──────────────────────────── Certification Data ──────────────────────────────


class VulnerabilitySummary(_CamelModel):
    """Vulnerability counts by severity."""

    critical: int = 0
    important: int = 0
    moderate: int = 0
    low: int = 0

    @property
    def total(self) -> int:
        return self.critical + self.important + self.moderate + self.low

    @property
    def needs_attention(self) -> bool:
        return self.critical > 0 or self.important > 0


class EnrichmentData(_CamelModel):
    """Certification and reputation data stored on a record.

    Every field is sourced from an external provider and the whole object is
    replaced on each successful enrichment.
    """

    source: str = Field(default="", description="Provider that produced this data, e.g. 'pyxis'")
    project_id: str = ""
    publisher: str = ""
    health_index: str = Field(default="", description="Image health grade (A-F)")
    catalog_url: str = ""
    published_at: datetime | None = None
    vulnerabilities: VulnerabilitySummary | None = None

    # Lifecycle
    eol_date: datetime | None = None
    release_category: str = ""
    replaced_by: str = ""

    # Operational
    architectures: list[str] = Field(default_factory=list)
    architecture_health: dict[str, str] = Field(default_factory=dict)
    compressed_size_bytes: int = 0
    uncompressed_size_bytes: int = 0
    layer_count: int = 0
    build_date: str = ""

    # Security
    auto_rebuild_enabled: bool = False
    advisory_ids: list[str] = Field(default_factory=list)

    # Popularity (secondary metadata source)
    official: bool = False
    verified_publisher: bool = False
    pull_count: int = 0
    star_count: int = 0
    description: str = ""


class CertificationData(EnrichmentData):
    """Result of a certification lookup.

    Carries the provider's internal image id and the CVE list on top of the
    fields that end up in the record status.
    """

    image_id: str = ""
    cves: list[str] = Field(default_factory=list)

    def to_enrichment(self) -> EnrichmentData:
        return EnrichmentData.model_validate(self.model_dump(exclude={"image_id", "cves"}))


# ──────────────────────────── Image Records ───────────────────────────────────


class WorkloadReference(_CamelModel):
    """A container in a pod that runs the image."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    namespace: str
    name: str
    container: str

    @property
    def qualified_name(self) -> str:
        return f"{self.namespace}/{self.name}/{self.container}"


class Condition(_CamelModel):
    """A Kubernetes-style status condition."""

    type: str
    status: str = "True"
    reason: str = ""
    message: str = ""
    last_transition_time: datetime | None = None


class ImageRecordStatus(_CamelModel):
    """Observed state of an image record."""

    registry_type: RegistryType = RegistryType.UNKNOWN
    certification_status: CertificationStatus = CertificationStatus.UNKNOWN
    enrichment: EnrichmentData | None = None
    image_age: str = ""
    days_until_eol: int | None = None
    workload_references: list[WorkloadReference] = Field(default_factory=list)
    first_seen_at: datetime | None = None
    last_seen_at: datetime | None = None
    last_certification_check_at: datetime | None = None
    conditions: list[Condition] = Field(default_factory=list)


class ImageRecord(BaseModel):
    """One inventory record per unique (registry, repository, digest)."""

    name: str = Field(description="Record key derived from the image reference")
    registry: str
    repository: str
    tag: str = ""
    digest: str
    full_reference: str
    annotations: dict[str, str] = Field(default_factory=dict)
    resource_version: str = Field(default="", description="Optimistic-concurrency token set by the store")
    status: ImageRecordStatus = Field(default_factory=ImageRecordStatus)

    @property
    def cves(self) -> list[str]:
        raw = self.annotations.get(CVE_ANNOTATION, "")
        return [c for c in raw.split(",") if c]

    def has_reference(self, ref: WorkloadReference) -> bool:
        return ref in self.status.workload_references

    # ── Custom resource layout ──────────────────────────────────────────

    def to_manifest(self) -> dict[str, Any]:
        """Render the record as an ``ImageCertificationInfo`` custom resource."""
        metadata: dict[str, Any] = {"name": self.name}
        if self.annotations:
            metadata["annotations"] = dict(self.annotations)
        if self.resource_version:
            metadata["resourceVersion"] = self.resource_version
        spec: dict[str, Any] = {
            "imageDigest": self.digest,
            "fullImageReference": self.full_reference,
            "registry": self.registry,
            "repository": self.repository,
        }
        if self.tag:
            spec["tag"] = self.tag
        return {
            "apiVersion": API_VERSION,
            "kind": RECORD_KIND,
            "metadata": metadata,
            "spec": spec,
            "status": self.status.model_dump(mode="json", by_alias=True, exclude_none=True),
        }

    @classmethod
    def from_manifest(cls, doc: dict[str, Any]) -> ImageRecord:
        """Parse an ``ImageCertificationInfo`` custom resource."""
        metadata = doc.get("metadata", {})
        spec = doc.get("spec", {})
        return cls(
            name=metadata.get("name", ""),
            registry=spec.get("registry", ""),
            repository=spec.get("repository", ""),
            tag=spec.get("tag", ""),
            digest=spec.get("imageDigest", ""),
            full_reference=spec.get("fullImageReference", ""),
            annotations=metadata.get("annotations") or {},
            resource_version=str(metadata.get("resourceVersion", "")),
            status=ImageRecordStatus.model_validate(doc.get("status") or {}),
        )


# ──────────────────────────── Inventory Summary ───────────────────────────────

EOL_WINDOWS = (30, 60, 90)


class InventorySummary(BaseModel):
    """Aggregated view over every record in the store."""

    total: int = 0
    by_status: dict[str, int] = Field(default_factory=dict)
    by_registry_type: dict[str, int] = Field(default_factory=dict)
    by_health: dict[str, int] = Field(default_factory=dict)
    vulnerabilities: dict[str, int] = Field(default_factory=dict)
    eol_within_days: dict[int, int] = Field(default_factory=dict)
    past_eol: int = 0
    workload_references: int = 0

    @classmethod
    def from_records(cls, records: list[ImageRecord]) -> InventorySummary:
        summary = cls(
            total=len(records),
            vulnerabilities={"critical": 0, "important": 0, "moderate": 0, "low": 0},
            eol_within_days={days: 0 for days in EOL_WINDOWS},
        )
        for rec in records:
            st = rec.status
            status = st.certification_status.value
            summary.by_status[status] = summary.by_status.get(status, 0) + 1
            rtype = st.registry_type.value
            summary.by_registry_type[rtype] = summary.by_registry_type.get(rtype, 0) + 1
            summary.workload_references += len(st.workload_references)

            data = st.enrichment
            if data is not None:
                if data.health_index:
                    summary.by_health[data.health_index] = summary.by_health.get(data.health_index, 0) + 1
                if data.vulnerabilities is not None:
                    for severity in summary.vulnerabilities:
                        summary.vulnerabilities[severity] += getattr(data.vulnerabilities, severity)

            if st.days_until_eol is not None:
                if st.days_until_eol < 0:
                    summary.past_eol += 1
                else:
                    for days in EOL_WINDOWS:
                        if st.days_until_eol <= days:
                            summary.eol_within_days[days] += 1
        return summary
