"""Parse container runtime image ids into canonical references and record keys.

A container status reports the image it is running as an ``imageID`` such as
``docker-pullable://registry.redhat.io/ubi8/ubi@sha256:…``.  Everything the
inventory keys on is derived here, so the functions in this module are pure
and deterministic: the same image id always yields the same record key.
"""

from __future__ import annotations

from dataclasses import dataclass

from imagecertinfo.errors import MalformedReference
from imagecertinfo.models import RegistryType

# Pull-scheme markers the container runtime may prepend to an image id.
PULL_PREFIXES = ("docker-pullable://", "docker://")

DEFAULT_REGISTRY = "docker.io"
DEFAULT_NAMESPACE = "library"

# Kubernetes object names are limited to 253 characters.
MAX_KEY_LENGTH = 253
SHORT_DIGEST_LENGTH = 8

DEFAULT_TRUSTED_REGISTRIES = (
    "registry.redhat.io",
    "registry.access.redhat.com",
    "registry.connect.redhat.com",
)
PARTNER_REGISTRIES = ("quay.io",)
COMMUNITY_REGISTRIES = (
    "docker.io",
    "ghcr.io",
    "gcr.io",
    "registry.k8s.io",
    "k8s.gcr.io",
)


@dataclass(frozen=True)
class ImageReference:
    """Structured components of an image reference."""

    registry: str
    repository: str
    digest: str
    tag: str = ""
    full_reference: str = ""

    @property
    def key(self) -> str:
        return record_key(self)

    @property
    def short_digest(self) -> str:
        digest = self.digest
        if digest.startswith("sha256:"):
            return digest.removeprefix("sha256:")[:SHORT_DIGEST_LENGTH]
        return digest


def parse_image_id(image_id: str) -> ImageReference:
    """Parse a container status ``imageID`` into an :class:`ImageReference`.

    Raises :class:`MalformedReference` for empty input or when there is no
    ``@digest`` segment; a tag alone does not identify an image.
    """
    if not image_id:
        raise MalformedReference("empty image id")

    for prefix in PULL_PREFIXES:
        image_id = image_id.removeprefix(prefix)

    remainder, sep, digest = image_id.rpartition("@")
    if not sep:
        raise MalformedReference(f"image id does not contain a digest: {image_id}")
    if not digest or not remainder:
        raise MalformedReference(f"image id has an empty digest or image name: {image_id}")

    # A trailing ":segment" is a tag unless it contains a slash, which means
    # the colon belonged to a registry host:port.
    tag = ""
    head, colon, after = remainder.rpartition(":")
    if colon and "/" not in after:
        tag = after
        remainder = head

    first, slash, rest = remainder.partition("/")
    if not slash:
        registry = DEFAULT_REGISTRY
        repository = f"{DEFAULT_NAMESPACE}/{remainder}"
    elif "." in first or ":" in first or first == "localhost":
        registry = first
        repository = rest
    else:
        registry = DEFAULT_REGISTRY
        repository = remainder

    return ImageReference(
        registry=registry,
        repository=repository,
        digest=digest,
        tag=tag,
        full_reference=image_id,
    )


def _sanitize(name: str) -> str:
    """Reduce *name* to the character set allowed in Kubernetes object names."""
    out: list[str] = []
    last = len(name) - 1
    for i, ch in enumerate(name):
        if ("a" <= ch <= "z") or ("0" <= ch <= "9") or ch in ".-":
            out.append(ch)
        elif ch in "_/":
            out.append(".")
        elif 0 < i < last:
            out.append("-")
    return "".join(out).strip(".-")


def record_key(ref: ImageReference) -> str:
    """Build the human-readable record key for *ref*.

    Format: ``{registry}.{repository}.{short-digest}`` with slashes turned into
    dots, e.g. ``registry.redhat.io.ubi8.ubi.abc123de``.
    """
    name = f"{ref.registry}.{ref.repository}".replace("/", ".")
    name = _sanitize(f"{name}.{ref.short_digest}".lower())
    if len(name) > MAX_KEY_LENGTH:
        name = name[:MAX_KEY_LENGTH].rstrip(".-")
    return name


def classify_registry(
    registry: str,
    trusted: tuple[str, ...] | list[str] = DEFAULT_TRUSTED_REGISTRIES,
) -> RegistryType:
    """Classify a registry hostname into a :class:`RegistryType`."""
    registry = registry.lower()
    if registry in {r.lower() for r in trusted}:
        return RegistryType.TRUSTED
    if registry in PARTNER_REGISTRIES:
        return RegistryType.PARTNER
    if registry in COMMUNITY_REGISTRIES:
        return RegistryType.COMMUNITY
    if (
        registry.endswith(".local")
        or registry.endswith(".internal")
        or registry == "localhost"
        or registry.startswith("localhost:")
    ):
        return RegistryType.PRIVATE
    return RegistryType.UNKNOWN


def is_trusted_registry(
    registry: str,
    trusted: tuple[str, ...] | list[str] = DEFAULT_TRUSTED_REGISTRIES,
) -> bool:
    return classify_registry(registry, trusted) == RegistryType.TRUSTED
