"""Tests for imagecertinfo.reference module."""

from __future__ import annotations

import pytest

from imagecertinfo.errors import MalformedReference
from imagecertinfo.models import RegistryType
from imagecertinfo.reference import (
    MAX_KEY_LENGTH,
    ImageReference,
    classify_registry,
    is_trusted_registry,
    parse_image_id,
    record_key,
)

DIGEST = "sha256:abc123def456789012345678901234567890123456789012345678901234"


# ═══════════════════════════════════════════════════════════════════════════
# parse_image_id
# ═══════════════════════════════════════════════════════════════════════════


class TestParseImageID:
    def test_red_hat_registry_with_pull_prefix(self):
        ref = parse_image_id(f"docker-pullable://registry.redhat.io/ubi8/ubi@{DIGEST}")
        assert ref.registry == "registry.redhat.io"
        assert ref.repository == "ubi8/ubi"
        assert ref.digest == DIGEST
        assert ref.tag == ""
        assert ref.full_reference == f"registry.redhat.io/ubi8/ubi@{DIGEST}"

    def test_docker_prefix_stripped(self):
        ref = parse_image_id(f"docker://quay.io/prometheus/node-exporter@{DIGEST}")
        assert ref.registry == "quay.io"
        assert ref.repository == "prometheus/node-exporter"

    def test_full_reference_is_verbatim(self):
        raw = f"registry.redhat.io/ubi8/ubi:8.9@{DIGEST}"
        ref = parse_image_id(raw)
        assert ref.full_reference == raw

    def test_tag_extracted(self):
        ref = parse_image_id(f"registry.redhat.io/ubi8/ubi:8.9@{DIGEST}")
        assert ref.tag == "8.9"
        assert ref.repository == "ubi8/ubi"

    def test_registry_port_not_mistaken_for_tag(self):
        ref = parse_image_id(f"registry.local:5000/team/app@{DIGEST}")
        assert ref.registry == "registry.local:5000"
        assert ref.repository == "team/app"
        assert ref.tag == ""

    def test_registry_port_with_tag(self):
        ref = parse_image_id(f"localhost:5000/app:v1@{DIGEST}")
        assert ref.registry == "localhost:5000"
        assert ref.repository == "app"
        assert ref.tag == "v1"

    def test_single_name_gets_library_namespace(self):
        ref = parse_image_id(f"nginx@{DIGEST}")
        assert ref.registry == "docker.io"
        assert ref.repository == "library/nginx"

    def test_namespace_without_registry_defaults_to_docker_hub(self):
        ref = parse_image_id(f"bitnami/redis@{DIGEST}")
        assert ref.registry == "docker.io"
        assert ref.repository == "bitnami/redis"

    def test_localhost_registry(self):
        ref = parse_image_id(f"localhost/app@{DIGEST}")
        assert ref.registry == "localhost"
        assert ref.repository == "app"

    @pytest.mark.parametrize(
        "image_id",
        [
            "",
            "registry.redhat.io/ubi8/ubi:latest",
            "registry.redhat.io/ubi8/ubi@",
            f"@{DIGEST}",
            "docker-pullable://nginx:latest",
        ],
    )
    def test_malformed(self, image_id):
        with pytest.raises(MalformedReference):
            parse_image_id(image_id)

    def test_malformed_is_a_value_error(self):
        with pytest.raises(ValueError):
            parse_image_id("nginx")


# ═══════════════════════════════════════════════════════════════════════════
# record_key
# ═══════════════════════════════════════════════════════════════════════════


class TestRecordKey:
    def test_human_readable_key(self):
        ref = parse_image_id(f"registry.redhat.io/ubi8/ubi@{DIGEST}")
        assert ref.key == "registry.redhat.io.ubi8.ubi.abc123de"

    def test_key_is_deterministic(self):
        a = parse_image_id(f"docker-pullable://registry.redhat.io/ubi8/ubi:8.9@{DIGEST}")
        b = parse_image_id(f"registry.redhat.io/ubi8/ubi@{DIGEST}")
        assert a.key == b.key

    def test_non_sha256_digest_kept_whole(self):
        ref = ImageReference(registry="quay.io", repository="org/app", digest="md5:0123")
        assert record_key(ref) == "quay.io.org.app.md5-0123"

    def test_lowercased_and_sanitized(self):
        ref = ImageReference(registry="Quay.IO", repository="My_Org/App+x", digest=DIGEST)
        key = record_key(ref)
        assert key == "quay.io.my.org.app-x.abc123de"

    def test_registry_port_sanitized(self):
        ref = parse_image_id(f"registry.local:5000/team/app@{DIGEST}")
        assert ref.key == "registry.local-5000.team.app.abc123de"

    def test_truncated_without_trailing_separator(self):
        # "quay.io." + 244 chars puts a separator at position 253
        repository = "a" * 244 + "/b"
        ref = ImageReference(registry="quay.io", repository=repository, digest=DIGEST)
        key = record_key(ref)
        assert len(key) == MAX_KEY_LENGTH - 1
        assert not key.endswith((".", "-"))

    def test_key_charset(self):
        ref = parse_image_id(f"registry.example.com/Team/App@{DIGEST}")
        key = ref.key
        assert all(c.isdigit() or ("a" <= c <= "z") or c in ".-" for c in key)


# ═══════════════════════════════════════════════════════════════════════════
# classify_registry
# ═══════════════════════════════════════════════════════════════════════════


class TestClassifyRegistry:
    @pytest.mark.parametrize(
        "registry, expected",
        [
            ("registry.redhat.io", RegistryType.TRUSTED),
            ("registry.access.redhat.com", RegistryType.TRUSTED),
            ("registry.connect.redhat.com", RegistryType.TRUSTED),
            ("REGISTRY.REDHAT.IO", RegistryType.TRUSTED),
            ("quay.io", RegistryType.PARTNER),
            ("docker.io", RegistryType.COMMUNITY),
            ("ghcr.io", RegistryType.COMMUNITY),
            ("registry.k8s.io", RegistryType.COMMUNITY),
            ("harbor.corp.local", RegistryType.PRIVATE),
            ("registry.internal", RegistryType.PRIVATE),
            ("localhost", RegistryType.PRIVATE),
            ("localhost:5000", RegistryType.PRIVATE),
            ("registry.example.com", RegistryType.UNKNOWN),
        ],
    )
    def test_defaults(self, registry, expected):
        assert classify_registry(registry) == expected

    def test_custom_trusted_list(self):
        trusted = ["registry.example.com"]
        assert classify_registry("registry.example.com", trusted) == RegistryType.TRUSTED
        assert classify_registry("registry.redhat.io", trusted) == RegistryType.UNKNOWN

    def test_is_trusted_registry(self):
        assert is_trusted_registry("registry.redhat.io")
        assert not is_trusted_registry("docker.io")
