"""Application configuration and settings."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, field_validator

from imagecertinfo.cache import DEFAULT_CACHE_TTL
from imagecertinfo.certification import (
    DEFAULT_PRIMARY_BURST,
    DEFAULT_PRIMARY_RATE,
    DEFAULT_SECONDARY_BURST,
    DEFAULT_SECONDARY_RATE,
)
from imagecertinfo.dockerhub import DEFAULT_BASE_URL as DOCKERHUB_BASE_URL
from imagecertinfo.pyxis import DEFAULT_BASE_URL as PYXIS_BASE_URL
from imagecertinfo.reference import DEFAULT_TRUSTED_REGISTRIES
from imagecertinfo.scheduler import (
    DEFAULT_CLEANUP_INTERVAL,
    DEFAULT_REFRESH_INTERVAL,
    DEFAULT_REFRESH_JITTER,
)

DEFAULT_SQLITE_PATH = "imagecertinfo.db"
DEFAULT_OUTPUT_DIR = "inventory-report"

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|h|m|s)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration(value: Any) -> float:
    """Parse seconds or a Go-style duration string (``"90s"``, ``"1h30m"``)."""
    if isinstance(value, bool):
        raise ValueError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = str(value).strip()
        if not text:
            raise ValueError("empty duration")
        try:
            seconds = float(text)
        except ValueError:
            pos = 0
            seconds = 0.0
            for match in _DURATION_PART.finditer(text):
                if match.start() != pos:
                    break
                seconds += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
                pos = match.end()
            if pos != len(text) or pos == 0:
                raise ValueError(f"invalid duration: {value!r}") from None
    if seconds < 0:
        raise ValueError(f"duration must not be negative: {value!r}")
    return seconds


class Settings(BaseModel):
    """Runtime settings resolved from env vars, a YAML file and CLI flags."""

    # ── Cluster ──────────────────────────────────────────────────────
    kubeconfig: str = Field(
        default_factory=lambda: os.environ.get("KUBECONFIG", ""),
        description="Path to kubeconfig file. Empty = use default (~/.kube/config).",
    )
    kube_context: str = Field(
        default="",
        description="Kubernetes context to use. Empty = current context.",
    )

    # ── Record store ─────────────────────────────────────────────────
    store: Literal["kubectl", "sqlite"] = Field(
        default="kubectl",
        description="Where records live: custom resources on the cluster, or a local SQLite file.",
    )
    sqlite_path: str = DEFAULT_SQLITE_PATH

    # ── Engine loops ─────────────────────────────────────────────────
    resync_interval: float = 30.0
    reconcile_workers: int = Field(default=4, ge=1)
    enrichment_workers: int = Field(default=4, ge=1)
    cleanup_interval: float = DEFAULT_CLEANUP_INTERVAL
    refresh_interval: float = Field(
        default=DEFAULT_REFRESH_INTERVAL,
        description="How often certification data is refreshed. 0 disables periodic refresh.",
    )
    refresh_jitter: float = DEFAULT_REFRESH_JITTER

    # ── Pyxis (primary certification source) ────────────────────────
    pyxis_enabled: bool = True
    pyxis_base_url: str = PYXIS_BASE_URL
    pyxis_api_key: str = Field(
        default_factory=lambda: os.environ.get("PYXIS_API_KEY", ""),
        description="Optional Pyxis API key. The public API works without one.",
    )
    pyxis_cache_ttl: float = DEFAULT_CACHE_TTL
    pyxis_rate_limit: float = Field(default=DEFAULT_PRIMARY_RATE, gt=0)
    pyxis_rate_burst: int = Field(default=DEFAULT_PRIMARY_BURST, ge=1)

    # ── Docker Hub (secondary metadata source) ──────────────────────
    dockerhub_enabled: bool = True
    dockerhub_base_url: str = DOCKERHUB_BASE_URL
    dockerhub_cache_ttl: float = DEFAULT_CACHE_TTL
    dockerhub_rate_limit: float = Field(default=DEFAULT_SECONDARY_RATE, gt=0)
    dockerhub_rate_burst: int = Field(default=DEFAULT_SECONDARY_BURST, ge=1)

    # ── Misc ─────────────────────────────────────────────────────────
    trusted_registries: list[str] = Field(default_factory=lambda: list(DEFAULT_TRUSTED_REGISTRIES))
    ca_cert: str = Field(
        default="",
        description="Path to a CA certificate bundle for TLS verification of provider APIs.",
    )
    verbose: bool = False

    @field_validator(
        "resync_interval",
        "cleanup_interval",
        "refresh_interval",
        "refresh_jitter",
        "pyxis_cache_ttl",
        "dockerhub_cache_ttl",
        mode="before",
    )
    @classmethod
    def _parse_duration(cls, value: Any) -> float:
        return parse_duration(value)

    @field_validator("pyxis_cache_ttl", "dockerhub_cache_ttl", "resync_interval")
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @classmethod
    def from_file(cls, path: str | Path, **overrides: Any) -> "Settings":
        """Load settings from a YAML file; non-empty *overrides* win."""
        raw = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
        if not isinstance(raw, dict):
            raise ValueError(f"{path}: expected a mapping at the top level")
        data = {k.replace("-", "_"): v for k, v in raw.items()}
        data.update({k: v for k, v in overrides.items() if v not in (None, "")})
        return cls(**data)

    @property
    def resolved_sqlite_path(self) -> Path:
        return Path(self.sqlite_path).resolve()
