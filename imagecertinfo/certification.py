"""Certification client capability and decorator composition."""

from __future__ import annotations

import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from imagecertinfo.cache import DEFAULT_CACHE_TTL, CachedClient
from imagecertinfo.models import CertificationData
from imagecertinfo.ratelimit import RateLimitedClient, TokenBucket
from imagecertinfo.reference import ImageReference
from imagecertinfo.telemetry import Telemetry

# Primary certification authority
DEFAULT_PRIMARY_RATE = 10.0
DEFAULT_PRIMARY_BURST = 20

# Secondary popularity / metadata source
DEFAULT_SECONDARY_RATE = 5.0
DEFAULT_SECONDARY_BURST = 10


@runtime_checkable
class CertificationClient(Protocol):
    """Anything that can look up certification data for an image digest.

    ``lookup`` returns ``None`` on a confirmed miss and raises a
    :class:`~imagecertinfo.errors.CertificationError` subclass on failure.
    """

    def lookup(
        self,
        registry: str,
        repository: str,
        digest: str,
        cancel: threading.Event | None = None,
    ) -> CertificationData | None: ...

    def healthy(self) -> bool: ...


@dataclass
class CertificationSource:
    """A named client plus the predicate selecting which images it serves."""

    name: str
    client: CertificationClient
    eligible: Callable[[ImageReference], bool]
    cache: CachedClient | None = None


def select_source(
    sources: Sequence[CertificationSource], ref: ImageReference
) -> CertificationSource | None:
    """First source whose predicate accepts *ref*."""
    for source in sources:
        if source.eligible(ref):
            return source
    return None


def cached_rate_limited(
    base: CertificationClient,
    ttl: float = DEFAULT_CACHE_TTL,
    rate: float = DEFAULT_PRIMARY_RATE,
    burst: int = DEFAULT_PRIMARY_BURST,
    *,
    telemetry: Telemetry | None = None,
    source: str = "",
) -> CachedClient:
    """Wrap *base* as Cache -> Rate limiter -> base.

    Cache hits never spend a rate-limit token.
    """
    limited = RateLimitedClient(base, TokenBucket(rate, burst))
    return CachedClient(limited, ttl, telemetry=telemetry, source=source)
