"""Token-bucket rate limiting for certification clients."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

from imagecertinfo.errors import LookupCancelled
from imagecertinfo.models import CertificationData

logger = logging.getLogger(__name__)


class TokenBucket:
    """Steady ``rate`` tokens per second with room for ``burst`` tokens.

    The bucket starts full.  :meth:`wait` reserves a token immediately and
    then sleeps for however long the reservation is in debt, so callers are
    served in arrival order.
    """

    def __init__(
        self,
        rate: float,
        burst: int,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if rate <= 0:
            raise ValueError("rate must be positive")
        if burst < 1:
            raise ValueError("burst must be at least 1")
        self.rate = float(rate)
        self.burst = int(burst)
        self._clock = clock
        self._lock = threading.Lock()
        self._tokens = float(burst)
        self._last = clock()

    def _advance(self, now: float) -> None:
        elapsed = max(0.0, now - self._last)
        self._tokens = min(float(self.burst), self._tokens + elapsed * self.rate)
        self._last = now

    @property
    def tokens(self) -> float:
        with self._lock:
            self._advance(self._clock())
            return self._tokens

    def reserve(self) -> float:
        """Take one token and return the seconds until it is actually available."""
        with self._lock:
            self._advance(self._clock())
            self._tokens -= 1.0
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.rate

    def cancel_reservation(self) -> None:
        """Give back a token taken by :meth:`reserve`."""
        with self._lock:
            self._advance(self._clock())
            self._tokens = min(float(self.burst), self._tokens + 1.0)

    def wait(self, cancel: threading.Event | None = None) -> None:
        """Block until a token is available.

        Raises :class:`LookupCancelled` as soon as *cancel* is set; the reserved
        token is returned to the bucket.
        """
        if cancel is not None and cancel.is_set():
            raise LookupCancelled("cancelled before acquiring a rate-limit token")
        delay = self.reserve()
        if delay <= 0:
            return
        logger.debug("rate limited, waiting %.3fs for a token", delay)
        waiter = cancel if cancel is not None else threading.Event()
        if waiter.wait(delay):
            self.cancel_reservation()
            raise LookupCancelled("cancelled while waiting for a rate-limit token")


class RateLimitedClient:
    """Rate-limiting decorator: every lookup spends one token first."""

    def __init__(self, client, bucket: TokenBucket) -> None:
        self._client = client
        self.bucket = bucket

    def lookup(
        self,
        registry: str,
        repository: str,
        digest: str,
        cancel: threading.Event | None = None,
    ) -> CertificationData | None:
        self.bucket.wait(cancel)
        return self._client.lookup(registry, repository, digest, cancel)

    def healthy(self) -> bool:
        return self._client.healthy()
