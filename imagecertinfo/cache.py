"""TTL cache in front of a certification client.

Successful lookups, including confirmed misses (``None``), are memoised for
``ttl`` seconds.  Errors are never cached so the next caller retries.  There
is no single-flight: concurrent misses on a cold key all reach the wrapped
client.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from imagecertinfo.models import CertificationData
from imagecertinfo.telemetry import Telemetry

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL = 3600.0


class ReadWriteLock:
    """Many concurrent readers or one writer.  Waiting writers block new readers."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read(self) -> Iterator[None]:
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write(self) -> Iterator[None]:
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


@dataclass
class _CacheEntry:
    data: CertificationData | None
    expires_at: float


def cache_key(registry: str, repository: str, digest: str) -> str:
    return f"{registry}/{repository}@{digest}"


class CachedClient:
    """Caching decorator with the same interface as the wrapped client.

    Parameters
    ----------
    client
        Any object implementing ``lookup`` and ``healthy``.
    ttl : float
        Seconds a stored result stays live.
    clock
        Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        client,
        ttl: float = DEFAULT_CACHE_TTL,
        *,
        telemetry: Telemetry | None = None,
        source: str = "",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl <= 0:
            raise ValueError("cache ttl must be positive")
        self._client = client
        self.ttl = ttl
        self._telemetry = telemetry
        self._source = source
        self._clock = clock
        self._lock = ReadWriteLock()
        self._entries: dict[str, _CacheEntry] = {}

    def lookup(
        self,
        registry: str,
        repository: str,
        digest: str,
        cancel: threading.Event | None = None,
    ) -> CertificationData | None:
        key = cache_key(registry, repository, digest)
        with self._lock.read():
            entry = self._entries.get(key)
        if entry is not None and self._clock() < entry.expires_at:
            self._record(hit=True)
            logger.debug("cache hit for %s", key)
            return entry.data

        self._record(hit=False)
        data = self._client.lookup(registry, repository, digest, cancel)
        with self._lock.write():
            self._entries[key] = _CacheEntry(data=data, expires_at=self._clock() + self.ttl)
        return data

    def healthy(self) -> bool:
        return self._client.healthy()

    def sweep(self) -> int:
        """Remove expired entries and return how many were dropped."""
        now = self._clock()
        with self._lock.write():
            expired = [k for k, e in self._entries.items() if now >= e.expires_at]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug("evicted %d expired %s cache entries", len(expired), self._source or "lookup")
        return len(expired)

    def clear(self) -> None:
        with self._lock.write():
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._entries)

    def _record(self, hit: bool) -> None:
        if self._telemetry is not None:
            self._telemetry.record_cache(self._source, hit)
