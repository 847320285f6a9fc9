"""Tests for imagecertinfo.ratelimit module."""

from __future__ import annotations

import threading
import time

import pytest

from conftest import FakeCertificationClient
from imagecertinfo.certification import cached_rate_limited
from imagecertinfo.errors import LookupCancelled
from imagecertinfo.models import CertificationData
from imagecertinfo.ratelimit import RateLimitedClient, TokenBucket


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestTokenBucket:
    def test_starts_full(self):
        clock = FakeClock()
        bucket = TokenBucket(rate=1, burst=5, clock=clock)
        delays = [bucket.reserve() for _ in range(5)]
        assert delays == [0.0] * 5

    def test_debt_after_burst(self):
        clock = FakeClock()
        bucket = TokenBucket(rate=2, burst=2, clock=clock)
        bucket.reserve()
        bucket.reserve()
        assert bucket.reserve() == pytest.approx(0.5)
        assert bucket.reserve() == pytest.approx(1.0)

    def test_refill_capped_at_burst(self):
        clock = FakeClock()
        bucket = TokenBucket(rate=10, burst=3, clock=clock)
        for _ in range(3):
            bucket.reserve()
        clock.now += 100
        assert bucket.tokens == pytest.approx(3.0)

    def test_cancel_reservation_returns_token(self):
        clock = FakeClock()
        bucket = TokenBucket(rate=1, burst=1, clock=clock)
        bucket.reserve()
        bucket.cancel_reservation()
        assert bucket.reserve() == 0.0

    def test_burst_then_steady_rate(self):
        bucket = TokenBucket(rate=20, burst=3)
        start = time.monotonic()
        for _ in range(3):
            bucket.wait()
        assert time.monotonic() - start < 0.05
        for _ in range(4):
            bucket.wait()
        # four more tokens at 20/s need about 0.2s
        assert time.monotonic() - start >= 0.18

    def test_cancel_while_waiting(self):
        bucket = TokenBucket(rate=0.1, burst=1)
        bucket.wait()
        cancel = threading.Event()
        threading.Timer(0.05, cancel.set).start()
        start = time.monotonic()
        with pytest.raises(LookupCancelled):
            bucket.wait(cancel)
        assert time.monotonic() - start < 1.0

    def test_already_cancelled(self):
        bucket = TokenBucket(rate=1, burst=1)
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(LookupCancelled):
            bucket.wait(cancel)
        assert bucket.tokens == pytest.approx(1.0, abs=0.01)

    @pytest.mark.parametrize("rate, burst", [(0, 1), (-1, 1), (1, 0)])
    def test_invalid_parameters(self, rate, burst):
        with pytest.raises(ValueError):
            TokenBucket(rate=rate, burst=burst)


class TestRateLimitedClient:
    def test_cancelled_lookup_never_reaches_client(self):
        inner = FakeCertificationClient(CertificationData())
        bucket = TokenBucket(rate=0.1, burst=1)
        client = RateLimitedClient(inner, bucket)
        client.lookup("r", "repo", "d1")

        cancel = threading.Event()
        threading.Timer(0.05, cancel.set).start()
        with pytest.raises(LookupCancelled):
            client.lookup("r", "repo", "d2", cancel)
        assert inner.calls == [("r", "repo", "d1")]

    def test_healthy_bypasses_bucket(self):
        bucket = TokenBucket(rate=0.1, burst=1)
        bucket.reserve()
        client = RateLimitedClient(FakeCertificationClient(), bucket)
        start = time.monotonic()
        assert client.healthy() is True
        assert time.monotonic() - start < 0.05


class TestCachedRateLimited:
    def test_cache_hits_do_not_spend_tokens(self):
        inner = FakeCertificationClient(CertificationData())
        client = cached_rate_limited(inner, ttl=60, rate=0.1, burst=1)
        start = time.monotonic()
        for _ in range(5):
            client.lookup("r", "repo", "d")
        assert time.monotonic() - start < 0.5
        assert len(inner.calls) == 1
