"""Tests for rate limiting module."""

from __future__ import annotations

import asyncio

import pytest

from tunnelrelay.security.ratelimit import (
    AdmissionControl,
    RateLimitConfig,
    RateLimiter,
    RateLimitResult,
    TokenBucket,
    create_rate_limiter,
)


class TestTokenBucket:
    """Tests for TokenBucket."""

    def test_basic_allow(self):
        """Test basic allow functionality."""
        bucket = TokenBucket(capacity=10, refill_rate=1.0, now=0.0)
        allowed, remaining, _ = bucket.allow(0.0)
        assert allowed is True
        assert remaining == 9

    def test_exceeds_capacity(self):
        """Test that requests are denied once the bucket is empty."""
        bucket = TokenBucket(capacity=3, refill_rate=1.0, now=0.0)

        for _ in range(3):
            allowed, _, _ = bucket.allow(0.0)
            assert allowed is True

        allowed, remaining, retry_after = bucket.allow(0.0)
        assert allowed is False
        assert remaining == 0
        assert retry_after == pytest.approx(1.0)

    def test_refill_over_time(self):
        """Test that tokens come back at the refill rate."""
        bucket = TokenBucket(capacity=2, refill_rate=2.0, now=0.0)
        bucket.allow(0.0)
        bucket.allow(0.0)

        allowed, _, _ = bucket.allow(0.1)
        assert allowed is False

        allowed, _, _ = bucket.allow(0.6)
        assert allowed is True

    def test_refill_capped_at_capacity(self):
        """Test that a long idle period never exceeds capacity."""
        bucket = TokenBucket(capacity=3, refill_rate=10.0, now=0.0)
        remaining, retry_after = bucket.peek(1000.0)
        assert remaining == 3
        assert retry_after == 0.0

    def test_peek_doesnt_consume(self):
        """Test that peek doesn't affect the bucket."""
        bucket = TokenBucket(capacity=3, refill_rate=1.0, now=0.0)

        remaining1, _ = bucket.peek(0.0)
        remaining2, _ = bucket.peek(0.0)

        assert remaining1 == remaining2 == 3

    def test_denied_request_updates_last_seen(self):
        """Test that last_seen moves even when the request is denied."""
        bucket = TokenBucket(capacity=1, refill_rate=0.001, now=0.0)
        bucket.allow(0.0)
        bucket.allow(50.0)
        assert bucket.last_seen == 50.0


class TestRateLimitConfig:
    def test_refill_rate_per_second(self):
        config = RateLimitConfig(requests_per_minute=120)
        assert config.refill_rate == 2.0


class TestRateLimiter:
    """Tests for RateLimiter."""

    @pytest.mark.asyncio
    async def test_basic_allow(self):
        """Test basic rate limiter allow."""
        limiter = create_rate_limiter(requests_per_minute=100)
        result = await limiter.allow("192.168.1.1")
        assert result.allowed is True
        assert result.remaining >= 0

    @pytest.mark.asyncio
    async def test_different_keys_independent(self):
        """Test that different keys have independent limits."""
        limiter = create_rate_limiter(requests_per_minute=2, burst_size=2)

        await limiter.allow("key1")
        await limiter.allow("key1")
        result1 = await limiter.allow("key1")

        result2 = await limiter.allow("key2")

        assert result1.allowed is False
        assert result2.allowed is True

    @pytest.mark.asyncio
    async def test_rate_limit_result_fields(self):
        """Test RateLimitResult has correct fields."""
        limiter = create_rate_limiter(requests_per_minute=100)
        result = await limiter.allow("test-ip")

        assert isinstance(result, RateLimitResult)
        assert isinstance(result.allowed, bool)
        assert isinstance(result.remaining, int)
        assert isinstance(result.retry_after, float)
        assert result.limit == 10

    @pytest.mark.asyncio
    async def test_burst_then_refill(self, clock):
        """Excess calls within one refill period are denied; one more succeeds after it."""
        limiter = create_rate_limiter(requests_per_minute=100, burst_size=10, clock=clock)

        results = [await limiter.allow("caller") for _ in range(15)]
        assert sum(r.allowed for r in results) == 10
        assert all(not r.allowed for r in results[10:])

        clock.advance(60.0 / 100 + 0.01)
        result = await limiter.allow("caller")
        assert result.allowed is True

    @pytest.mark.asyncio
    async def test_denied_does_not_consume(self, clock):
        """Test that denials leave the refill schedule untouched."""
        limiter = create_rate_limiter(requests_per_minute=60, burst_size=1, clock=clock)
        await limiter.allow("k")

        for _ in range(5):
            assert (await limiter.allow("k")).allowed is False

        clock.advance(1.0)
        assert (await limiter.allow("k")).allowed is True

    @pytest.mark.asyncio
    async def test_check_does_not_consume(self):
        """Test check() peeks without consuming."""
        limiter = create_rate_limiter(requests_per_minute=100, burst_size=2)

        first = await limiter.check("new-key")
        assert first.allowed is True
        assert first.remaining == 2
        assert limiter.entry_count == 0

        await limiter.allow("new-key")
        result = await limiter.check("new-key")
        assert result.remaining == 1

    @pytest.mark.asyncio
    async def test_reset_single_key(self):
        limiter = create_rate_limiter(requests_per_minute=1, burst_size=1)
        await limiter.allow("a")
        await limiter.allow("b")

        await limiter.reset("a")

        assert (await limiter.allow("a")).allowed is True
        assert (await limiter.allow("b")).allowed is False

    @pytest.mark.asyncio
    async def test_reset_all(self):
        limiter = create_rate_limiter()
        await limiter.allow("a")
        await limiter.allow("b")

        await limiter.reset()

        assert limiter.entry_count == 0

    @pytest.mark.asyncio
    async def test_sweep_evicts_idle_keys(self, clock):
        """Test that only keys idle past the cleanup interval are evicted."""
        limiter = create_rate_limiter(cleanup_interval=3600.0, clock=clock)
        await limiter.allow("stale")
        clock.advance(3000.0)
        await limiter.allow("fresh")
        clock.advance(700.0)

        evicted = await limiter.sweep()

        assert evicted == 1
        assert limiter.entry_count == 1
        assert "fresh" in limiter._buckets

    @pytest.mark.asyncio
    async def test_sweep_keeps_recently_used_key(self, clock):
        """Test that a key touched just before the sweep keeps its bucket."""
        limiter = create_rate_limiter(burst_size=2, cleanup_interval=60.0, clock=clock)
        await limiter.allow("busy")
        clock.advance(59.0)
        await limiter.allow("busy")
        clock.advance(30.0)

        assert await limiter.sweep() == 0
        assert limiter.entry_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_allow_respects_capacity(self):
        """Test that concurrent callers never exceed the burst."""
        limiter = create_rate_limiter(requests_per_minute=1, burst_size=5)

        results = await asyncio.gather(*(limiter.allow("shared") for _ in range(20)))

        assert sum(r.allowed for r in results) == 5

    @pytest.mark.asyncio
    async def test_start_and_stop_sweeper(self):
        limiter = create_rate_limiter(cleanup_interval=0.01)
        await limiter.allow("k")

        await limiter.start()
        await asyncio.sleep(0.05)
        await limiter.stop()

        assert limiter.entry_count == 0


class TestAdmissionControl:
    """Tests for the caller + tunnel gates."""

    def _admission(self, clock, burst: int = 2) -> AdmissionControl:
        return AdmissionControl(
            caller_limiter=create_rate_limiter(burst_size=burst, name="caller", clock=clock),
            tunnel_limiter=create_rate_limiter(burst_size=burst, name="tunnel", clock=clock),
        )

    @pytest.mark.asyncio
    async def test_allows_within_limits(self, clock):
        admission = self._admission(clock)
        result = await admission.check("1.2.3.4", "TUN")
        assert result.allowed is True
        assert result.scope is None

    @pytest.mark.asyncio
    async def test_caller_gate_denies_first(self, clock):
        admission = self._admission(clock)
        await admission.check("1.2.3.4", "A")
        await admission.check("1.2.3.4", "B")

        result = await admission.check("1.2.3.4", "C")

        assert result.allowed is False
        assert result.scope == "caller"
        # Denied caller must not spend a token of the tunnel gate.
        assert (await admission.tunnel_limiter.check("C")).remaining == 2

    @pytest.mark.asyncio
    async def test_tunnel_gate_shared_across_callers(self, clock):
        admission = self._admission(clock)
        await admission.check("caller-1", "HOT")
        await admission.check("caller-2", "HOT")

        result = await admission.check("caller-3", "HOT")

        assert result.allowed is False
        assert result.scope == "tunnel"
        assert result.retry_after > 0

    @pytest.mark.asyncio
    async def test_no_tunnel_key_skips_tunnel_gate(self, clock):
        admission = self._admission(clock)
        result = await admission.check("1.2.3.4", None)
        assert result.allowed is True
        assert admission.tunnel_limiter.entry_count == 0

    @pytest.mark.asyncio
    async def test_default_limiter_is_rate_limiter(self):
        assert isinstance(create_rate_limiter(), RateLimiter)
