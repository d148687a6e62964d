"""Token bucket rate limiting with idle eviction.

Each key (caller IP, tunnel id, ...) gets its own bucket holding at most
``burst_size`` tokens, refilled continuously at ``requests_per_minute``.
A background sweep drops buckets whose key has been idle longer than the
cleanup interval so memory stays bounded under churn of distinct keys.

Example:
    limiter = create_rate_limiter(requests_per_minute=100, burst_size=10)
    await limiter.start()

    if (await limiter.allow("192.168.1.1")).allowed:
        handle_request()
    else:
        return 429  # Too Many Requests
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Callable
from dataclasses import dataclass, field
from time import monotonic

import structlog

from tunnelrelay.observability.metrics import RATE_LIMITED

logger = structlog.get_logger()


@dataclass
class RateLimitConfig:
    """Configuration for rate limiting."""

    requests_per_minute: float = 100.0
    burst_size: int = 10
    cleanup_interval: float = 3600.0

    @property
    def refill_rate(self) -> float:
        """Tokens added per second."""
        return self.requests_per_minute / 60.0


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""

    allowed: bool
    remaining: int
    retry_after: float
    limit: int


class TokenBucket:
    """Token bucket refilled lazily on access.

    ``last_seen`` is updated by ``allow`` only; the store's sweep reads it to
    decide eviction, both under the store lock.
    """

    __slots__ = ("_capacity", "_refill_rate", "_tokens", "_updated_at", "last_seen")

    def __init__(self, capacity: int, refill_rate: float, now: float) -> None:
        self._capacity = capacity
        self._refill_rate = refill_rate
        self._tokens = float(capacity)
        self._updated_at = now
        self.last_seen = now

    def _refill(self, now: float) -> None:
        elapsed = max(0.0, now - self._updated_at)
        self._tokens = min(float(self._capacity), self._tokens + elapsed * self._refill_rate)
        self._updated_at = now

    def _retry_after(self) -> float:
        if self._tokens >= 1.0:
            return 0.0
        return (1.0 - self._tokens) / self._refill_rate

    def allow(self, now: float) -> tuple[bool, int, float]:
        """Consume one token if available.

        Returns:
            Tuple of (allowed, remaining, retry_after_seconds)
        """
        self._refill(now)
        self.last_seen = now

        if self._tokens < 1.0:
            return False, 0, self._retry_after()

        self._tokens -= 1.0
        return True, int(self._tokens), self._retry_after()

    def peek(self, now: float) -> tuple[int, float]:
        """Remaining tokens and retry delay without consuming."""
        self._refill(now)
        return int(self._tokens), self._retry_after()


@dataclass
class RateLimiter:
    """Per-key token bucket store.

    Buckets are created lazily on first use. ``allow`` and ``sweep`` share
    one lock, so a bucket in use is never evicted between its decision and
    its ``last_seen`` update.
    """

    config: RateLimitConfig = field(default_factory=RateLimitConfig)
    name: str = "default"
    clock: Callable[[], float] = monotonic
    _buckets: dict[str, TokenBucket] = field(default_factory=dict, init=False)
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False)
    _sweep_task: asyncio.Task | None = field(default=None, init=False)

    def _new_bucket(self, now: float) -> TokenBucket:
        return TokenBucket(
            capacity=self.config.burst_size,
            refill_rate=self.config.refill_rate,
            now=now,
        )

    async def allow(self, key: str) -> RateLimitResult:
        """Check if a request is allowed for the given key and consume a token.

        Args:
            key: Identifier (IP address, tunnel id, etc.)

        Returns:
            RateLimitResult with allowed status and metadata
        """
        async with self._lock:
            now = self.clock()
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = self._new_bucket(now)
                self._buckets[key] = bucket

            allowed, remaining, retry_after = bucket.allow(now)

        return RateLimitResult(
            allowed=allowed,
            remaining=remaining,
            retry_after=retry_after,
            limit=self.config.burst_size,
        )

    async def check(self, key: str) -> RateLimitResult:
        """Check rate limit without consuming a token."""
        async with self._lock:
            bucket = self._buckets.get(key)
            if bucket is None:
                return RateLimitResult(
                    allowed=True,
                    remaining=self.config.burst_size,
                    retry_after=0.0,
                    limit=self.config.burst_size,
                )
            remaining, retry_after = bucket.peek(self.clock())

        return RateLimitResult(
            allowed=remaining > 0,
            remaining=remaining,
            retry_after=retry_after,
            limit=self.config.burst_size,
        )

    async def reset(self, key: str | None = None) -> None:
        """Reset one bucket, or all of them."""
        async with self._lock:
            if key is None:
                self._buckets.clear()
            else:
                self._buckets.pop(key, None)

    async def sweep(self) -> int:
        """Evict buckets idle for longer than the cleanup interval.

        Returns:
            Number of evicted buckets.
        """
        async with self._lock:
            now = self.clock()
            idle = [
                key
                for key, bucket in self._buckets.items()
                if now - bucket.last_seen > self.config.cleanup_interval
            ]
            for key in idle:
                del self._buckets[key]

        if idle:
            logger.debug("Evicted idle rate limiters", limiter=self.name, count=len(idle))
        return len(idle)

    async def _sweep_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.config.cleanup_interval)
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Rate limiter sweep error", limiter=self.name, error=str(e))

    async def start(self) -> None:
        """Start the background eviction sweep."""
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self) -> None:
        if self._sweep_task:
            self._sweep_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweep_task
            self._sweep_task = None

    @property
    def entry_count(self) -> int:
        """Number of tracked entries."""
        return len(self._buckets)


def create_rate_limiter(
    requests_per_minute: float = 100.0,
    burst_size: int = 10,
    cleanup_interval: float = 3600.0,
    name: str = "default",
    clock: Callable[[], float] = monotonic,
) -> RateLimiter:
    """Create a rate limiter with the given configuration."""
    config = RateLimitConfig(
        requests_per_minute=requests_per_minute,
        burst_size=burst_size,
        cleanup_interval=cleanup_interval,
    )
    return RateLimiter(config=config, name=name, clock=clock)


@dataclass
class AdmissionResult:
    """Outcome of the two-gate admission check.

    ``scope`` names the gate that denied the request, ``None`` when allowed.
    """

    allowed: bool
    scope: str | None = None
    retry_after: float = 0.0


class AdmissionControl:
    """Caller gate followed by an optional tunnel gate.

    The tunnel gate is consulted only when the caller gate passes and a
    tunnel id is known, so a denied caller never spends a tunnel token.
    """

    def __init__(self, caller_limiter: RateLimiter, tunnel_limiter: RateLimiter) -> None:
        self.caller_limiter = caller_limiter
        self.tunnel_limiter = tunnel_limiter

    async def check(self, caller_key: str, tunnel_key: str | None = None) -> AdmissionResult:
        result = await self.caller_limiter.allow(caller_key)
        if not result.allowed:
            RATE_LIMITED.labels(scope="caller").inc()
            logger.warning(
                "Caller rate limit exceeded",
                caller=caller_key,
                retry_after=result.retry_after,
            )
            return AdmissionResult(allowed=False, scope="caller", retry_after=result.retry_after)

        if tunnel_key:
            result = await self.tunnel_limiter.allow(tunnel_key)
            if not result.allowed:
                RATE_LIMITED.labels(scope="tunnel").inc()
                logger.warning(
                    "Tunnel rate limit exceeded",
                    tunnel_id=tunnel_key,
                    retry_after=result.retry_after,
                )
                return AdmissionResult(
                    allowed=False, scope="tunnel", retry_after=result.retry_after
                )

        return AdmissionResult(allowed=True)

    async def start(self) -> None:
        await self.caller_limiter.start()
        await self.tunnel_limiter.start()

    async def stop(self) -> None:
        await self.caller_limiter.stop()
        await self.tunnel_limiter.stop()
