"""Shared fixtures."""

from __future__ import annotations

import pytest

from tunnelrelay.core.config import RelayConfig


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def relay_config() -> RelayConfig:
    return RelayConfig(
        tunnel_ttl_minutes=5,
        expiry_interval_minutes=10,
        rate_limit_rpm=100,
        rate_limit_burst=10,
        rate_limit_cleanup_minutes=60,
        sink_buffer_size=4,
    )
