"""Background removal of tunnels older than their time-to-live."""

from __future__ import annotations

import asyncio
import contextlib

import structlog

from tunnelrelay.observability.metrics import ACTIVE_TUNNELS, TUNNELS_REMOVED
from tunnelrelay.relay.registry import TunnelRegistry
from tunnelrelay.relay.subscribers import SubscriberRegistry

logger = structlog.get_logger()


class ExpirySweeper:
    """Periodically expires tunnels and ends their live streams.

    A tunnel created at T with TTL D is gone after the first sweep at or
    after T + D, so the worst-case lifetime is D plus one interval.
    """

    def __init__(
        self,
        registry: TunnelRegistry,
        subscribers: SubscriberRegistry,
        ttl: float = 300.0,
        interval: float = 600.0,
    ) -> None:
        self._registry = registry
        self._subscribers = subscribers
        self.ttl = ttl
        self.interval = interval
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep(self) -> list[str]:
        """Run one expiry pass.

        Returns:
            Ids of the expired tunnels.
        """
        expired = await self._registry.expire(self.ttl)
        for tunnel_id in expired:
            await self._subscribers.close_tunnel(tunnel_id)

        if expired:
            TUNNELS_REMOVED.labels(reason="expired").inc(len(expired))
            ACTIVE_TUNNELS.set(len(self._registry))
            logger.info("Expired tunnels", count=len(expired), ttl=self.ttl)
        return expired

    async def _sweep_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.interval)
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Expiry sweep error", error=str(e))

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._sweep_loop())
            logger.debug("Expiry sweeper started", ttl=self.ttl, interval=self.interval)

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
