"""TunnelRelay - the core-facing interface of the relay.

Composes the tunnel registry, the subscriber registry, admission control and
the expiry sweeper. Callers pass already-normalized identifiers; alias
handling for request fields belongs to the HTTP layer.

Example:
    relay = TunnelRelay(RelayConfig())
    await relay.start()

    created = await relay.create_tunnel()
    async with relay.subscribe(created.id, "main") as sink:
        await relay.send(created.id, "main", "hello")
        assert await sink.get() == "hello"
"""

from __future__ import annotations

import contextlib
from collections.abc import AsyncIterator, Callable
from time import monotonic
from typing import Any

import structlog

from tunnelrelay.core.config import DEFAULT_SUB_CHANNEL, RelayConfig, get_config
from tunnelrelay.core.errors import TunnelNotFoundError, ValidationError
from tunnelrelay.observability.metrics import (
    ACTIVE_TUNNELS,
    MESSAGES_PUBLISHED,
    TUNNELS_CREATED,
    TUNNELS_REMOVED,
)
from tunnelrelay.relay.expiry import ExpirySweeper
from tunnelrelay.relay.registry import CreatedTunnel, TunnelRegistry
from tunnelrelay.relay.subscribers import Sink, SubscriberRegistry
from tunnelrelay.security.ratelimit import AdmissionControl, AdmissionResult, create_rate_limiter

logger = structlog.get_logger()


def _require(value: str | None, name: str) -> str:
    if not value:
        raise ValidationError(f"The request must contain a valid '{name}' parameter or field")
    return value


class TunnelRelay:
    """In-memory relay of tunnel content to pollers and live subscribers."""

    def __init__(
        self,
        config: RelayConfig | None = None,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self.config = config or get_config().relay
        self.tunnels = TunnelRegistry(id_length=self.config.tunnel_id_length, clock=clock)
        self.subscribers = SubscriberRegistry(buffer_size=self.config.sink_buffer_size)
        self.admission = AdmissionControl(
            caller_limiter=create_rate_limiter(
                requests_per_minute=self.config.rate_limit_rpm,
                burst_size=self.config.rate_limit_burst,
                cleanup_interval=self.config.rate_limit_cleanup_seconds,
                name="caller",
                clock=clock,
            ),
            tunnel_limiter=create_rate_limiter(
                requests_per_minute=self.config.rate_limit_rpm,
                burst_size=self.config.rate_limit_burst,
                cleanup_interval=self.config.rate_limit_cleanup_seconds,
                name="tunnel",
                clock=clock,
            ),
        )
        self.sweeper = ExpirySweeper(
            self.tunnels,
            self.subscribers,
            ttl=self.config.tunnel_ttl_seconds,
            interval=self.config.expiry_interval_seconds,
        )

    async def start(self) -> None:
        """Start the expiry sweeper and the rate limiter sweeps."""
        await self.sweeper.start()
        await self.admission.start()
        logger.info(
            "Tunnel relay started",
            ttl_minutes=self.config.tunnel_ttl_minutes,
            expiry_interval_minutes=self.config.expiry_interval_minutes,
            rate_limit_rpm=self.config.rate_limit_rpm,
            rate_limit_burst=self.config.rate_limit_burst,
        )

    async def stop(self) -> None:
        await self.sweeper.stop()
        await self.admission.stop()
        logger.info("Tunnel relay stopped")

    async def create_tunnel(self, requested_id: str | None = None) -> CreatedTunnel:
        """Create a tunnel, generating an id when none is requested.

        Recreating an existing id wipes its content and ends its live streams.
        """
        created = await self.tunnels.create(requested_id or None)
        if created.replaced:
            await self.subscribers.close_tunnel(created.id)

        TUNNELS_CREATED.labels(origin="requested" if requested_id else "generated").inc()
        ACTIVE_TUNNELS.set(len(self.tunnels))
        logger.info("Created tunnel", tunnel_id=created.id, replaced=created.replaced)
        return created

    async def send(self, tunnel_id: str, sub_channel: str | None, content: str) -> int:
        """Store ``content`` in a sub-channel and push it to its live subscribers.

        Returns:
            Number of subscribers the update was offered to.

        Raises:
            ValidationError: If the id or content is missing.
            TunnelNotFoundError: If the tunnel does not exist.
        """
        _require(tunnel_id, "id")
        _require(content, "content")
        sub_channel = sub_channel or DEFAULT_SUB_CHANNEL

        stored = await self.tunnels.put(tunnel_id, sub_channel, content)
        MESSAGES_PUBLISHED.inc()
        delivered = await self.subscribers.publish(tunnel_id, sub_channel, stored)
        logger.info(
            "Sent content to tunnel",
            tunnel_id=tunnel_id,
            sub_channel=sub_channel,
            subscribers=delivered,
        )
        return delivered

    async def get(self, tunnel_id: str, sub_channel: str | None = None) -> str | None:
        """Latest content of a sub-channel; None if it was never written."""
        _require(tunnel_id, "id")
        sub_channel = sub_channel or DEFAULT_SUB_CHANNEL
        content = await self.tunnels.get(tunnel_id, sub_channel)
        logger.debug("Retrieved content", tunnel_id=tunnel_id, sub_channel=sub_channel)
        return content

    @contextlib.asynccontextmanager
    async def subscribe(
        self, tunnel_id: str, sub_channel: str | None = None
    ) -> AsyncIterator[Sink]:
        """Attach a live subscriber for the lifetime of the ``async with`` block.

        The tunnel must exist when the block is entered; the sink is removed
        on exit, including when the surrounding task is cancelled.
        """
        _require(tunnel_id, "id")
        sub_channel = sub_channel or DEFAULT_SUB_CHANNEL

        if not await self.tunnels.exists(tunnel_id):
            raise TunnelNotFoundError(tunnel_id)

        sink = await self.subscribers.subscribe(tunnel_id, sub_channel)
        try:
            # A delete may have slipped in between the check and the attach.
            if not await self.tunnels.exists(tunnel_id):
                raise TunnelNotFoundError(tunnel_id)
            logger.info("Client connected to stream", tunnel_id=tunnel_id, sub_channel=sub_channel)
            yield sink
        finally:
            await self.subscribers.unsubscribe(sink)
            logger.info(
                "Client disconnected from stream",
                tunnel_id=tunnel_id,
                sub_channel=sub_channel,
            )

    async def delete(self, tunnel_id: str, auth_token: str | None) -> None:
        """Delete a tunnel with the token issued at creation and end its streams."""
        _require(tunnel_id, "id")
        _require(auth_token, "token")

        await self.tunnels.delete(tunnel_id, auth_token)
        await self.subscribers.close_tunnel(tunnel_id)
        TUNNELS_REMOVED.labels(reason="deleted").inc()
        ACTIVE_TUNNELS.set(len(self.tunnels))
        logger.info("Deleted tunnel", tunnel_id=tunnel_id)

    async def check_rate_limit(
        self, caller_key: str, tunnel_key: str | None = None
    ) -> AdmissionResult:
        return await self.admission.check(caller_key, tunnel_key)

    async def stats(self) -> dict[str, Any]:
        registry_stats = await self.tunnels.stats()
        return {
            "total_tunnels": registry_stats["tunnels"],
            "total_sub_channels": registry_stats["sub_channels"],
            "total_subscribers": self.subscribers.subscriber_count(),
            "tracked_callers": self.admission.caller_limiter.entry_count,
            "tracked_tunnels": self.admission.tunnel_limiter.entry_count,
            "tunnel_ttl_minutes": self.config.tunnel_ttl_minutes,
        }
