"""Live subscriber sinks and the fan-out of content updates.

Each streaming connection owns one ``Sink``. Publishing offers the new value
to every sink of a (tunnel, sub-channel) pair without awaiting any of them:
a sink buffers up to ``buffer_size`` pending updates and drops the oldest
when a reader falls behind, so one wedged reader never stalls the writer or
the other readers.
"""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import AsyncIterator

import structlog

from tunnelrelay.observability.metrics import ACTIVE_SUBSCRIBERS, DELIVERIES_DROPPED

logger = structlog.get_logger()

_CLOSED = object()
_sink_ids = itertools.count(1)


class Sink:
    """Per-connection delivery handle.

    Updates come out in the order they were offered. After ``close`` the
    remaining updates are still delivered, then ``get`` returns None.
    """

    def __init__(self, tunnel_id: str, sub_channel: str, buffer_size: int = 16) -> None:
        self.id = next(_sink_ids)
        self.tunnel_id = tunnel_id
        self.sub_channel = sub_channel
        self.dropped = 0
        self._buffer_size = buffer_size
        # Unbounded so the close marker always fits; offer() enforces buffer_size.
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._closed = False

    def __repr__(self) -> str:
        return f"Sink(id={self.id}, tunnel_id={self.tunnel_id!r}, sub_channel={self.sub_channel!r})"

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def offer(self, content: str) -> bool:
        """Queue an update without blocking.

        Returns:
            False if the sink is closed or an older update had to be dropped.
        """
        if self._closed:
            return False

        delivered = True
        if self._queue.qsize() >= self._buffer_size:
            self._queue.get_nowait()
            self.dropped += 1
            DELIVERIES_DROPPED.inc()
            delivered = False
            logger.debug(
                "Subscriber behind, dropped oldest update",
                sink_id=self.id,
                tunnel_id=self.tunnel_id,
                sub_channel=self.sub_channel,
            )

        self._queue.put_nowait(content)
        return delivered

    def close(self) -> None:
        """End the stream once pending updates are drained. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    async def get(self, timeout: float | None = None) -> str | None:
        """Wait for the next update.

        Returns:
            The next content, or None once the sink is closed and drained.

        Raises:
            TimeoutError: If nothing arrives within ``timeout`` seconds.
        """
        item = await asyncio.wait_for(self._queue.get(), timeout)
        if item is _CLOSED:
            # Keep the marker so later calls also see the end of stream.
            self._queue.put_nowait(_CLOSED)
            return None
        return item  # type: ignore[return-value]

    def __aiter__(self) -> AsyncIterator[str]:
        return self

    async def __anext__(self) -> str:
        content = await self.get()
        if content is None:
            raise StopAsyncIteration
        return content


class SubscriberRegistry:
    """Live sinks keyed by tunnel id, then sub-channel."""

    def __init__(self, buffer_size: int = 16) -> None:
        self._buffer_size = buffer_size
        self._sinks: dict[str, dict[str, set[Sink]]] = {}
        self._lock = asyncio.Lock()

    async def subscribe(self, tunnel_id: str, sub_channel: str) -> Sink:
        """Register a new sink. It only sees updates published after this call."""
        sink = Sink(tunnel_id, sub_channel, buffer_size=self._buffer_size)
        async with self._lock:
            self._sinks.setdefault(tunnel_id, {}).setdefault(sub_channel, set()).add(sink)
        ACTIVE_SUBSCRIBERS.inc()
        logger.debug(
            "Subscriber attached",
            sink_id=sink.id,
            tunnel_id=tunnel_id,
            sub_channel=sub_channel,
        )
        return sink

    async def unsubscribe(self, sink: Sink) -> bool:
        """Remove and close a sink.

        Returns:
            False if the sink had already been removed.
        """
        async with self._lock:
            removed = self._discard(sink)
        sink.close()
        if removed:
            ACTIVE_SUBSCRIBERS.dec()
            logger.debug(
                "Subscriber detached",
                sink_id=sink.id,
                tunnel_id=sink.tunnel_id,
                sub_channel=sink.sub_channel,
            )
        return removed

    def _discard(self, sink: Sink) -> bool:
        channels = self._sinks.get(sink.tunnel_id)
        if not channels:
            return False
        sinks = channels.get(sink.sub_channel)
        if not sinks or sink not in sinks:
            return False
        sinks.discard(sink)
        if not sinks:
            del channels[sink.sub_channel]
        if not channels:
            del self._sinks[sink.tunnel_id]
        return True

    async def publish(self, tunnel_id: str, sub_channel: str, content: str) -> int:
        """Offer ``content`` to every sink of the pair.

        Returns:
            Number of sinks the update was offered to.
        """
        async with self._lock:
            sinks = list(self._sinks.get(tunnel_id, {}).get(sub_channel, ()))

        for sink in sinks:
            sink.offer(content)
        return len(sinks)

    async def close_tunnel(self, tunnel_id: str) -> int:
        """Close and remove every sink attached to a tunnel.

        Returns:
            Number of sinks closed.
        """
        async with self._lock:
            channels = self._sinks.pop(tunnel_id, {})

        closed = 0
        for sinks in channels.values():
            for sink in sinks:
                sink.close()
                closed += 1
        if closed:
            ACTIVE_SUBSCRIBERS.dec(closed)
            logger.info("Closed tunnel subscribers", tunnel_id=tunnel_id, count=closed)
        return closed

    def subscriber_count(self, tunnel_id: str | None = None, sub_channel: str | None = None) -> int:
        if tunnel_id is None:
            return sum(
                len(sinks) for channels in self._sinks.values() for sinks in channels.values()
            )
        channels = self._sinks.get(tunnel_id, {})
        if sub_channel is None:
            return sum(len(sinks) for sinks in channels.values())
        return len(channels.get(sub_channel, ()))
