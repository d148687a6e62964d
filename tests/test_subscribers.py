"""Tests for sinks and the subscriber registry."""

from __future__ import annotations

import asyncio

import pytest

from tunnelrelay.relay.subscribers import Sink, SubscriberRegistry


class TestSink:
    """Tests for Sink."""

    @pytest.mark.asyncio
    async def test_fifo_order(self):
        sink = Sink("t", "main", buffer_size=8)
        for value in ("a", "b", "c"):
            sink.offer(value)

        assert [await sink.get() for _ in range(3)] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_drops_oldest_when_full(self):
        sink = Sink("t", "main", buffer_size=2)

        assert sink.offer("1") is True
        assert sink.offer("2") is True
        assert sink.offer("3") is False

        assert sink.dropped == 1
        assert sink.pending == 2
        assert await sink.get() == "2"
        assert await sink.get() == "3"

    @pytest.mark.asyncio
    async def test_get_times_out(self):
        sink = Sink("t", "main")
        with pytest.raises(TimeoutError):
            await sink.get(timeout=0.01)

    @pytest.mark.asyncio
    async def test_close_drains_then_ends(self):
        sink = Sink("t", "main")
        sink.offer("last words")
        sink.close()

        assert await sink.get() == "last words"
        assert await sink.get() is None
        assert await sink.get() is None

    @pytest.mark.asyncio
    async def test_close_wakes_waiting_reader(self):
        sink = Sink("t", "main")
        reader = asyncio.create_task(sink.get())
        await asyncio.sleep(0)

        sink.close()

        assert await asyncio.wait_for(reader, timeout=1.0) is None

    @pytest.mark.asyncio
    async def test_close_on_full_sink_keeps_pending(self):
        sink = Sink("t", "main", buffer_size=1)
        sink.offer("kept")
        sink.close()

        assert await sink.get() == "kept"
        assert await sink.get() is None

    @pytest.mark.asyncio
    async def test_offer_after_close_ignored(self):
        sink = Sink("t", "main")
        sink.close()
        assert sink.offer("late") is False
        assert await sink.get() is None

    @pytest.mark.asyncio
    async def test_async_iteration(self):
        sink = Sink("t", "main")
        sink.offer("x")
        sink.offer("y")
        sink.close()

        assert [content async for content in sink] == ["x", "y"]


class TestSubscriberRegistry:
    """Tests for SubscriberRegistry."""

    @pytest.mark.asyncio
    async def test_publish_reaches_subscriber(self):
        registry = SubscriberRegistry()
        sink = await registry.subscribe("t", "main")

        offered = await registry.publish("t", "main", "hello")

        assert offered == 1
        assert await sink.get(timeout=1.0) == "hello"

    @pytest.mark.asyncio
    async def test_no_backfill(self):
        registry = SubscriberRegistry()
        await registry.publish("t", "main", "before")
        sink = await registry.subscribe("t", "main")

        with pytest.raises(TimeoutError):
            await sink.get(timeout=0.01)

    @pytest.mark.asyncio
    async def test_fan_out_in_order(self):
        registry = SubscriberRegistry()
        first = await registry.subscribe("t", "main")
        second = await registry.subscribe("t", "main")

        for value in ("1", "2", "3"):
            await registry.publish("t", "main", value)

        for sink in (first, second):
            assert [await sink.get(timeout=1.0) for _ in range(3)] == ["1", "2", "3"]

    @pytest.mark.asyncio
    async def test_publish_scoped_to_pair(self):
        registry = SubscriberRegistry()
        other_channel = await registry.subscribe("t", "other")
        other_tunnel = await registry.subscribe("u", "main")

        assert await registry.publish("t", "main", "hello") == 0
        assert other_channel.pending == 0
        assert other_tunnel.pending == 0

    @pytest.mark.asyncio
    async def test_slow_subscriber_does_not_block(self):
        registry = SubscriberRegistry(buffer_size=2)
        slow = await registry.subscribe("t", "main")
        fast = await registry.subscribe("t", "main")

        for i in range(10):
            await asyncio.wait_for(registry.publish("t", "main", str(i)), timeout=1.0)
            assert await fast.get(timeout=1.0) == str(i)

        assert slow.dropped == 8
        assert [await slow.get(), await slow.get()] == ["8", "9"]

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        registry = SubscriberRegistry()
        sink = await registry.subscribe("t", "main")

        assert await registry.unsubscribe(sink) is True

        assert registry.subscriber_count() == 0
        assert await registry.publish("t", "main", "hello") == 0
        assert sink.closed

    @pytest.mark.asyncio
    async def test_unsubscribe_twice_is_safe(self):
        registry = SubscriberRegistry()
        sink = await registry.subscribe("t", "main")

        await registry.unsubscribe(sink)
        assert await registry.unsubscribe(sink) is False

    @pytest.mark.asyncio
    async def test_unsubscribe_concurrent_with_publish(self):
        registry = SubscriberRegistry()
        sinks = [await registry.subscribe("t", "main") for _ in range(20)]

        await asyncio.gather(
            *(registry.publish("t", "main", str(i)) for i in range(20)),
            *(registry.unsubscribe(sink) for sink in sinks),
        )

        assert registry.subscriber_count() == 0

    @pytest.mark.asyncio
    async def test_close_tunnel(self):
        registry = SubscriberRegistry()
        a = await registry.subscribe("t", "main")
        b = await registry.subscribe("t", "side")
        keep = await registry.subscribe("u", "main")

        closed = await registry.close_tunnel("t")

        assert closed == 2
        assert await a.get() is None
        assert await b.get() is None
        assert not keep.closed
        assert registry.subscriber_count() == 1

    @pytest.mark.asyncio
    async def test_unsubscribe_after_close_tunnel(self):
        registry = SubscriberRegistry()
        sink = await registry.subscribe("t", "main")
        await registry.close_tunnel("t")

        assert await registry.unsubscribe(sink) is False

    @pytest.mark.asyncio
    async def test_subscriber_count(self):
        registry = SubscriberRegistry()
        await registry.subscribe("t", "main")
        await registry.subscribe("t", "main")
        await registry.subscribe("t", "side")
        await registry.subscribe("u", "main")

        assert registry.subscriber_count() == 4
        assert registry.subscriber_count("t") == 3
        assert registry.subscriber_count("t", "main") == 2
        assert registry.subscriber_count("missing") == 0
