"""
Tests for the message bus: delivery settlement, the consume loop and the
Redis list backend.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from stagecrawler.errors import BusError, BusTimeoutError
from stagecrawler.messaging.bus import Delivery, MemoryMessageBus, RedisMessageBus


async def consume_until(bus, queue, handler, done, **kwargs):
    """Run a consumer until ``done()`` holds, then stop it."""
    stop = asyncio.Event()
    consumer = asyncio.create_task(bus.consume(queue, handler, stop_event=stop, **kwargs))
    for _ in range(300):
        if done():
            break
        await asyncio.sleep(0.01)
    stop.set()
    await asyncio.wait_for(consumer, 1)


class TestDelivery:

    @pytest.mark.asyncio
    async def test_auto_ack_delivery_is_settled(self):
        delivery = Delivery("q", b"x")
        assert delivery.settled
        await delivery.nack()
        assert delivery.outcome == "ack"

    @pytest.mark.asyncio
    async def test_settles_only_once(self):
        settle = AsyncMock()
        delivery = Delivery("q", b"x", auto_ack=False, settle=settle)

        await delivery.nack(requeue=True)
        await delivery.ack()

        assert delivery.outcome == "requeue"
        settle.assert_awaited_once_with(delivery, True)

    @pytest.mark.asyncio
    async def test_reject_does_not_requeue(self):
        settle = AsyncMock()
        delivery = Delivery("q", b"x", auto_ack=False, settle=settle)

        await delivery.reject()

        assert delivery.outcome == "reject"
        settle.assert_awaited_once_with(delivery, False)


class TestMemoryBus:

    @pytest.mark.asyncio
    async def test_fifo_per_queue(self, bus):
        for body in (b"1", b"2", b"3"):
            await bus.publish("a", body)
        await bus.publish("b", b"other")

        received = []
        for _ in range(3):
            delivery = await bus.receive("a", auto_ack=True, timeout=0.1)
            received.append(delivery.body)

        assert received == [b"1", b"2", b"3"]
        assert bus.pending("b") == [b"other"]

    @pytest.mark.asyncio
    async def test_receive_times_out_on_empty_queue(self, bus):
        assert await bus.receive("empty", auto_ack=True, timeout=0.01) is None

    @pytest.mark.asyncio
    async def test_nack_requeues_at_front(self, bus):
        await bus.publish("q", b"first")
        await bus.publish("q", b"second")

        delivery = await bus.receive("q", auto_ack=False, timeout=0.1)
        assert bus.unacked("q") == 1
        await delivery.nack(requeue=True)

        assert bus.unacked("q") == 0
        assert bus.pending("q") == [b"first", b"second"]

    @pytest.mark.asyncio
    async def test_ack_removes_message(self, bus):
        await bus.publish("q", b"only")

        delivery = await bus.receive("q", auto_ack=False, timeout=0.1)
        await delivery.ack()

        assert bus.unacked("q") == 0
        assert bus.pending("q") == []


class TestConsumeLoop:

    @pytest.mark.asyncio
    async def test_handler_sees_every_message(self, bus):
        seen = []

        async def handler(delivery):
            seen.append(delivery.body)

        for i in range(5):
            await bus.publish("q", str(i).encode())

        await consume_until(bus, "q", handler, lambda: len(seen) == 5, auto_ack=True, prefetch=2)

        assert sorted(seen) == [b"0", b"1", b"2", b"3", b"4"]

    @pytest.mark.asyncio
    async def test_prefetch_bounds_unacked_messages(self, bus):
        release = asyncio.Event()
        peak = 0

        async def handler(delivery):
            nonlocal peak
            peak = max(peak, bus.unacked("q"))
            await release.wait()
            await delivery.ack()

        for i in range(6):
            await bus.publish("q", str(i).encode())

        stop = asyncio.Event()
        consumer = asyncio.create_task(
            bus.consume("q", handler, auto_ack=False, prefetch=2, stop_event=stop)
        )
        await asyncio.sleep(0.05)

        assert bus.unacked("q") == 2
        assert len(bus.pending("q")) == 4

        release.set()
        for _ in range(100):
            if not bus.pending("q") and bus.unacked("q") == 0:
                break
            await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(consumer, 1)

        assert peak <= 2
        assert bus.pending("q") == []

    @pytest.mark.asyncio
    async def test_failing_handler_requeues_and_loop_continues(self, bus):
        attempts = []

        async def handler(delivery):
            attempts.append(delivery.body)
            if len(attempts) == 1:
                raise RuntimeError("boom")

        await bus.publish("q", b"job")

        await consume_until(bus, "q", handler, lambda: len(attempts) == 2, auto_ack=False)

        assert attempts == [b"job", b"job"]
        assert bus.pending("q") == []
        assert bus.unacked("q") == 0

    @pytest.mark.asyncio
    async def test_unsettled_delivery_is_acked(self, bus):
        handled = []

        async def handler(delivery):
            handled.append(delivery)

        await bus.publish("q", b"job")

        await consume_until(bus, "q", handler, lambda: bus.unacked("q") == 0 and handled,
                            auto_ack=False)

        assert handled[0].outcome == "ack"

    @pytest.mark.asyncio
    async def test_gives_up_after_repeated_receive_failures(self, bus):
        bus.receive = AsyncMock(side_effect=BusError("down"))
        bus.poll_interval = 0

        with pytest.raises(BusError):
            await bus.consume("q", AsyncMock(), auto_ack=True)

        assert bus.receive.await_count == bus.max_receive_failures

    @pytest.mark.asyncio
    async def test_rejects_zero_prefetch(self, bus):
        with pytest.raises(ValueError):
            await bus.consume("q", AsyncMock(), prefetch=0)


@pytest.fixture
def redis_client():
    client = MagicMock()
    client.lpush = AsyncMock(return_value=1)
    client.brpop = AsyncMock(return_value=None)
    client.blmove = AsyncMock(return_value=None)
    client.lmove = AsyncMock(return_value=None)
    client.aclose = AsyncMock()

    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[1, 1])
    pipe.__aenter__ = AsyncMock(return_value=pipe)
    pipe.__aexit__ = AsyncMock(return_value=False)
    client.pipeline.return_value = pipe
    return client


class TestRedisBus:

    @pytest.mark.asyncio
    async def test_publish_pushes_left(self, redis_client):
        bus = RedisMessageBus(redis_client, consumer_id="w1")

        await bus.publish("fetch-jobs", b"\x00\x00\x00\x01")

        redis_client.lpush.assert_awaited_once_with("fetch-jobs", b"\x00\x00\x00\x01")

    @pytest.mark.asyncio
    async def test_auto_ack_receive_pops_right(self, redis_client):
        redis_client.brpop.return_value = (b"parse-jobs", b"\x00\x00\x00\x02")
        bus = RedisMessageBus(redis_client, consumer_id="w1")

        delivery = await bus.receive("parse-jobs", auto_ack=True, timeout=1)

        assert delivery.body == b"\x00\x00\x00\x02"
        assert delivery.settled
        redis_client.brpop.assert_awaited_once_with(["parse-jobs"], timeout=1)

    @pytest.mark.asyncio
    async def test_explicit_ack_moves_to_processing_list(self, redis_client):
        redis_client.blmove.return_value = b'{"url": "http://site.test/"}'
        bus = RedisMessageBus(redis_client, consumer_id="w1")

        delivery = await bus.receive("inbound-candidates", auto_ack=False, timeout=1)

        assert not delivery.settled
        redis_client.blmove.assert_awaited_once_with(
            "inbound-candidates", "inbound-candidates:processing:w1", 1,
            src="RIGHT", dest="LEFT"
        )

        await delivery.ack()
        pipe = redis_client.pipeline.return_value
        pipe.lrem.assert_called_once_with("inbound-candidates:processing:w1", 1, delivery.body)
        pipe.rpush.assert_not_called()
        pipe.execute.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_nack_pushes_back_to_consume_end(self, redis_client):
        redis_client.blmove.return_value = b"body"
        bus = RedisMessageBus(redis_client, consumer_id="w1")

        delivery = await bus.receive("q", auto_ack=False, timeout=1)
        await delivery.nack(requeue=True)

        pipe = redis_client.pipeline.return_value
        pipe.lrem.assert_called_once_with("q:processing:w1", 1, b"body")
        pipe.rpush.assert_called_once_with("q", b"body")

    @pytest.mark.asyncio
    async def test_recover_returns_orphaned_messages(self, redis_client):
        redis_client.lmove.side_effect = [b"a", b"b", None]
        bus = RedisMessageBus(redis_client, consumer_id="w1")

        await bus.recover("q")

        assert redis_client.lmove.await_count == 3
        redis_client.lmove.assert_awaited_with("q:processing:w1", "q", src="RIGHT", dest="RIGHT")

    @pytest.mark.asyncio
    async def test_errors_are_translated(self, redis_client):
        redis_client.lpush.side_effect = RedisConnectionError("refused")
        bus = RedisMessageBus(redis_client, consumer_id="w1")

        with pytest.raises(BusError):
            await bus.publish("q", b"x")

    @pytest.mark.asyncio
    async def test_hanging_publish_times_out(self, redis_client):
        async def hang(*args, **kwargs):
            await asyncio.sleep(10)

        redis_client.lpush.side_effect = hang
        bus = RedisMessageBus(redis_client, consumer_id="w1", operation_timeout=0.05)

        with pytest.raises(BusTimeoutError):
            await bus.publish("q", b"x")
