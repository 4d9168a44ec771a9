"""
Message bus abstraction connecting the crawler stages.

Queues are named and independent. Delivery is at-least-once: a message
consumed with explicit acknowledgement stays owned by the consumer until it
is acked, and goes back to its queue when it is nacked with requeue.
"""

import asyncio
import logging
import os
import socket
from collections import defaultdict, deque
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Set

import redis.asyncio as redis
from redis.exceptions import RedisError, TimeoutError as RedisTimeoutError

from ..errors import BusError, BusTimeoutError


SettleCallback = Callable[['Delivery', bool], Awaitable[None]]
Handler = Callable[['Delivery'], Awaitable[None]]


class Delivery:
    """A consumed message together with its acknowledgement handle."""

    def __init__(self, queue: str, body: bytes, auto_ack: bool = True,
                 settle: Optional[SettleCallback] = None):
        self.queue = queue
        self.body = body
        self.auto_ack = auto_ack
        self._settle = settle
        self._outcome: Optional[str] = 'ack' if auto_ack else None

    @property
    def settled(self) -> bool:
        return self._outcome is not None

    @property
    def outcome(self) -> Optional[str]:
        """'ack', 'requeue', 'reject' or None while unsettled."""
        return self._outcome

    async def ack(self):
        await self._finish('ack', requeue=False)

    async def nack(self, requeue: bool = True):
        await self._finish('requeue' if requeue else 'reject', requeue=requeue)

    async def reject(self):
        """Negative-acknowledge without requeue; the message is dropped."""
        await self.nack(requeue=False)

    async def _finish(self, outcome: str, requeue: bool):
        if self.settled:
            return
        self._outcome = outcome
        if self._settle is not None:
            await self._settle(self, requeue)


class MessageBus:
    """Base class for message bus backends."""

    # Consecutive receive failures tolerated before the consumer gives up
    max_receive_failures = 5

    def __init__(self, poll_interval: float = 1.0):
        self.poll_interval = poll_interval
        self.logger = logging.getLogger(__name__)

    async def publish(self, queue: str, body: bytes):
        """Publish a message body to a queue (fire-and-forget)."""
        raise NotImplementedError

    async def receive(self, queue: str, auto_ack: bool,
                      timeout: float) -> Optional[Delivery]:
        """Wait up to ``timeout`` seconds for one delivery."""
        raise NotImplementedError

    async def recover(self, queue: str):
        """Return messages left unacknowledged by a previous run to the queue."""
        pass

    async def close(self):
        """Release backend connections."""
        pass

    async def consume(self, queue: str, handler: Handler, *, auto_ack: bool = False,
                      prefetch: int = 1, stop_event: Optional[asyncio.Event] = None):
        """
        Consume ``queue`` until ``stop_event`` is set.

        Each delivery is handled in its own task. At most ``prefetch``
        deliveries are in flight: with explicit acknowledgement that is the
        number of unacknowledged messages, with auto-ack it bounds handler
        concurrency.

        Args:
            queue: Queue name
            handler: Coroutine called once per delivery
            auto_ack: Settle deliveries on receipt
            prefetch: Maximum number of in-flight deliveries
            stop_event: Event that ends the consumer loop
        """
        if prefetch < 1:
            raise ValueError("prefetch must be at least 1")

        stop_event = stop_event or asyncio.Event()
        if not auto_ack:
            await self.recover(queue)

        slots = asyncio.Semaphore(prefetch)
        in_flight: Set[asyncio.Task] = set()
        failures = 0

        self.logger.info(f"Consuming from {queue} (auto_ack={auto_ack}, prefetch={prefetch})")

        try:
            while not stop_event.is_set():
                await slots.acquire()
                try:
                    delivery = await self.receive(queue, auto_ack, self.poll_interval)
                except BusError as e:
                    slots.release()
                    failures += 1
                    if failures >= self.max_receive_failures:
                        self.logger.error(f"Giving up on {queue} after {failures} receive failures")
                        raise
                    self.logger.warning(f"Receive from {queue} failed ({failures}): {e}")
                    await asyncio.sleep(self.poll_interval)
                    continue

                failures = 0
                if delivery is None:
                    slots.release()
                    continue

                task = asyncio.create_task(self._dispatch(handler, delivery, slots))
                in_flight.add(task)
                task.add_done_callback(in_flight.discard)
        finally:
            if in_flight:
                self.logger.info(f"Waiting for {len(in_flight)} in-flight messages on {queue}")
                await asyncio.gather(*in_flight, return_exceptions=True)
            self.logger.info(f"Stopped consuming from {queue}")

    async def _dispatch(self, handler: Handler, delivery: Delivery,
                        slots: asyncio.Semaphore):
        try:
            try:
                await handler(delivery)
            except Exception as e:
                self.logger.error(f"Handler failed for message on {delivery.queue}: {e}",
                                  exc_info=True)
                if not delivery.settled:
                    await delivery.nack(requeue=True)
            else:
                if not delivery.settled:
                    await delivery.ack()
        except BusError as e:
            self.logger.error(f"Could not settle message on {delivery.queue}: {e}")
        finally:
            slots.release()


class RedisMessageBus(MessageBus):
    """
    Message bus on Redis lists.

    Publishing pushes on the left of the queue list and consumers pop from
    the right. Explicit-ack consumers move each message atomically into a
    per-consumer processing list and remove it from there on ack.
    """

    def __init__(self, redis_client: redis.Redis, consumer_id: Optional[str] = None,
                 operation_timeout: float = 5.0, poll_interval: float = 1.0):
        super().__init__(poll_interval=poll_interval)
        self.redis_client = redis_client
        self.consumer_id = consumer_id or f"{socket.gethostname()}-{os.getpid()}"
        self.operation_timeout = operation_timeout

    def processing_key(self, queue: str) -> str:
        return f"{queue}:processing:{self.consumer_id}"

    async def _call(self, awaitable: Awaitable, what: str, timeout: Optional[float] = None):
        try:
            return await asyncio.wait_for(awaitable, timeout or self.operation_timeout)
        except (asyncio.TimeoutError, RedisTimeoutError) as e:
            raise BusTimeoutError(f"Bus {what} timed out") from e
        except RedisError as e:
            raise BusError(f"Bus {what} failed: {e}") from e

    async def publish(self, queue: str, body: bytes):
        await self._call(self.redis_client.lpush(queue, body), f"publish to {queue}")

    async def receive(self, queue: str, auto_ack: bool,
                      timeout: float) -> Optional[Delivery]:
        wait = timeout + self.operation_timeout

        if auto_ack:
            reply = await self._call(
                self.redis_client.brpop([queue], timeout=timeout),
                f"receive from {queue}", wait
            )
            if reply is None:
                return None
            return Delivery(queue, reply[1], auto_ack=True)

        body = await self._call(
            self.redis_client.blmove(queue, self.processing_key(queue), timeout,
                                     src="RIGHT", dest="LEFT"),
            f"receive from {queue}", wait
        )
        if body is None:
            return None
        return Delivery(queue, body, auto_ack=False, settle=self._settle)

    async def _settle(self, delivery: Delivery, requeue: bool):
        processing = self.processing_key(delivery.queue)

        async def settle():
            async with self.redis_client.pipeline(transaction=True) as pipe:
                pipe.lrem(processing, 1, delivery.body)
                if requeue:
                    pipe.rpush(delivery.queue, delivery.body)
                await pipe.execute()

        await self._call(settle(), f"settle on {delivery.queue}")

    async def recover(self, queue: str):
        processing = self.processing_key(queue)
        recovered = 0
        while True:
            body = await self._call(
                self.redis_client.lmove(processing, queue, src="RIGHT", dest="RIGHT"),
                f"recover on {queue}"
            )
            if body is None:
                break
            recovered += 1

        if recovered:
            self.logger.warning(f"Returned {recovered} unacknowledged messages to {queue}")

    async def close(self):
        await self.redis_client.aclose()


class MemoryMessageBus(MessageBus):
    """In-process message bus for tests and single-process crawls."""

    def __init__(self, poll_interval: float = 0.05):
        super().__init__(poll_interval=poll_interval)
        self._queues: Dict[str, Deque[bytes]] = defaultdict(deque)
        self._unacked: Dict[str, int] = defaultdict(int)
        self._condition = asyncio.Condition()

    async def publish(self, queue: str, body: bytes):
        async with self._condition:
            self._queues[queue].append(bytes(body))
            self._condition.notify_all()

    async def receive(self, queue: str, auto_ack: bool,
                      timeout: float) -> Optional[Delivery]:
        async with self._condition:
            if not self._queues[queue]:
                try:
                    await asyncio.wait_for(
                        self._condition.wait_for(lambda: bool(self._queues[queue])),
                        timeout
                    )
                except asyncio.TimeoutError:
                    return None

            body = self._queues[queue].popleft()

        if auto_ack:
            return Delivery(queue, body, auto_ack=True)

        self._unacked[queue] += 1
        return Delivery(queue, body, auto_ack=False, settle=self._settle)

    async def _settle(self, delivery: Delivery, requeue: bool):
        async with self._condition:
            self._unacked[delivery.queue] -= 1
            if requeue:
                self._queues[delivery.queue].appendleft(delivery.body)
                self._condition.notify_all()

    def pending(self, queue: str) -> List[bytes]:
        """Messages waiting in ``queue``, oldest first."""
        return list(self._queues[queue])

    def unacked(self, queue: str) -> int:
        """Number of delivered but unsettled messages for ``queue``."""
        return self._unacked[queue]
