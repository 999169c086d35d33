"""Broker abstraction with explicit acknowledgement, plus an in-memory backend."""
from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, Dict, List, Optional, Set, Tuple

from taskrelay.core.errors import BrokerUnavailable

logger = logging.getLogger(__name__)

DeliveryHandler = Callable[["Delivery"], Awaitable[None]]


@dataclass(slots=True)
class Delivery:
    """A message handed to a consumer; it stays unacknowledged until ack/nack.

    ``delivery_count`` includes this delivery, so a first delivery has 1.
    """

    queue: str
    body: bytes
    tag: str
    delivery_count: int = 1

    @property
    def redelivered(self) -> bool:
        return self.delivery_count > 1


class Broker(ABC):
    """Durable named queues with at-least-once delivery."""

    poll_interval: float = 1.0
    # deliveries allowed before a failing message is dead-lettered
    max_deliveries: int = 3

    @property
    @abstractmethod
    def connected(self) -> bool:
        ...

    @abstractmethod
    async def connect(self) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    @abstractmethod
    async def declare_queue(self, name: str) -> None:
        ...

    @abstractmethod
    async def publish(self, queue: str, body: bytes) -> None:
        ...

    @abstractmethod
    async def get(self, queue: str, timeout: float) -> Optional[Delivery]:
        """Take the next message, or ``None`` if nothing arrived within ``timeout``."""

    @abstractmethod
    async def ack(self, delivery: Delivery) -> None:
        ...

    @abstractmethod
    async def nack(self, delivery: Delivery, requeue: bool) -> None:
        ...

    async def consume(self, queue: str, handler: DeliveryHandler, *, prefetch: int = 1) -> None:
        """Feed deliveries to ``handler`` with at most ``prefetch`` in flight.

        Runs until cancelled or until the connection drops, in which case
        ``BrokerUnavailable`` propagates.
        """
        slots = asyncio.Semaphore(max(1, prefetch))
        inflight: Set["asyncio.Task[None]"] = set()
        try:
            while True:
                await slots.acquire()
                try:
                    delivery = await self.get(queue, timeout=self.poll_interval)
                except BaseException:
                    slots.release()
                    raise
                if delivery is None:
                    slots.release()
                    continue
                task = asyncio.create_task(self._dispatch(handler, delivery, slots))
                inflight.add(task)
                task.add_done_callback(inflight.discard)
        finally:
            if inflight:
                await asyncio.gather(*inflight, return_exceptions=True)

    async def _dispatch(self, handler: DeliveryHandler, delivery: Delivery, slots: asyncio.Semaphore) -> None:
        try:
            await handler(delivery)
        except Exception:  # noqa: BLE001
            logger.exception("Unhandled error processing delivery %s from %s", delivery.tag, delivery.queue)
            if self.connected:
                await self.nack(delivery, requeue=delivery.delivery_count < self.max_deliveries)
        finally:
            slots.release()


@dataclass(slots=True)
class _Entry:
    body: bytes
    deliveries: int = 0


class InMemoryBroker(Broker):
    """Process-local broker used for development and tests.

    Unacknowledged deliveries go back to the head of their queue when the
    connection drops, mirroring redelivery on a real broker. Each queued
    entry keeps its own delivery count.
    """

    poll_interval = 0.1

    def __init__(self, *, max_deliveries: int = 3) -> None:
        self.max_deliveries = max_deliveries
        self._queues: Dict[str, Deque[_Entry]] = defaultdict(deque)
        self._unacked: Dict[str, Tuple[Delivery, _Entry]] = {}
        self._dead: Dict[str, List[bytes]] = defaultdict(list)
        self._cond = asyncio.Condition()
        self._connected = False
        self._failing_connects = 0
        self.connect_attempts = 0

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self.connect_attempts += 1
        if self._failing_connects > 0:
            self._failing_connects -= 1
            raise BrokerUnavailable("In-memory broker refused connection")
        self._connected = True
        logger.info("Connected to in-memory broker")

    async def close(self) -> None:
        await self._drop(reason="closed")

    async def simulate_disconnect(self) -> None:
        await self._drop(reason="connection lost")

    def fail_next_connects(self, count: int) -> None:
        self._failing_connects = count

    async def _drop(self, reason: str) -> None:
        async with self._cond:
            if not self._connected:
                return
            self._connected = False
            for delivery, entry in reversed(list(self._unacked.values())):
                self._queues[delivery.queue].appendleft(entry)
            self._unacked.clear()
            self._cond.notify_all()
        logger.info("In-memory broker %s", reason)

    async def declare_queue(self, name: str) -> None:
        self._ensure_connected()
        _ = self._queues[name]

    async def publish(self, queue: str, body: bytes) -> None:
        self._ensure_connected()
        async with self._cond:
            self._queues[queue].append(_Entry(body))
            self._cond.notify_all()

    async def get(self, queue: str, timeout: float) -> Optional[Delivery]:
        self._ensure_connected()
        async with self._cond:
            try:
                await asyncio.wait_for(
                    self._cond.wait_for(lambda: bool(self._queues[queue]) or not self._connected),
                    timeout=timeout,
                )
            except asyncio.TimeoutError:
                return None
            self._ensure_connected()
            entry = self._queues[queue].popleft()
            entry.deliveries += 1
            delivery = Delivery(queue=queue, body=entry.body, tag=str(uuid.uuid4()), delivery_count=entry.deliveries)
            self._unacked[delivery.tag] = (delivery, entry)
            return delivery

    async def ack(self, delivery: Delivery) -> None:
        self._ensure_connected()
        self._unacked.pop(delivery.tag, None)

    async def nack(self, delivery: Delivery, requeue: bool) -> None:
        self._ensure_connected()
        held = self._unacked.pop(delivery.tag, None)
        if held is None:
            return
        _, entry = held
        async with self._cond:
            if requeue:
                self._queues[delivery.queue].append(entry)
                self._cond.notify_all()
            else:
                self._dead[delivery.queue].append(entry.body)

    def pending(self, queue: str) -> List[bytes]:
        return [entry.body for entry in self._queues[queue]]

    def dead_letters(self, queue: str) -> List[bytes]:
        return list(self._dead[queue])

    def unacked_count(self) -> int:
        return len(self._unacked)

    def _ensure_connected(self) -> None:
        if not self._connected:
            raise BrokerUnavailable("In-memory broker is not connected")
