"""Redis-backed broker using the reliable-queue pattern.

Publishing pushes onto ``<prefix>:<queue>``. A consumer atomically moves the
oldest entry into ``<prefix>:<queue>:processing``; ack removes it from there,
nack either pushes it to the back of the queue for redelivery or parks it in ``<prefix>:<queue>:dead``.
Delivery counts live in the ``<prefix>:<queue>:deliveries`` hash, keyed by body
like the list entries themselves, until the message is acked or dead-lettered.
Entries still in a processing list on connect were never acknowledged and
are requeued.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from taskrelay.core.errors import BrokerUnavailable
from taskrelay.messaging.broker import Broker, Delivery

logger = logging.getLogger(__name__)


class RedisBroker(Broker):
    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        *,
        client: Optional[Any] = None,
        key_prefix: str = "taskrelay",
        poll_interval: float = 0.5,
        max_deliveries: int = 3,
    ) -> None:
        self._url = url
        self._client = client
        self._owns_client = client is None
        self._prefix = key_prefix
        self.poll_interval = poll_interval
        self.max_deliveries = max_deliveries
        self._connected = False
        self._queues: set[str] = set()

    @property
    def connected(self) -> bool:
        return self._connected

    def _key(self, queue: str, suffix: str = "") -> str:
        key = f"{self._prefix}:{queue}"
        return f"{key}:{suffix}" if suffix else key

    async def connect(self) -> None:
        if self._client is None:
            self._client = aioredis.from_url(self._url)
        try:
            await self._client.ping()
        except (RedisError, OSError) as exc:
            raise BrokerUnavailable(f"Cannot reach Redis at {self._url}: {exc}") from exc
        self._connected = True
        for queue in self._queues:
            await self._recover(queue)
        logger.info("Connected to Redis broker at %s", self._url)

    async def close(self) -> None:
        self._connected = False
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
        logger.info("Redis broker connection closed")

    async def declare_queue(self, name: str) -> None:
        self._ensure_connected()
        if name not in self._queues:
            self._queues.add(name)
            await self._recover(name)

    async def _recover(self, queue: str) -> None:
        moved = 0
        try:
            while await self._client.lmove(self._key(queue, "processing"), self._key(queue), "LEFT", "RIGHT"):
                moved += 1
        except (RedisError, OSError) as exc:
            raise self._lost(exc) from exc
        if moved:
            logger.warning("Requeued %d unacknowledged messages on %s", moved, queue)

    async def publish(self, queue: str, body: bytes) -> None:
        self._ensure_connected()
        try:
            await self._client.lpush(self._key(queue), body)
        except (RedisError, OSError) as exc:
            raise self._lost(exc) from exc

    async def get(self, queue: str, timeout: float) -> Optional[Delivery]:
        self._ensure_connected()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            try:
                body = await self._client.lmove(
                    self._key(queue), self._key(queue, "processing"), "RIGHT", "LEFT"
                )
            except (RedisError, OSError) as exc:
                raise self._lost(exc) from exc
            if body is not None:
                if isinstance(body, str):
                    body = body.encode("utf-8")
                try:
                    count = await self._client.hincrby(self._key(queue, "deliveries"), body, 1)
                except (RedisError, OSError) as exc:
                    raise self._lost(exc) from exc
                return Delivery(queue=queue, body=body, tag=str(uuid.uuid4()), delivery_count=int(count))
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def ack(self, delivery: Delivery) -> None:
        self._ensure_connected()
        try:
            await self._client.lrem(self._key(delivery.queue, "processing"), 1, delivery.body)
            await self._client.hdel(self._key(delivery.queue, "deliveries"), delivery.body)
        except (RedisError, OSError) as exc:
            raise self._lost(exc) from exc

    async def nack(self, delivery: Delivery, requeue: bool) -> None:
        self._ensure_connected()
        try:
            removed = await self._client.lrem(self._key(delivery.queue, "processing"), 1, delivery.body)
            if not removed:
                return
            if requeue:
                await self._client.lpush(self._key(delivery.queue), delivery.body)
            else:
                await self._client.lpush(self._key(delivery.queue, "dead"), delivery.body)
                await self._client.hdel(self._key(delivery.queue, "deliveries"), delivery.body)
        except (RedisError, OSError) as exc:
            raise self._lost(exc) from exc

    async def queue_lengths(self, queue: str) -> Dict[str, int]:
        self._ensure_connected()
        return {
            "ready": await self._client.llen(self._key(queue)),
            "processing": await self._client.llen(self._key(queue, "processing")),
            "dead": await self._client.llen(self._key(queue, "dead")),
        }

    def _lost(self, exc: BaseException) -> BrokerUnavailable:
        self._connected = False
        logger.error("Redis broker connection lost: %s", exc)
        return BrokerUnavailable(f"Redis connection lost: {exc}")

    def _ensure_connected(self) -> None:
        if not self._connected or self._client is None:
            raise BrokerUnavailable("Redis broker is not connected")
