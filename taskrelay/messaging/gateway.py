"""Message gateway: broker connection lifecycle, inbound dispatch and outbound publishing."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from taskrelay.core.errors import BrokerUnavailable, MessageValidationError, PublishTimeout
from taskrelay.core.messages import IncomingMessage, Message, OutgoingMessage
from taskrelay.core.models import HealthState, HealthStatus
from taskrelay.messaging.broker import Broker, Delivery

logger = logging.getLogger(__name__)

ORCHESTRATION_HANDLER = "orchestration"

MessageHandler = Callable[[IncomingMessage], Awaitable[None]]


class MessageGateway:
    """Owns the broker connection and the single inbound handler slot."""

    def __init__(
        self,
        broker: Broker,
        *,
        incoming_queue: str = "agent_incoming",
        outgoing_queue: str = "agent_outgoing",
        publish_timeout: float = 5.0,
        reconnect_delay: float = 5.0,
        connect_timeout: float = 10.0,
    ) -> None:
        self._broker = broker
        self.incoming_queue = incoming_queue
        self.outgoing_queue = outgoing_queue
        self._publish_timeout = publish_timeout
        self._reconnect_delay = reconnect_delay
        self._connect_timeout = connect_timeout

        self._handlers: Dict[str, MessageHandler] = {}
        self._connected = asyncio.Event()
        self._listening = False
        self._closing = False
        self._consumer: Optional["asyncio.Task[None]"] = None
        self._reconnect_task: Optional["asyncio.Task[None]"] = None

    @property
    def is_connected(self) -> bool:
        return self._connected.is_set() and self._broker.connected

    @property
    def is_listening(self) -> bool:
        return self._listening and self._consumer is not None and not self._consumer.done()

    async def connect(self) -> None:
        """Connect to the broker and declare the inbound/outbound queues."""
        self._closing = False
        try:
            await asyncio.wait_for(self._broker.connect(), timeout=self._connect_timeout)
        except asyncio.TimeoutError:
            raise BrokerUnavailable(f"Broker connection timed out after {self._connect_timeout:g}s") from None

        await self._broker.declare_queue(self.incoming_queue)
        await self._broker.declare_queue(self.outgoing_queue)
        self._connected.set()
        logger.info(
            "Message gateway connected (incoming=%s, outgoing=%s)", self.incoming_queue, self.outgoing_queue
        )
        if self._listening:
            self._start_consumer()

    async def wait_for_connection(self, timeout: Optional[float] = None) -> None:
        await asyncio.wait_for(self._connected.wait(), timeout=timeout)

    async def disconnect(self) -> None:
        self._closing = True
        self._listening = False
        tasks = [task for task in (self._consumer, self._reconnect_task) if task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._consumer = None
        self._reconnect_task = None
        self._connected.clear()
        await self._broker.close()
        logger.info("Message gateway disconnected")

    def register_handler(self, name: str, handler: MessageHandler) -> None:
        self._handlers[name] = handler
        logger.info("Registered message handler: %s", name)

    def unregister_handler(self, name: str) -> bool:
        removed = self._handlers.pop(name, None) is not None
        if removed:
            logger.info("Unregistered message handler: %s", name)
        return removed

    async def start_listening(self) -> None:
        """Consume the inbound queue one message at a time."""
        if not self.is_connected:
            raise BrokerUnavailable("Cannot listen before the broker connection is established")
        self._listening = True
        self._start_consumer()
        logger.info("Listening for messages on %s", self.incoming_queue)

    def _start_consumer(self) -> None:
        if self._consumer is not None and not self._consumer.done():
            return
        self._consumer = asyncio.create_task(self._consume(), name="message-gateway-consumer")

    async def _consume(self) -> None:
        try:
            await self._broker.consume(self.incoming_queue, self._on_delivery, prefetch=1)
        except BrokerUnavailable as exc:
            logger.error("Broker connection lost: %s", exc)
            self._connection_lost()

    def _connection_lost(self) -> None:
        self._connected.clear()
        if self._closing:
            return
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.create_task(self._reconnect(), name="message-gateway-reconnect")

    async def _reconnect(self) -> None:
        attempt = 0
        while not self._closing:
            attempt += 1
            await asyncio.sleep(self._reconnect_delay)
            try:
                await self.connect()
            except BrokerUnavailable as exc:
                logger.warning("Reconnection attempt %d failed: %s", attempt, exc)
                continue
            logger.info("Reconnected to broker after %d attempt(s)", attempt)
            return

    async def _on_delivery(self, delivery: Delivery) -> None:
        try:
            message = IncomingMessage.parse(delivery.body)
        except MessageValidationError as exc:
            logger.error("Rejecting malformed message from %s: %s", delivery.queue, exc)
            await self._broker.nack(delivery, requeue=False)
            return

        if message.is_response:
            logger.debug("Skipping response message %s", message.id)
            await self._broker.ack(delivery)
            return

        handler = self._handlers.get(ORCHESTRATION_HANDLER)
        if handler is None:
            logger.warning("No handler registered for message %s; rejecting", message.id)
            await self._broker.nack(delivery, requeue=False)
            return

        try:
            await handler(message)
        except Exception as exc:  # noqa: BLE001
            requeue = delivery.delivery_count < self._broker.max_deliveries
            logger.error(
                "Handler failed for message %s (delivery %d/%d): %s",
                message.id,
                delivery.delivery_count,
                self._broker.max_deliveries,
                exc,
                exc_info=True,
            )
            if not requeue:
                logger.error("Dead-lettering message %s after %d deliveries", message.id, delivery.delivery_count)
            await self._broker.nack(delivery, requeue=requeue)
            return
        await self._broker.ack(delivery)

    async def send_message(self, message: Union[Message, Dict[str, Any]]) -> None:
        """Validate and publish a reply on the outgoing queue."""
        await self._publish(self.outgoing_queue, self._validated(OutgoingMessage, message))

    async def submit(self, message: Union[Message, Dict[str, Any]]) -> None:
        """Publish a request onto the incoming queue."""
        await self._publish(self.incoming_queue, self._validated(IncomingMessage, message))

    @staticmethod
    def _validated(schema: type, message: Union[Message, Dict[str, Any]]) -> Message:
        if isinstance(message, Message):
            message = message.model_dump()
        return schema.parse(message)

    async def _publish(self, queue: str, message: Message) -> None:
        if not self.is_connected:
            raise BrokerUnavailable("Message gateway is not connected")
        try:
            await asyncio.wait_for(self._broker.publish(queue, message.to_json()), timeout=self._publish_timeout)
        except asyncio.TimeoutError:
            logger.error("Publish of %s to %s timed out", message.id, queue)
            raise PublishTimeout(message.id, self._publish_timeout) from None
        except BrokerUnavailable:
            self._connection_lost()
            raise
        logger.info("Message sent to %s: %s", queue, message.id)

    def is_healthy(self) -> bool:
        return self.is_connected

    def health_status(self) -> HealthStatus:
        return HealthStatus(
            module="MessageGateway",
            status=HealthState.HEALTHY if self.is_healthy() else HealthState.UNHEALTHY,
            details=(
                f"Connected: {self.is_connected}, Listening: {self.is_listening}, "
                f"Handlers: {len(self._handlers)}"
            ),
        )
