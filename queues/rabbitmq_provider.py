"""
RabbitMQ Provider — event-driven adapter over AMQP (aio-pika).

One connection, one shared channel, one consumer per subscribed queue.
The broker pushes deliveries to the consumer callback; each delivery is
acked after the handler succeeds and nacked with requeue when it fails.
There is no adapter-level redelivery cap: a dead-letter policy, if
wanted, belongs to the broker configuration.

Connection state:
  DISCONNECTED ──connect()──▶ CONNECTING ──ok──▶ CONNECTED
        ▲                         │ error               │ broker closed
        └─────────────────────────┴─────────────────────┘

Operations that need the channel call `_ensure_channel()`, which joins
an in-flight connect instead of starting a second one. Close observers
only log and mark the state; the next operation reconnects lazily.

Consumers outlive the channel they were started on: each one keeps its
handler, and a reconnect re-declares the queue and consumes it again on
the new channel before any waiting operation proceeds.
"""
from __future__ import annotations

import asyncio
import uuid
import structlog
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import aio_pika

from models.schemas import QueueMessage
from queues.base import MessageHandler, QueueProvider, invoke_handler
from queues.errors import QueueError, QueuePublishError, QueueSubscribeError

logger = structlog.get_logger()


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass
class _Consumer:
    handler: MessageHandler
    queue: Any = None                   # aio_pika.abc.AbstractQueue
    consumer_tag: Optional[str] = None  # None until consuming on the current channel


def decode_headers(headers: Optional[dict[str, Any]]) -> Optional[dict[str, str]]:
    """AMQP headers → flat str map. Scalars are stringified, nested values dropped."""
    if not headers:
        return None
    attributes: dict[str, str] = {}
    for key, value in headers.items():
        if isinstance(value, str):
            attributes[key] = value
        elif isinstance(value, bool):
            attributes[key] = str(value).lower()
        elif isinstance(value, (int, float)):
            attributes[key] = str(value)
        elif isinstance(value, (bytes, bytearray)):
            attributes[key] = bytes(value).decode("utf-8", errors="replace")
    return attributes or None


class RabbitMQQueueProvider(QueueProvider):
    """
    Push-based queue backend on RabbitMQ.

    Args:
        url: AMQP connection URL.
        prefetch_count: unacked deliveries the broker may push per channel.
        connect_fn: coroutine factory returning a connection (tests).
    """

    name = "rabbitmq"

    def __init__(
        self,
        url: str,
        prefetch_count: int = 10,
        connect_fn: Optional[Callable[[str], Awaitable[Any]]] = None,
    ):
        self._url = url
        self._prefetch_count = prefetch_count
        self._connect_fn = connect_fn or aio_pika.connect
        self._connection: Any = None
        self._channel: Any = None
        self._state = ConnectionState.DISCONNECTED
        self._connect_task: Optional[asyncio.Task] = None
        self._closing = False
        self._consumers: dict[str, _Consumer] = {}

    @property
    def state(self) -> ConnectionState:
        return self._state

    # ── Connection lifecycle ──────────────────────────────────

    async def connect(self) -> None:
        await self._ensure_channel()

    def _channel_usable(self) -> bool:
        return (
            self._state is ConnectionState.CONNECTED
            and self._channel is not None
            and not self._channel.is_closed
        )

    async def _ensure_channel(self) -> Any:
        if self._channel_usable():
            return self._channel

        if self._connect_task is None:
            self._state = ConnectionState.CONNECTING
            self._connect_task = asyncio.create_task(self._open(), name="rabbitmq_connect")

        task = self._connect_task
        try:
            return await asyncio.shield(task)
        finally:
            if task.done() and self._connect_task is task:
                self._connect_task = None

    async def _open(self) -> Any:
        self._closing = False
        try:
            connection = self._connection
            if connection is None or connection.is_closed:
                connection = await self._connect_fn(self._url)
                connection.close_callbacks.add(self._on_connection_closed)
                self._connection = connection
            channel = await connection.channel()
            await channel.set_qos(prefetch_count=self._prefetch_count)
        except Exception as e:
            self._state = ConnectionState.DISCONNECTED
            logger.error("rabbitmq_connect_failed", error=str(e))
            raise

        channel.close_callbacks.add(self._on_channel_closed)
        self._channel = channel
        self._state = ConnectionState.CONNECTED
        logger.info("rabbitmq_connected")
        await self._restore_consumers(channel)
        return channel

    async def _restore_consumers(self, channel: Any) -> None:
        """Consume every recorded queue again on a freshly opened channel."""
        for queue_name, consumer in list(self._consumers.items()):
            if consumer.consumer_tag is not None:
                continue
            try:
                queue = await channel.declare_queue(queue_name, durable=True)
                consumer_tag = await queue.consume(
                    self._make_callback(queue_name, consumer.handler), no_ack=False,
                )
            except Exception as e:
                # stays pending; the next reconnect tries again
                logger.error("rabbitmq_restore_failed", queue=queue_name, error=str(e))
                continue
            # unsubscribed while the declare was in flight
            if self._consumers.get(queue_name) is not consumer:
                try:
                    await queue.cancel(consumer_tag)
                except Exception as e:
                    logger.error("rabbitmq_cancel_failed", queue=queue_name, error=str(e))
                continue
            consumer.queue = queue
            consumer.consumer_tag = consumer_tag
            logger.info("rabbitmq_consumer_restored",
                        queue=queue_name, consumer_tag=consumer_tag)

    def _on_connection_closed(self, sender: Any, exc: Optional[BaseException] = None) -> None:
        if sender is not self._connection:
            return
        self._mark_disconnected("connection", exc)
        self._connection = None

    def _on_channel_closed(self, sender: Any, exc: Optional[BaseException] = None) -> None:
        if sender is not self._channel:
            return
        self._mark_disconnected("channel", exc)

    def _mark_disconnected(self, what: str, exc: Optional[BaseException]) -> None:
        self._state = ConnectionState.DISCONNECTED
        self._channel = None
        if self._closing:
            return
        # consumer tags die with the channel; handlers are kept for the reconnect
        for consumer in self._consumers.values():
            consumer.queue = None
            consumer.consumer_tag = None
        logger.warning("rabbitmq_closed",
                       closed=what,
                       error=str(exc) if exc else None,
                       pending_consumers=sorted(self._consumers))

    async def close(self) -> None:
        self._closing = True

        for queue_name, consumer in list(self._consumers.items()):
            if consumer.consumer_tag is None:
                continue
            try:
                await consumer.queue.cancel(consumer.consumer_tag)
            except Exception as e:
                logger.error("rabbitmq_cancel_failed", queue=queue_name, error=str(e))
        self._consumers.clear()

        channel, self._channel = self._channel, None
        if channel is not None:
            try:
                await channel.close()
            except Exception as e:
                logger.error("rabbitmq_channel_close_failed", error=str(e))

        connection, self._connection = self._connection, None
        if connection is not None:
            try:
                await connection.close()
            except Exception as e:
                logger.error("rabbitmq_connection_close_failed", error=str(e))

        self._state = ConnectionState.DISCONNECTED
        logger.info("rabbitmq_disconnected")

    # ── Publish ───────────────────────────────────────────────

    async def publish(self, queue_name: str, message: QueueMessage) -> Optional[str]:
        message_id = uuid.uuid4().hex
        try:
            channel = await self._ensure_channel()
            await channel.declare_queue(queue_name, durable=True)
            # With publisher confirms on, a broker nack raises DeliveryError.
            await channel.default_exchange.publish(
                aio_pika.Message(
                    body=message.body.encode("utf-8"),
                    headers=dict(message.attributes or {}),
                    message_id=message_id,
                    content_type="text/plain",
                    delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
                ),
                routing_key=queue_name,
            )
        except QueueError:
            raise
        except Exception as e:
            logger.error("rabbitmq_publish_failed", queue=queue_name, error=str(e))
            raise QueuePublishError(queue_name, e) from e

        logger.info("message_published", provider=self.name,
                    queue=queue_name, message_id=message_id)
        return message_id

    # ── Subscribe / Unsubscribe ───────────────────────────────

    async def subscribe(self, queue_name: str, handler: MessageHandler) -> None:
        try:
            channel = await self._ensure_channel()
            queue = await channel.declare_queue(queue_name, durable=True)

            if queue_name in self._consumers:
                await self.unsubscribe(queue_name)
                logger.info("rabbitmq_subscription_replaced", queue=queue_name)

            consumer_tag = await queue.consume(
                self._make_callback(queue_name, handler), no_ack=False,
            )
        except QueueError:
            raise
        except Exception as e:
            logger.error("rabbitmq_subscribe_failed", queue=queue_name, error=str(e))
            raise QueueSubscribeError(queue_name, e) from e

        self._consumers[queue_name] = _Consumer(
            handler=handler, queue=queue, consumer_tag=consumer_tag,
        )
        logger.info("queue_subscribed", provider=self.name,
                    queue=queue_name, consumer_tag=consumer_tag)

    async def unsubscribe(self, queue_name: str) -> None:
        consumer = self._consumers.get(queue_name)
        if consumer is None:
            return
        if consumer.consumer_tag is None or not self._channel_usable():
            # channel already gone; the broker dropped the consumer with it
            self._consumers.pop(queue_name, None)
            return
        try:
            await consumer.queue.cancel(consumer.consumer_tag)
        except Exception as e:
            logger.error("rabbitmq_unsubscribe_failed", queue=queue_name, error=str(e))
            raise
        self._consumers.pop(queue_name, None)
        logger.info("queue_unsubscribed", provider=self.name, queue=queue_name)

    def subscribed_queues(self) -> list[str]:
        return sorted(self._consumers)

    # ── Delivery ──────────────────────────────────────────────

    def _make_callback(self, queue_name: str, handler: MessageHandler):
        async def on_message(incoming: Any) -> None:
            await self._deliver(queue_name, handler, incoming)
        return on_message

    async def _deliver(self, queue_name: str, handler: MessageHandler, incoming: Any) -> None:
        if incoming is None:
            # broker-side consumer cancellation, not a message
            logger.warning("rabbitmq_consumer_cancelled_by_broker", queue=queue_name)
            self._consumers.pop(queue_name, None)
            return

        message = QueueMessage(
            id=incoming.message_id or None,
            body=incoming.body.decode("utf-8", errors="replace"),
            attributes=decode_headers(incoming.headers),
        )
        result = await invoke_handler(handler, message)

        try:
            if result.ok:
                await incoming.ack()
            else:
                logger.error("rabbitmq_handler_failed",
                             queue=queue_name,
                             message_id=message.id,
                             error=str(result.error))
                await incoming.nack(requeue=True)
        except Exception as e:
            logger.error("rabbitmq_settle_failed",
                         queue=queue_name,
                         message_id=message.id,
                         error=str(e))
