"""
Subscription Multiplexer — many connections, one backend subscription per queue.

State:
  SubscriptionRegistry._interests   connection id → set of queue names
  SubscriptionRegistry._handlers    queue name    → FanOutHandler

  Invariant: a queue has a handler iff at least one connection's
  interest set contains it.

Per connection:  connected ──subscribe──▶ connected-with-interests
                     └──────────── disconnect ────────────▶ gone
Per queue:       unregistered ──first interest──▶ registered
                     ▲                                │
                     └────────── last interest gone ──┘

All registry reads and writes happen between awaits on the single event
loop, so no locking is needed for them. Backend subscribe/unsubscribe
calls for the same queue are serialized by a per-queue lock so a late
teardown can never cancel a newer registration. A lock entry lives only
while some subscribe or teardown for that queue is holding or awaiting it.
"""
from __future__ import annotations

import asyncio
import structlog
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Protocol

from models.schemas import GatewayEvent, QueueMessage
from queues.service import QueueService

logger = structlog.get_logger()


class SubscribeOutcome(str, Enum):
    SUBSCRIBED = "subscribed"
    ALREADY_SUBSCRIBED = "already_subscribed"


class Transport(Protocol):
    async def send_event(self, connection_id: str, event: str, data: dict[str, Any]) -> bool:
        ...


@dataclass
class _QueueLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


# ══════════════════════════════════════════════════════════════
#  REGISTRY
# ══════════════════════════════════════════════════════════════

class SubscriptionRegistry:
    """Connection interest sets plus the per-queue handler map."""

    def __init__(self):
        self._interests: dict[str, set[str]] = {}
        self._handlers: dict[str, FanOutHandler] = {}

    # ── Connections ───────────────────────────────────────────

    def add_connection(self, connection_id: str) -> None:
        self._interests.setdefault(connection_id, set())

    def remove_connection(self, connection_id: str) -> set[str]:
        return self._interests.pop(connection_id, set())

    def has_connection(self, connection_id: str) -> bool:
        return connection_id in self._interests

    def connections(self) -> list[str]:
        return list(self._interests)

    # ── Interests ─────────────────────────────────────────────

    def interests(self, connection_id: str) -> frozenset[str]:
        return frozenset(self._interests.get(connection_id, ()))

    def is_subscribed(self, connection_id: str, queue_name: str) -> bool:
        return queue_name in self._interests.get(connection_id, ())

    def add_interest(self, connection_id: str, queue_name: str) -> None:
        self._interests.setdefault(connection_id, set()).add(queue_name)

    def remove_interest(self, connection_id: str, queue_name: str) -> bool:
        queues = self._interests.get(connection_id)
        if not queues or queue_name not in queues:
            return False
        queues.discard(queue_name)
        return True

    def subscribers(self, queue_name: str) -> list[str]:
        """Connections interested in `queue_name` right now."""
        return [cid for cid, queues in self._interests.items() if queue_name in queues]

    def has_subscribers(self, queue_name: str) -> bool:
        return any(queue_name in queues for queues in self._interests.values())

    # ── Handlers ──────────────────────────────────────────────

    def handler(self, queue_name: str) -> Optional[FanOutHandler]:
        return self._handlers.get(queue_name)

    def set_handler(self, queue_name: str, handler: FanOutHandler) -> None:
        self._handlers[queue_name] = handler

    def pop_handler(self, queue_name: str) -> Optional[FanOutHandler]:
        return self._handlers.pop(queue_name, None)

    def registered_queues(self) -> list[str]:
        return sorted(self._handlers)


# ══════════════════════════════════════════════════════════════
#  FAN-OUT HANDLER
# ══════════════════════════════════════════════════════════════

class FanOutHandler:
    """
    The one handler registered with the queue service for a queue.

    Holds only the queue name plus references to the registry and the
    transport; recipients are looked up at delivery time.
    """

    def __init__(self, queue_name: str, registry: SubscriptionRegistry, transport: Transport):
        self.queue_name = queue_name
        self.registry = registry
        self.transport = transport

    async def __call__(self, message: QueueMessage) -> int:
        payload = {"queueName": self.queue_name, "message": message.to_event()}
        delivered = 0
        for connection_id in self.registry.subscribers(self.queue_name):
            # an earlier send may have yielded long enough for this one to leave
            if not self.registry.is_subscribed(connection_id, self.queue_name):
                continue
            try:
                if await self.transport.send_event(
                    connection_id, GatewayEvent.MESSAGE.value, payload,
                ):
                    delivered += 1
            except Exception as e:
                logger.warning("fanout_delivery_failed",
                               queue=self.queue_name,
                               connection_id=connection_id,
                               error=str(e))
        logger.debug("fanout_complete", queue=self.queue_name,
                     message_id=message.id, delivered=delivered)
        return delivered


# ══════════════════════════════════════════════════════════════
#  MULTIPLEXER
# ══════════════════════════════════════════════════════════════

class SubscriptionMultiplexer:
    """
    Maps connection-level subscriptions onto single backend subscriptions.

    Usage:
        mux = SubscriptionMultiplexer(queue_service, connection_manager)
        mux.on_connect(cid)
        await mux.subscribe(cid, "orders")
        mux.unsubscribe(cid, "orders")
        mux.on_disconnect(cid)
        await mux.drain()           # wait for background teardowns
    """

    def __init__(
        self,
        queue_service: QueueService,
        transport: Transport,
        registry: Optional[SubscriptionRegistry] = None,
    ):
        self.queue_service = queue_service
        self.transport = transport
        self.registry = registry or SubscriptionRegistry()
        self._queue_locks: dict[str, _QueueLock] = {}
        self._background: set[asyncio.Task] = set()

    @asynccontextmanager
    async def _queue_lock(self, queue_name: str):
        """Hold the per-queue lock; the entry is dropped once nobody uses it."""
        entry = self._queue_locks.get(queue_name)
        if entry is None:
            entry = self._queue_locks[queue_name] = _QueueLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._queue_locks.get(queue_name) is entry:
                del self._queue_locks[queue_name]

    # ── Connection lifecycle ──────────────────────────────────

    def on_connect(self, connection_id: str) -> None:
        self.registry.add_connection(connection_id)
        logger.info("client_connected", connection_id=connection_id)

    def on_disconnect(self, connection_id: str) -> list[str]:
        """Unsubscribe the connection from everything, then forget it."""
        queues = sorted(self.registry.interests(connection_id))
        for queue_name in queues:
            self.unsubscribe(connection_id, queue_name)
        self.registry.remove_connection(connection_id)
        logger.info("client_disconnected", connection_id=connection_id, queues=queues)
        return queues

    # ── Subscribe ─────────────────────────────────────────────

    async def subscribe(self, connection_id: str, queue_name: str) -> SubscribeOutcome:
        if self.registry.is_subscribed(connection_id, queue_name):
            return SubscribeOutcome.ALREADY_SUBSCRIBED

        was_connected = self.registry.has_connection(connection_id)

        # Raises on backend failure; the interest set stays untouched.
        await self._ensure_registered(queue_name)

        if was_connected and not self.registry.has_connection(connection_id):
            # disconnected while the backend subscription was being set up
            self._release_if_unused(queue_name)
            return SubscribeOutcome.SUBSCRIBED

        self.registry.add_interest(connection_id, queue_name)
        logger.info("client_subscribed", connection_id=connection_id, queue=queue_name)
        return SubscribeOutcome.SUBSCRIBED

    async def _ensure_registered(self, queue_name: str) -> None:
        async with self._queue_lock(queue_name):
            if self.registry.handler(queue_name) is not None:
                return
            handler = FanOutHandler(queue_name, self.registry, self.transport)
            await self.queue_service.subscribe(queue_name, handler)
            self.registry.set_handler(queue_name, handler)
            logger.info("queue_subscription_created", queue=queue_name)

    # ── Unsubscribe ───────────────────────────────────────────

    def unsubscribe(self, connection_id: str, queue_name: str) -> bool:
        """
        Drop one interest. Returns False when there was nothing to drop;
        either way the caller treats it as success.
        """
        if not self.registry.remove_interest(connection_id, queue_name):
            return False
        logger.info("client_unsubscribed", connection_id=connection_id, queue=queue_name)
        self._release_if_unused(queue_name)
        return True

    def _release_if_unused(self, queue_name: str) -> None:
        if self.registry.has_subscribers(queue_name):
            return
        if self.registry.pop_handler(queue_name) is None:
            return
        task = asyncio.create_task(
            self._teardown(queue_name), name=f"queue_teardown:{queue_name}",
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _teardown(self, queue_name: str) -> None:
        async with self._queue_lock(queue_name):
            if self.registry.handler(queue_name) is not None:
                # re-registered before this teardown got its turn
                return
            try:
                await self.queue_service.unsubscribe(queue_name)
                logger.info("queue_subscription_removed", queue=queue_name)
            except Exception as e:
                logger.error("queue_unsubscribe_failed", queue=queue_name, error=str(e))

    # ── Publish ───────────────────────────────────────────────

    async def publish(self, queue_name: str, message: QueueMessage) -> Optional[str]:
        return await self.queue_service.publish(queue_name, message)

    # ── Introspection / shutdown ──────────────────────────────

    def registered_queues(self) -> list[str]:
        return self.registry.registered_queues()

    async def drain(self) -> None:
        """Wait for pending background teardowns."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
