"""Shared test fixtures for QueueBridge."""
import asyncio
import json
from typing import Any, Optional

import pytest

from models.schemas import QueueMessage
from queues.base import MessageHandler, QueueProvider, invoke_handler
from queues.service import QueueService
from gateway.multiplexer import SubscriptionMultiplexer


class InMemoryQueueProvider(QueueProvider):
    """
    Provider double that delivers published messages straight to the
    subscribed handler and records every call.
    """

    name = "memory"

    def __init__(self):
        self.handlers: dict[str, MessageHandler] = {}
        self.published: list[tuple[str, QueueMessage]] = []
        self.subscribe_calls: list[str] = []
        self.unsubscribe_calls: list[str] = []
        self.handler_results: list[Any] = []
        self.fail_publish: Optional[Exception] = None
        self.fail_subscribe: Optional[Exception] = None
        self.fail_unsubscribe: Optional[Exception] = None
        self.connected = False
        self.closed = False

    async def connect(self) -> None:
        self.connected = True

    async def close(self) -> None:
        self.handlers.clear()
        self.closed = True

    async def publish(self, queue_name: str, message: QueueMessage) -> Optional[str]:
        if self.fail_publish:
            raise self.fail_publish
        message_id = f"msg-{len(self.published) + 1}"
        stored = message.model_copy(update={"id": message_id})
        self.published.append((queue_name, stored))
        handler = self.handlers.get(queue_name)
        if handler is not None:
            self.handler_results.append(await invoke_handler(handler, stored))
        return message_id

    async def subscribe(self, queue_name: str, handler: MessageHandler) -> None:
        self.subscribe_calls.append(queue_name)
        if self.fail_subscribe:
            raise self.fail_subscribe
        self.handlers[queue_name] = handler

    async def unsubscribe(self, queue_name: str) -> None:
        self.unsubscribe_calls.append(queue_name)
        if self.fail_unsubscribe:
            raise self.fail_unsubscribe
        self.handlers.pop(queue_name, None)

    def subscribed_queues(self) -> list[str]:
        return sorted(self.handlers)


class RecordingTransport:
    """Transport double: records sends, fails for selected connections."""

    def __init__(self):
        self.sent: list[tuple[str, str, dict[str, Any]]] = []
        self.failing: set[str] = set()

    async def send_event(self, connection_id: str, event: str, data: dict[str, Any]) -> bool:
        if connection_id in self.failing:
            raise ConnectionError("socket closed")
        self.sent.append((connection_id, event, data))
        return True

    def events_for(self, connection_id: str, event: str = "queue:message") -> list[dict[str, Any]]:
        return [d for cid, ev, d in self.sent if cid == connection_id and ev == event]


class FakeWebSocket:
    """Minimal stand-in for a Starlette WebSocket."""

    def __init__(self, fail: bool = False):
        self.frames: list[dict[str, Any]] = []
        self.fail = fail

    async def send_text(self, text: str) -> None:
        if self.fail:
            raise RuntimeError("websocket closed")
        self.frames.append(json.loads(text))

    def events(self, name: str) -> list[dict[str, Any]]:
        return [f["data"] for f in self.frames if f["event"] == name]


async def wait_for(condition, timeout: float = 2.0, interval: float = 0.01) -> None:
    """Poll `condition()` until it is truthy or fail the test."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not condition():
        if asyncio.get_running_loop().time() > deadline:
            pytest.fail("condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def provider() -> InMemoryQueueProvider:
    return InMemoryQueueProvider()


@pytest.fixture
def queue_service(provider) -> QueueService:
    return QueueService(provider)


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def multiplexer(queue_service, transport) -> SubscriptionMultiplexer:
    return SubscriptionMultiplexer(queue_service, transport)
