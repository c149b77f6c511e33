"""
Queue Service — the uniform facade the rest of the application talks to.

Exactly one provider is bound at construction; callers never learn
which backend is behind it.
"""
from __future__ import annotations

import structlog
from typing import Optional

from models.schemas import QueueMessage
from queues.base import MessageHandler, QueueProvider

logger = structlog.get_logger()


class QueueService:
    """
    Usage:
        service = QueueService(create_queue_provider(settings.queue))
        await service.connect()
        await service.subscribe("orders", handler)
        await service.publish("orders", QueueMessage(body="hello"))
        await service.unsubscribe("orders")
        await service.close()
    """

    def __init__(self, provider: QueueProvider):
        self._provider = provider

    @property
    def provider(self) -> QueueProvider:
        return self._provider

    @property
    def provider_name(self) -> str:
        return self._provider.name or type(self._provider).__name__

    async def connect(self) -> None:
        await self._provider.connect()
        logger.info("queue_service_connected", provider=self.provider_name)

    async def close(self) -> None:
        await self._provider.close()
        logger.info("queue_service_closed", provider=self.provider_name)

    async def publish(self, queue_name: str, message: QueueMessage) -> Optional[str]:
        return await self._provider.publish(queue_name, message)

    async def subscribe(self, queue_name: str, handler: MessageHandler) -> None:
        await self._provider.subscribe(queue_name, handler)

    async def unsubscribe(self, queue_name: str) -> None:
        await self._provider.unsubscribe(queue_name)

    def subscribed_queues(self) -> list[str]:
        return self._provider.subscribed_queues()
