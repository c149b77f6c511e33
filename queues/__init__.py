"""
Queue providers — one uniform publish/subscribe/unsubscribe contract
over interchangeable backends.

Supports: SQS (polling with visibility timeout) and RabbitMQ
(push with ack/nack). Provider modules are imported lazily by the
factory, so only the configured backend's client library is loaded.

Usage:
    from queues import create_queue_service
    service = create_queue_service(settings.queue)
    await service.connect()
"""
from queues.errors import (
    QueueError, QueueNotFoundError, QueueCreationError,
    QueuePublishError, QueueSubscribeError, QueueConfigurationError,
)
from queues.base import QueueProvider, MessageHandler, HandlerResult, invoke_handler
from queues.service import QueueService
from queues.factory import create_queue_provider, create_queue_service

__all__ = [
    # Errors
    "QueueError", "QueueNotFoundError", "QueueCreationError",
    "QueuePublishError", "QueueSubscribeError", "QueueConfigurationError",
    # Provider contract
    "QueueProvider", "MessageHandler", "HandlerResult", "invoke_handler",
    # Facade + factory
    "QueueService", "create_queue_provider", "create_queue_service",
]
