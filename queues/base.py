"""
Queue provider contract — the interface every backend adapter implements.

Adapters own the backend connection and the backend-specific delivery
loop. Handlers supplied by callers are always invoked through
`invoke_handler()`, whose `HandlerResult` decides whether a delivery is
acknowledged (success) or left / negatively acknowledged (failure).
"""
from __future__ import annotations

import inspect
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from models.schemas import QueueMessage

MessageHandler = Callable[[QueueMessage], Union[Awaitable[Any], Any]]


@dataclass(frozen=True)
class HandlerResult:
    """Outcome of delivering one message to a handler."""
    ok: bool
    error: Optional[BaseException] = None

    @classmethod
    def success(cls) -> HandlerResult:
        return cls(ok=True)

    @classmethod
    def failure(cls, error: BaseException) -> HandlerResult:
        return cls(ok=False, error=error)


async def invoke_handler(handler: MessageHandler, message: QueueMessage) -> HandlerResult:
    """Run a sync or async handler and capture its outcome as a value."""
    try:
        result = handler(message)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        return HandlerResult.failure(e)
    return HandlerResult.success()


class QueueProvider(ABC):
    """Abstract queue backend."""

    name: str = ""

    async def connect(self) -> None:
        """Establish the backend connection. Optional for connectionless backends."""

    async def close(self) -> None:
        """Tear down every subscription and release backend resources."""

    @abstractmethod
    async def publish(self, queue_name: str, message: QueueMessage) -> Optional[str]:
        """
        Enqueue one message, creating the queue if absent.
        Returns the backend-assigned message id when the backend reports one.
        """
        ...

    @abstractmethod
    async def subscribe(self, queue_name: str, handler: MessageHandler) -> None:
        """
        Start delivering messages from `queue_name` to `handler`.
        A second call for the same queue replaces the first registration.
        """
        ...

    @abstractmethod
    async def unsubscribe(self, queue_name: str) -> None:
        """Stop delivery for `queue_name`. No-op when not subscribed."""
        ...

    @abstractmethod
    def subscribed_queues(self) -> list[str]:
        """Names of queues with an active backend-level subscription."""
        ...
