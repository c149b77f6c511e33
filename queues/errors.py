"""
Queue errors — the failure taxonomy every provider surfaces upward.

Each error is queue-scoped: it carries the queue name and, where one
exists, the underlying backend exception as `cause`.
"""
from __future__ import annotations

from typing import Optional


class QueueError(Exception):
    """Base exception for all queue operations."""

    def __init__(
        self,
        message: str,
        queue_name: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        self.queue_name = queue_name
        self.cause = cause
        super().__init__(message)


def _describe(cause: Optional[BaseException]) -> str:
    if cause is None:
        return "Unknown error"
    return str(cause) or type(cause).__name__


class QueueNotFoundError(QueueError):
    def __init__(self, queue_name: str, cause: Optional[BaseException] = None):
        super().__init__(f'Queue "{queue_name}" does not exist', queue_name, cause)


class QueueCreationError(QueueError):
    def __init__(self, queue_name: str, cause: Optional[BaseException] = None):
        super().__init__(
            f'Failed to create queue "{queue_name}": {_describe(cause)}',
            queue_name,
            cause,
        )


class QueuePublishError(QueueError):
    def __init__(self, queue_name: str, cause: Optional[BaseException] = None):
        super().__init__(
            f'Failed to publish message to queue "{queue_name}": {_describe(cause)}',
            queue_name,
            cause,
        )


class QueueSubscribeError(QueueError):
    def __init__(self, queue_name: str, cause: Optional[BaseException] = None):
        super().__init__(
            f'Failed to subscribe to queue "{queue_name}": {_describe(cause)}',
            queue_name,
            cause,
        )


class QueueConfigurationError(QueueError):
    """Provider selection or provider settings are invalid."""

    def __init__(self, message: str):
        super().__init__(message)
