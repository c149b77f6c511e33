"""
Gateway error mapping — every failure becomes one `queue:error` event.

    {"error": str, "details"?: [str, ...], "queueName"?: str}

Validation failures carry a flat list of human-readable constraint
violations in `details`; queue errors carry the queue name.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from pydantic import ValidationError

from models.schemas import ErrorEvent
from queues.errors import (
    QueueCreationError, QueueError, QueueNotFoundError,
    QueuePublishError, QueueSubscribeError,
)

logger = structlog.get_logger()

VALIDATION_FAILED = "Validation failed"
UNEXPECTED_ERROR = "An unexpected error occurred"

_VALUE_ERROR_PREFIX = "Value error, "


class GatewayRequestError(Exception):
    """A frame that could not be turned into a request (bad JSON, unknown event)."""

    def __init__(self, message: str, details: Optional[list[str]] = None):
        self.details = details or []
        super().__init__(message)


def format_validation_errors(exc: ValidationError) -> list[str]:
    messages: list[str] = []
    for err in exc.errors():
        msg = err.get("msg", "")
        if err.get("type") == "value_error":
            # our validators already name the field
            messages.append(msg[len(_VALUE_ERROR_PREFIX):] if msg.startswith(_VALUE_ERROR_PREFIX) else msg)
            continue
        loc = ".".join(str(part) for part in err.get("loc", ()))
        messages.append(f"{loc}: {msg}" if loc else msg)
    return messages


def build_error_event(exc: BaseException, connection_id: str = "") -> dict[str, Any]:
    """Convert an exception raised while handling a request into an error payload."""
    if isinstance(exc, ValidationError):
        details = format_validation_errors(exc)
        logger.warning("request_validation_failed",
                       connection_id=connection_id, details=details)
        return ErrorEvent(error=VALIDATION_FAILED, details=details).to_event()

    if isinstance(exc, GatewayRequestError):
        logger.warning("request_rejected", connection_id=connection_id, error=str(exc))
        return ErrorEvent(error=str(exc), details=exc.details or None).to_event()

    if isinstance(exc, QueueError):
        queue_name = exc.queue_name
        if isinstance(exc, QueueNotFoundError):
            logger.warning("queue_not_found", connection_id=connection_id, queue=queue_name)
        elif isinstance(exc, QueueCreationError):
            logger.error("queue_creation_error", connection_id=connection_id,
                         queue=queue_name, error=str(exc))
        elif isinstance(exc, QueuePublishError):
            logger.error("queue_publish_error", connection_id=connection_id,
                         queue=queue_name, error=str(exc))
        elif isinstance(exc, QueueSubscribeError):
            logger.error("queue_subscribe_error", connection_id=connection_id,
                         queue=queue_name, error=str(exc))
        else:
            logger.error("queue_error", connection_id=connection_id,
                         queue=queue_name, error=str(exc))
        return ErrorEvent(error=str(exc), queue_name=queue_name).to_event()

    logger.error("unexpected_gateway_error", connection_id=connection_id,
                 error=str(exc), error_type=type(exc).__name__)
    return ErrorEvent(error=UNEXPECTED_ERROR).to_event()
