"""
Core data models for the QueueBridge system.
These are the universal types shared across all modules.
"""
from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class ProviderType(str, Enum):
    SQS = "sqs"
    RABBITMQ = "rabbitmq"


class GatewayEvent(str, Enum):
    """Event names exchanged over the WebSocket connection."""
    # client → server
    SUBSCRIBE = "queue:subscribe"
    UNSUBSCRIBE = "queue:unsubscribe"
    PUBLISH = "queue:publish"
    # server → client
    SUBSCRIBED = "queue:subscribed"
    UNSUBSCRIBED = "queue:unsubscribed"
    PUBLISHED = "queue:published"
    MESSAGE = "queue:message"
    ERROR = "queue:error"


# ──────────────────────────────────────────────────────────────
#  Queue Message — what flows through providers and fan-out
# ──────────────────────────────────────────────────────────────

class QueueMessage(BaseModel):
    """
    A message as seen by providers and subscribers.

    `id` is assigned by the backend once it accepts the message;
    publishers never set it.
    """
    id: Optional[str] = None
    body: str
    attributes: Optional[dict[str, str]] = None

    def to_event(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


# ──────────────────────────────────────────────────────────────
#  Inbound requests (validated at the gateway)
# ──────────────────────────────────────────────────────────────

def _require_text(value: str, field_name: str) -> str:
    if not value or not value.strip():
        raise ValueError(f"{field_name} should not be empty")
    return value


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class SubscribeQueueRequest(_Request):
    queue_name: str = Field(alias="queueName")

    @field_validator("queue_name")
    @classmethod
    def _queue_name_not_empty(cls, v: str) -> str:
        return _require_text(v, "queueName")


class UnsubscribeQueueRequest(_Request):
    queue_name: str = Field(alias="queueName")

    @field_validator("queue_name")
    @classmethod
    def _queue_name_not_empty(cls, v: str) -> str:
        return _require_text(v, "queueName")


class PublishMessagePayload(_Request):
    """Message half of a publish request. Any client-supplied id is dropped."""
    body: str
    attributes: Optional[dict[str, str]] = None

    @field_validator("body")
    @classmethod
    def _body_not_empty(cls, v: str) -> str:
        # whitespace is a legitimate body; only the empty string is rejected
        if v == "":
            raise ValueError("body should not be empty")
        return v

    def to_queue_message(self) -> QueueMessage:
        return QueueMessage(body=self.body, attributes=self.attributes or None)


class PublishQueueRequest(_Request):
    queue_name: str = Field(alias="queueName")
    message: PublishMessagePayload

    @field_validator("queue_name")
    @classmethod
    def _queue_name_not_empty(cls, v: str) -> str:
        return _require_text(v, "queueName")


# ──────────────────────────────────────────────────────────────
#  Outbound events
# ──────────────────────────────────────────────────────────────

class ErrorEvent(BaseModel):
    """Payload of a `queue:error` event."""
    model_config = ConfigDict(populate_by_name=True)

    error: str
    details: Optional[list[str]] = None
    queue_name: Optional[str] = Field(default=None, alias="queueName")

    def to_event(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)
