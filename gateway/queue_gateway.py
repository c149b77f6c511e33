"""
Queue Gateway — decodes client frames into requests and drives the multiplexer.

Client sends JSON frames:
  {"event": "queue:subscribe",   "data": {"queueName": "orders"}}
  {"event": "queue:unsubscribe", "data": {"queueName": "orders"}}
  {"event": "queue:publish",     "data": {"queueName": "orders",
                                          "message": {"body": "hi", "attributes": {"k": "v"}}}}

Server replies with exactly one confirmation (`queue:subscribed`,
`queue:unsubscribed`, `queue:published`) or one `queue:error` per
request, and pushes `queue:message` for every delivery.
"""
from __future__ import annotations

import json
import structlog
from typing import Any

from gateway.connections import ConnectionManager
from gateway.errors import GatewayRequestError, build_error_event
from gateway.multiplexer import SubscribeOutcome, SubscriptionMultiplexer
from models.schemas import (
    GatewayEvent, PublishQueueRequest, SubscribeQueueRequest, UnsubscribeQueueRequest,
)

logger = structlog.get_logger()

SUBSCRIBED_MESSAGE = "Successfully subscribed to queue"
ALREADY_SUBSCRIBED_MESSAGE = "Already subscribed to this queue"
UNSUBSCRIBED_MESSAGE = "Successfully unsubscribed from queue"
PUBLISHED_MESSAGE = "Message published successfully"


class QueueGateway:
    """Per-frame request handling on top of the connection manager."""

    def __init__(self, multiplexer: SubscriptionMultiplexer, connections: ConnectionManager):
        self.multiplexer = multiplexer
        self.connections = connections
        self._routes = {
            GatewayEvent.SUBSCRIBE.value: self.handle_subscribe,
            GatewayEvent.UNSUBSCRIBE.value: self.handle_unsubscribe,
            GatewayEvent.PUBLISH.value: self.handle_publish,
        }

    # ── Connection lifecycle ──────────────────────────────────

    def connect(self, ws: Any) -> str:
        connection_id = self.connections.register(ws)
        self.multiplexer.on_connect(connection_id)
        return connection_id

    def disconnect(self, connection_id: str) -> None:
        self.multiplexer.on_disconnect(connection_id)
        self.connections.unregister(connection_id)

    # ── Frames ────────────────────────────────────────────────

    async def handle_frame(self, connection_id: str, raw: str) -> None:
        """Handle one inbound frame; never raises for request-level failures."""
        try:
            event, data = self._decode(raw)
            route = self._routes.get(event)
            if route is None:
                raise GatewayRequestError(f'Unknown event "{event}"')
            await route(connection_id, data)
        except Exception as e:
            await self._emit(connection_id, GatewayEvent.ERROR,
                             build_error_event(e, connection_id))

    @staticmethod
    def _decode(raw: str) -> tuple[str, Any]:
        try:
            frame = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            raise GatewayRequestError("Invalid JSON payload") from None
        if not isinstance(frame, dict):
            raise GatewayRequestError("Frame must be a JSON object")
        event = frame.get("event")
        if not isinstance(event, str) or not event:
            raise GatewayRequestError("Event name is required")
        return event, frame.get("data", {})

    async def _emit(self, connection_id: str, event: GatewayEvent, data: dict[str, Any]) -> None:
        try:
            await self.connections.send_event(connection_id, event.value, data)
        except Exception as e:
            logger.warning("emit_failed", connection_id=connection_id,
                           event_name=event.value, error=str(e))

    # ── Handlers ──────────────────────────────────────────────

    async def handle_subscribe(self, connection_id: str, data: Any) -> None:
        req = SubscribeQueueRequest.model_validate(data)
        outcome = await self.multiplexer.subscribe(connection_id, req.queue_name)
        message = (
            ALREADY_SUBSCRIBED_MESSAGE
            if outcome is SubscribeOutcome.ALREADY_SUBSCRIBED
            else SUBSCRIBED_MESSAGE
        )
        await self._emit(connection_id, GatewayEvent.SUBSCRIBED,
                         {"queueName": req.queue_name, "message": message})

    async def handle_unsubscribe(self, connection_id: str, data: Any) -> None:
        req = UnsubscribeQueueRequest.model_validate(data)
        self.multiplexer.unsubscribe(connection_id, req.queue_name)
        await self._emit(connection_id, GatewayEvent.UNSUBSCRIBED,
                         {"queueName": req.queue_name, "message": UNSUBSCRIBED_MESSAGE})

    async def handle_publish(self, connection_id: str, data: Any) -> None:
        req = PublishQueueRequest.model_validate(data)
        await self.multiplexer.publish(req.queue_name, req.message.to_queue_message())
        await self._emit(connection_id, GatewayEvent.PUBLISHED,
                         {"queueName": req.queue_name, "message": PUBLISHED_MESSAGE})
