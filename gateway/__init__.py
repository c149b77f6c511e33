"""
Connection gateway — WebSocket clients on top of the queue service.

  ConnectionManager        connection ids + JSON event frames
  SubscriptionMultiplexer  connection interests → one backend subscription per queue
  QueueGateway             frame decoding, validation, confirmations and errors
"""
from gateway.connections import ConnectionManager, ConnectionState
from gateway.errors import GatewayRequestError, build_error_event, format_validation_errors
from gateway.multiplexer import (
    FanOutHandler, SubscribeOutcome, SubscriptionMultiplexer, SubscriptionRegistry,
)
from gateway.queue_gateway import QueueGateway

__all__ = [
    "ConnectionManager", "ConnectionState",
    "GatewayRequestError", "build_error_event", "format_validation_errors",
    "FanOutHandler", "SubscribeOutcome", "SubscriptionMultiplexer", "SubscriptionRegistry",
    "QueueGateway",
]
