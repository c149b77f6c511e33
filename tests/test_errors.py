"""
Tests — Queue error taxonomy, handler invocation and gateway error mapping.
"""
import pytest
from pydantic import ValidationError

from models.schemas import QueueMessage, SubscribeQueueRequest
from queues.base import HandlerResult, invoke_handler
from queues.errors import (
    QueueConfigurationError, QueueCreationError, QueueError, QueueNotFoundError,
    QueuePublishError, QueueSubscribeError,
)
from gateway.errors import (
    UNEXPECTED_ERROR, VALIDATION_FAILED, GatewayRequestError, build_error_event,
)


# ══════════════════════════════════════════════════════════════
#  ERROR MESSAGES
# ══════════════════════════════════════════════════════════════

class TestQueueErrors:
    def test_not_found_message(self):
        err = QueueNotFoundError("orders")
        assert str(err) == 'Queue "orders" does not exist'
        assert err.queue_name == "orders"
        assert isinstance(err, QueueError)

    def test_creation_message_includes_cause(self):
        cause = RuntimeError("access denied")
        err = QueueCreationError("orders", cause)
        assert str(err) == 'Failed to create queue "orders": access denied'
        assert err.cause is cause

    def test_publish_message_without_cause(self):
        err = QueuePublishError("orders")
        assert str(err) == 'Failed to publish message to queue "orders": Unknown error'

    def test_subscribe_message(self):
        err = QueueSubscribeError("orders", ConnectionError("refused"))
        assert str(err) == 'Failed to subscribe to queue "orders": refused'

    def test_empty_cause_falls_back_to_type_name(self):
        err = QueuePublishError("orders", TimeoutError())
        assert str(err).endswith(": TimeoutError")

    def test_configuration_error_has_no_queue(self):
        err = QueueConfigurationError("bad provider")
        assert err.queue_name is None
        assert str(err) == "bad provider"


# ══════════════════════════════════════════════════════════════
#  HANDLER INVOCATION
# ══════════════════════════════════════════════════════════════

class TestInvokeHandler:
    @pytest.mark.asyncio
    async def test_async_handler_success(self):
        seen = []

        async def handler(message):
            seen.append(message.body)

        result = await invoke_handler(handler, QueueMessage(body="hi"))
        assert result == HandlerResult.success()
        assert seen == ["hi"]

    @pytest.mark.asyncio
    async def test_sync_handler_success(self):
        result = await invoke_handler(lambda m: None, QueueMessage(body="hi"))
        assert result.ok

    @pytest.mark.asyncio
    async def test_failure_is_captured_not_raised(self):
        boom = ValueError("boom")

        async def handler(message):
            raise boom

        result = await invoke_handler(handler, QueueMessage(body="hi"))
        assert not result.ok
        assert result.error is boom


# ══════════════════════════════════════════════════════════════
#  GATEWAY ERROR EVENTS
# ══════════════════════════════════════════════════════════════

class TestBuildErrorEvent:
    def test_validation_error(self):
        with pytest.raises(ValidationError) as info:
            SubscribeQueueRequest.model_validate({"queueName": ""})
        event = build_error_event(info.value, "c1")
        assert event["error"] == VALIDATION_FAILED
        assert event["details"] == ["queueName should not be empty"]
        assert "queueName" not in event

    def test_queue_error_carries_queue_name(self):
        event = build_error_event(QueueNotFoundError("orders"), "c1")
        assert event == {"error": 'Queue "orders" does not exist', "queueName": "orders"}

    def test_publish_error(self):
        event = build_error_event(QueuePublishError("orders", RuntimeError("down")))
        assert event["error"] == 'Failed to publish message to queue "orders": down'
        assert event["queueName"] == "orders"

    def test_request_error(self):
        event = build_error_event(GatewayRequestError("Invalid JSON payload"))
        assert event == {"error": "Invalid JSON payload"}

    def test_unexpected_error_is_generic(self):
        event = build_error_event(KeyError("secret internals"), "c1")
        assert event == {"error": UNEXPECTED_ERROR}
