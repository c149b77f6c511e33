"""
SQS Provider — polling adapter for AWS SQS (or any SQS-compatible endpoint).

SQS has no push delivery, so each subscribed queue gets its own poll
task: a short receive with a bounded wait, per-message handler
invocation, and an explicit delete for every message the handler
accepted. Messages whose handler failed are simply left alone; the
queue's visibility timeout makes them eligible for redelivery.

Liveness:
  Every subscription is tracked in `_live` (queue name → subscription).
  A poll cycle re-checks liveness before receiving, after the blocking
  wait, and before each message, so an unsubscribe (or a replacing
  subscribe) stops delivery even while a cycle is in flight.

boto3 is synchronous; every client call runs via asyncio.to_thread so
the event loop never blocks on the network.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Optional

import boto3
from botocore.exceptions import ClientError

from models.schemas import QueueMessage
from queues.base import MessageHandler, QueueProvider, invoke_handler
from queues.errors import (
    QueueCreationError, QueueError, QueueNotFoundError,
    QueuePublishError, QueueSubscribeError,
)

logger = structlog.get_logger()

_NOT_FOUND_CODES = {
    "AWS.SimpleQueueService.NonExistentQueue",
    "QueueDoesNotExist",
}


def is_queue_not_found(error: BaseException) -> bool:
    if not isinstance(error, ClientError):
        return False
    code = (error.response or {}).get("Error", {}).get("Code", "")
    return code in _NOT_FOUND_CODES


def flatten_attributes(raw: Optional[dict[str, Any]]) -> Optional[dict[str, str]]:
    """SQS MessageAttributes → flat str map. Binary attributes are dropped."""
    if not raw:
        return None
    attributes = {
        key: attr["StringValue"]
        for key, attr in raw.items()
        if isinstance(attr, dict) and isinstance(attr.get("StringValue"), str)
    }
    return attributes or None


class _PollSubscription:
    """One poll loop bound to one queue."""

    def __init__(self, queue_name: str, queue_url: str, handler: MessageHandler):
        self.queue_name = queue_name
        self.queue_url = queue_url
        self.handler = handler
        self.task: Optional[asyncio.Task] = None


class SqsQueueProvider(QueueProvider):
    """
    Polling queue backend on SQS.

    Args:
        region: AWS region name.
        endpoint_url: override endpoint (LocalStack, ElasticMQ, ...).
        poll_interval: seconds between poll cycles.
        wait_time_seconds: bounded wait of each receive call.
        max_messages: receive batch cap (SQS allows at most 10).
        client: pre-built boto3 SQS client (tests).
    """

    name = "sqs"

    def __init__(
        self,
        region: str = "",
        endpoint_url: Optional[str] = None,
        access_key_id: Optional[str] = None,
        secret_access_key: Optional[str] = None,
        poll_interval: float = 1.0,
        wait_time_seconds: int = 1,
        max_messages: int = 10,
        client: Any = None,
    ):
        self.poll_interval = max(poll_interval, float(wait_time_seconds))
        self.wait_time_seconds = wait_time_seconds
        self.max_messages = min(max(max_messages, 1), 10)
        self._client = client or self._create_client(
            region, endpoint_url, access_key_id, secret_access_key,
        )
        self._queue_urls: dict[str, str] = {}
        self._live: dict[str, _PollSubscription] = {}

    @staticmethod
    def _create_client(
        region: str,
        endpoint_url: Optional[str],
        access_key_id: Optional[str],
        secret_access_key: Optional[str],
    ) -> Any:
        kwargs: dict[str, Any] = {"region_name": region}
        if endpoint_url:
            kwargs["endpoint_url"] = endpoint_url
        if access_key_id:
            kwargs["aws_access_key_id"] = access_key_id
            kwargs["aws_secret_access_key"] = secret_access_key or ""
        return boto3.client("sqs", **kwargs)

    async def _call(self, operation: str, **kwargs) -> dict[str, Any]:
        method = getattr(self._client, operation)
        return await asyncio.to_thread(method, **kwargs)

    # ── Lifecycle ─────────────────────────────────────────────

    async def connect(self) -> None:
        logger.info("sqs_provider_ready",
                    poll_interval=self.poll_interval,
                    wait_time_seconds=self.wait_time_seconds)

    async def close(self) -> None:
        subscriptions = list(self._live.values())
        self._live.clear()
        for sub in subscriptions:
            await self._cancel(sub)
        self._queue_urls.clear()
        logger.info("sqs_provider_closed", stopped=len(subscriptions))

    # ── Queue resolution ──────────────────────────────────────

    async def ensure_queue_exists(self, queue_name: str) -> str:
        """Return the queue URL, creating the queue when SQS reports it missing."""
        cached = self._queue_urls.get(queue_name)
        if cached:
            return cached

        try:
            response = await self._call("get_queue_url", QueueName=queue_name)
        except Exception as e:
            if is_queue_not_found(e):
                logger.info("sqs_queue_missing_creating", queue=queue_name)
                return await self._create_queue(queue_name)
            raise

        url = response.get("QueueUrl")
        if not url:
            raise QueueNotFoundError(queue_name)
        self._queue_urls[queue_name] = url
        return url

    async def _create_queue(self, queue_name: str) -> str:
        try:
            response = await self._call("create_queue", QueueName=queue_name)
        except Exception as e:
            raise QueueCreationError(queue_name, e) from e

        url = response.get("QueueUrl")
        if not url or not isinstance(url, str):
            raise QueueCreationError(queue_name)
        self._queue_urls[queue_name] = url
        logger.info("sqs_queue_created", queue=queue_name, url=url)
        return url

    # ── Publish ───────────────────────────────────────────────

    async def publish(self, queue_name: str, message: QueueMessage) -> Optional[str]:
        try:
            url = await self.ensure_queue_exists(queue_name)
            params: dict[str, Any] = {"QueueUrl": url, "MessageBody": message.body}
            if message.attributes:
                params["MessageAttributes"] = {
                    key: {"DataType": "String", "StringValue": value}
                    for key, value in message.attributes.items()
                }
            response = await self._call("send_message", **params)
        except QueueError:
            raise
        except Exception as e:
            if is_queue_not_found(e):
                # cached URL went stale (queue deleted out from under us)
                self._queue_urls.pop(queue_name, None)
                raise QueueNotFoundError(queue_name, e) from e
            raise QueuePublishError(queue_name, e) from e

        message_id = response.get("MessageId")
        logger.info("message_published", provider=self.name,
                    queue=queue_name, message_id=message_id)
        return message_id

    # ── Subscribe / Unsubscribe ───────────────────────────────

    async def subscribe(self, queue_name: str, handler: MessageHandler) -> None:
        try:
            url = await self.ensure_queue_exists(queue_name)
        except QueueError:
            raise
        except Exception as e:
            if is_queue_not_found(e):
                raise QueueNotFoundError(queue_name, e) from e
            raise QueueSubscribeError(queue_name, e) from e

        # Replace, never stack: the old loop is fully retired first.
        previous = self._live.pop(queue_name, None)
        if previous is not None:
            await self._cancel(previous)
            logger.info("sqs_subscription_replaced", queue=queue_name)

        sub = _PollSubscription(queue_name, url, handler)
        self._live[queue_name] = sub
        sub.task = asyncio.create_task(self._poll_loop(sub), name=f"sqs_poll:{queue_name}")
        logger.info("queue_subscribed", provider=self.name, queue=queue_name)

    async def unsubscribe(self, queue_name: str) -> None:
        sub = self._live.pop(queue_name, None)
        if sub is None:
            return
        await self._cancel(sub)
        logger.info("queue_unsubscribed", provider=self.name, queue=queue_name)

    def subscribed_queues(self) -> list[str]:
        return sorted(self._live)

    async def _cancel(self, sub: _PollSubscription) -> None:
        task = sub.task
        if task is None or task.done():
            return
        task.cancel()
        if task is asyncio.current_task():
            return
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("sqs_poll_task_failed", queue=sub.queue_name, error=str(e))

    # ── Polling ───────────────────────────────────────────────

    def _is_live(self, sub: _PollSubscription) -> bool:
        return self._live.get(sub.queue_name) is sub

    async def _poll_loop(self, sub: _PollSubscription) -> None:
        while self._is_live(sub):
            await self.poll_once(sub)
            await asyncio.sleep(self.poll_interval)

    async def poll_once(self, sub: _PollSubscription) -> int:
        """Run a single receive/dispatch/delete cycle. Returns messages acknowledged."""
        if not self._is_live(sub):
            return 0

        try:
            response = await self._call(
                "receive_message",
                QueueUrl=sub.queue_url,
                MaxNumberOfMessages=self.max_messages,
                WaitTimeSeconds=self.wait_time_seconds,
                AttributeNames=["All"],
                MessageAttributeNames=["All"],
            )
        except Exception as e:
            logger.error("sqs_receive_failed", queue=sub.queue_name, error=str(e))
            return 0

        # unsubscribed during the blocking wait
        if not self._is_live(sub):
            return 0

        acked = 0
        for raw in response.get("Messages") or []:
            if not self._is_live(sub):
                break

            message = QueueMessage(
                id=raw.get("MessageId"),
                body=raw.get("Body") or "",
                attributes=flatten_attributes(raw.get("MessageAttributes")),
            )
            result = await invoke_handler(sub.handler, message)
            if not result.ok:
                # left in flight; visibility timeout expiry redelivers it
                logger.error("sqs_handler_failed",
                             queue=sub.queue_name,
                             message_id=message.id,
                             error=str(result.error))
                continue

            receipt = raw.get("ReceiptHandle")
            if not receipt:
                continue
            try:
                await self._call("delete_message",
                                 QueueUrl=sub.queue_url, ReceiptHandle=receipt)
                acked += 1
            except Exception as e:
                logger.error("sqs_delete_failed",
                             queue=sub.queue_name,
                             message_id=message.id,
                             error=str(e))
        return acked
