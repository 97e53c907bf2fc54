"""
SQS Queue Client — long-poll receive, delete, depth

The queue service owns retry: a message that is not deleted reappears after
its visibility timeout, and the queue's redrive policy moves it to the
dead-letter queue after N receives. This client never re-sends anything.

    receive()      one message, long poll (WaitTimeSeconds), lease = VisibilityTimeout
    delete()       acknowledge by receipt handle
    release()      end the lease now (VisibilityTimeout=0) so another consumer can claim it
    queue_depth()  ApproximateNumberOf{Messages, MessagesNotVisible, MessagesDelayed}
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import aioboto3

from app.core.config import settings
from app.schemas.documents import QueueDepth

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueueMessage:
    message_id:     str
    receipt_handle: str
    body:           str
    attributes:     dict[str, str] = field(default_factory=dict)   # message attributes, string values
    receive_count:  int = 1


def _string_attributes(raw: dict | None) -> dict[str, str]:
    values: dict[str, str] = {}
    for name, attr in (raw or {}).items():
        value = attr.get("StringValue") if isinstance(attr, dict) else None
        if value is not None:
            values[name] = value
    return values


class SQSQueue:
    """
    Async SQS access for one queue. A client context is opened per call,
    the same way the storage service does it.
    """

    def __init__(
        self,
        queue_url:          str,
        region:             str | None = None,
        wait_time_seconds:  int | None = None,
        visibility_timeout: int | None = None,
        session: aioboto3.Session | None = None,
    ) -> None:
        self.queue_url           = queue_url
        self._region             = region or settings.aws_region
        self._wait_time_seconds  = settings.sqs_wait_time_seconds if wait_time_seconds is None else wait_time_seconds
        self._visibility_timeout = visibility_timeout or settings.visibility_timeout_seconds
        self._session            = session or aioboto3.Session()

    def _client(self):
        return self._session.client("sqs", region_name=self._region)

    async def receive(self) -> QueueMessage | None:
        async with self._client() as sqs:
            resp = await sqs.receive_message(
                QueueUrl=self.queue_url,
                MaxNumberOfMessages=1,                    # one job per worker at a time
                WaitTimeSeconds=self._wait_time_seconds,  # long polling
                VisibilityTimeout=self._visibility_timeout,
                MessageAttributeNames=["All"],
                AttributeNames=["ApproximateReceiveCount"],
            )

        messages = resp.get("Messages") or []
        if not messages:
            return None

        raw = messages[0]
        return QueueMessage(
            message_id=raw["MessageId"],
            receipt_handle=raw["ReceiptHandle"],
            body=raw.get("Body", ""),
            attributes=_string_attributes(raw.get("MessageAttributes")),
            receive_count=int(raw.get("Attributes", {}).get("ApproximateReceiveCount", "1")),
        )

    async def delete(self, receipt_handle: str) -> None:
        async with self._client() as sqs:
            await sqs.delete_message(QueueUrl=self.queue_url, ReceiptHandle=receipt_handle)

    async def release(self, receipt_handle: str) -> None:
        async with self._client() as sqs:
            await sqs.change_message_visibility(
                QueueUrl=self.queue_url, ReceiptHandle=receipt_handle, VisibilityTimeout=0,
            )

    async def queue_depth(self) -> QueueDepth:
        async with self._client() as sqs:
            resp = await sqs.get_queue_attributes(
                QueueUrl=self.queue_url,
                AttributeNames=[
                    "ApproximateNumberOfMessages",
                    "ApproximateNumberOfMessagesNotVisible",
                    "ApproximateNumberOfMessagesDelayed",
                ],
            )
        attrs = resp.get("Attributes", {})
        return QueueDepth(
            available=int(attrs.get("ApproximateNumberOfMessages", 0)),
            in_flight=int(attrs.get("ApproximateNumberOfMessagesNotVisible", 0)),
            delayed=int(attrs.get("ApproximateNumberOfMessagesDelayed", 0)),
        )
