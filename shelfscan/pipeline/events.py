from __future__ import annotations

import json
import logging
from typing import Any, Dict

from shelfscan.core.models import CompletionEvent
from shelfscan.pipeline.queue import StageQueue

logger = logging.getLogger(__name__)


def completion_dedup_id(job_id: str) -> str:
    return f"{job_id}:complete"


class EventBus:
    """Fan-out of job completion events to whoever delivers results."""

    def publish(self, event: CompletionEvent) -> None:
        raise NotImplementedError


class QueueEventBus(EventBus):
    def __init__(self, queue: StageQueue) -> None:
        self.queue = queue

    def publish(self, event: CompletionEvent) -> None:
        self.queue.send(event.to_dict(), group_id=event.job_id, dedup_id=completion_dedup_id(event.job_id))
        logger.info("completion published | job=%s | validated=%s/%s", event.job_id, event.validated_books, event.total_candidates)


class SnsEventBus(EventBus):
    def __init__(self, client, topic_arn: str) -> None:
        self.client = client
        self.topic_arn = topic_arn
        self.fifo = topic_arn.endswith(".fifo")

    def publish(self, event: CompletionEvent) -> None:
        kwargs: Dict[str, Any] = {
            "TopicArn": self.topic_arn,
            "Message": json.dumps(event.to_dict(), ensure_ascii=False),
            "Subject": "Book Processing Complete",
            "MessageAttributes": {"jobId": {"DataType": "String", "StringValue": event.job_id}},
        }
        if self.fifo:
            kwargs["MessageGroupId"] = event.job_id
            kwargs["MessageDeduplicationId"] = completion_dedup_id(event.job_id)
        resp = self.client.publish(**kwargs)
        logger.info(
            "completion published | job=%s | validated=%s/%s | sns_message=%s",
            event.job_id,
            event.validated_books,
            event.total_candidates,
            resp.get("MessageId"),
        )


def decode_event(body: Dict[str, Any]) -> CompletionEvent:
    """
    Accepts either a bare completion event or the SNS notification envelope
    that SNS wraps around it when delivering to an SQS subscription.
    """
    if body.get("Type") == "Notification" and isinstance(body.get("Message"), str):
        inner = json.loads(body["Message"])
        if not isinstance(inner, dict):
            raise ValueError("SNS notification message is not a JSON object")
        body = inner
    if not body.get("jobId"):
        raise ValueError("completion event has no jobId")
    return CompletionEvent.from_dict(body)
