"""
Durable queue backbone.

The pipeline only relies on the StageQueue contract: at-least-once delivery,
ordering per group key (the jobId), a per-message visibility timeout, and
send-side dedup on an explicit dedup id. SqsQueue maps that onto an SQS FIFO
queue; InMemoryQueue gives the same semantics in-process for tests and local
runs.
"""
from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

MAX_VISIBILITY_S = 43200
DEFAULT_DEDUP_WINDOW_S = 300.0


@dataclass(frozen=True)
class QueueMessage:
    message_id: str
    body: Dict[str, Any]
    raw: str
    receipt: str
    receive_count: int


def _encode(body: Union[Dict[str, Any], str]) -> str:
    return body if isinstance(body, str) else json.dumps(body, ensure_ascii=False, sort_keys=True)


def _decode(raw: str) -> Dict[str, Any]:
    try:
        data = json.loads(raw)
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


class StageQueue:
    name = "queue"

    def send(
        self,
        body: Union[Dict[str, Any], str],
        *,
        group_id: Optional[str] = None,
        dedup_id: Optional[str] = None,
    ) -> Optional[str]:
        """Enqueue a message; returns its id, or None when dropped as a duplicate."""
        raise NotImplementedError

    def receive(self, max_messages: int = 1, wait_s: float = 0.0) -> List[QueueMessage]:
        raise NotImplementedError

    def ack(self, msg: QueueMessage) -> None:
        raise NotImplementedError

    def retry_later(self, msg: QueueMessage, delay_s: float) -> None:
        raise NotImplementedError


class _Entry:
    __slots__ = ("message_id", "raw", "group_id", "receive_count", "visible_at", "receipt")

    def __init__(self, message_id: str, raw: str, group_id: Optional[str]) -> None:
        self.message_id = message_id
        self.raw = raw
        self.group_id = group_id
        self.receive_count = 0
        self.visible_at = 0.0
        self.receipt = ""


class InMemoryQueue(StageQueue):
    def __init__(
        self,
        name: str = "memory",
        *,
        visibility_timeout_s: float = 30.0,
        dedup_window_s: float = DEFAULT_DEDUP_WINDOW_S,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.visibility_timeout_s = float(visibility_timeout_s)
        self.dedup_window_s = float(dedup_window_s)
        self._clock = clock
        self._cond = threading.Condition()
        self._entries: List[_Entry] = []
        self._dedup: Dict[str, float] = {}

    def send(self, body, *, group_id=None, dedup_id=None) -> Optional[str]:
        raw = _encode(body)
        with self._cond:
            now = self._clock()
            self._dedup = {k: exp for k, exp in self._dedup.items() if exp > now}
            if dedup_id:
                if dedup_id in self._dedup:
                    logger.info("duplicate dropped | queue=%s | dedup_id=%s", self.name, dedup_id)
                    return None
                self._dedup[dedup_id] = now + self.dedup_window_s
            entry = _Entry(uuid.uuid4().hex, raw, group_id)
            self._entries.append(entry)
            self._cond.notify_all()
            return entry.message_id

    def _take_visible(self, max_messages: int) -> List[QueueMessage]:
        now = self._clock()
        blocked = set()
        out: List[QueueMessage] = []
        for e in self._entries:
            if len(out) >= max_messages:
                break
            if e.group_id is not None and e.group_id in blocked:
                continue
            if e.visible_at > now:
                if e.group_id is not None:
                    blocked.add(e.group_id)
                continue
            e.receive_count += 1
            e.visible_at = now + self.visibility_timeout_s
            e.receipt = uuid.uuid4().hex
            if e.group_id is not None:
                blocked.add(e.group_id)
            out.append(QueueMessage(e.message_id, _decode(e.raw), e.raw, e.receipt, e.receive_count))
        return out

    def receive(self, max_messages: int = 1, wait_s: float = 0.0) -> List[QueueMessage]:
        deadline = time.monotonic() + max(0.0, wait_s)
        with self._cond:
            while True:
                out = self._take_visible(max(1, max_messages))
                remaining = deadline - time.monotonic()
                if out or remaining <= 0:
                    return out
                self._cond.wait(min(remaining, 0.1))

    def _find(self, msg: QueueMessage) -> Optional[_Entry]:
        for e in self._entries:
            if e.message_id == msg.message_id and e.receipt == msg.receipt:
                return e
        return None

    def ack(self, msg: QueueMessage) -> None:
        with self._cond:
            e = self._find(msg)
            if e is None:
                logger.warning("ack ignored (stale receipt) | queue=%s | message=%s", self.name, msg.message_id)
                return
            self._entries.remove(e)
            self._cond.notify_all()

    def retry_later(self, msg: QueueMessage, delay_s: float) -> None:
        with self._cond:
            e = self._find(msg)
            if e is None:
                return
            e.visible_at = self._clock() + max(0.0, float(delay_s))
            self._cond.notify_all()

    def bodies(self) -> List[Dict[str, Any]]:
        with self._cond:
            return [_decode(e.raw) for e in self._entries]

    def __len__(self) -> int:
        with self._cond:
            return len(self._entries)


class SqsQueue(StageQueue):
    def __init__(self, client, queue_url: str, *, visibility_timeout_s: int = 30) -> None:
        self.client = client
        self.queue_url = queue_url
        self.name = queue_url.rsplit("/", 1)[-1]
        self.fifo = queue_url.endswith(".fifo")
        self.visibility_timeout_s = int(visibility_timeout_s)

    def send(self, body, *, group_id=None, dedup_id=None) -> Optional[str]:
        raw = _encode(body)
        kwargs: Dict[str, Any] = {"QueueUrl": self.queue_url, "MessageBody": raw}
        if self.fifo:
            kwargs["MessageGroupId"] = group_id or "default"
            kwargs["MessageDeduplicationId"] = dedup_id or hashlib.sha256(raw.encode("utf-8")).hexdigest()
        resp = self.client.send_message(**kwargs)
        return resp.get("MessageId")

    def receive(self, max_messages: int = 1, wait_s: float = 0.0) -> List[QueueMessage]:
        resp = self.client.receive_message(
            QueueUrl=self.queue_url,
            MaxNumberOfMessages=max(1, min(10, int(max_messages))),
            WaitTimeSeconds=max(0, min(20, int(wait_s))),
            VisibilityTimeout=self.visibility_timeout_s,
            AttributeNames=["ApproximateReceiveCount"],
        )
        out: List[QueueMessage] = []
        for m in resp.get("Messages") or []:
            raw = m.get("Body") or ""
            count = int((m.get("Attributes") or {}).get("ApproximateReceiveCount") or 1)
            out.append(QueueMessage(m.get("MessageId") or "", _decode(raw), raw, m["ReceiptHandle"], count))
        return out

    def ack(self, msg: QueueMessage) -> None:
        self.client.delete_message(QueueUrl=self.queue_url, ReceiptHandle=msg.receipt)

    def retry_later(self, msg: QueueMessage, delay_s: float) -> None:
        self.client.change_message_visibility(
            QueueUrl=self.queue_url,
            ReceiptHandle=msg.receipt,
            VisibilityTimeout=max(0, min(MAX_VISIBILITY_S, int(delay_s))),
        )
