from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from shelfscan.core.retry import RetryPolicy
from shelfscan.pipeline.queue import QueueMessage, StageQueue

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], None]


@dataclass
class ConsumerStats:
    received: int = 0
    succeeded: int = 0
    retried: int = 0
    dead_lettered: int = 0


class StageConsumer:
    """
    Drives one stage: receive -> handler -> ack.

    A message is acked only after the handler returns, so anything the handler
    wrote or sent is already durable. A failing message is made visible again
    after the policy backoff; once it has been delivered `max_attempts` times
    it is copied to the dead-letter queue and acked. With no dead-letter queue
    configured it stays on its queue.
    """

    def __init__(
        self,
        name: str,
        queue: StageQueue,
        handler: Handler,
        policy: Optional[RetryPolicy] = None,
        *,
        batch_size: int = 1,
        wait_s: float = 20.0,
        stop_file: Optional[str] = None,
        max_seconds: int = 0,
    ) -> None:
        self.name = name
        self.queue = queue
        self.handler = handler
        self.policy = policy or RetryPolicy()
        self.batch_size = max(1, int(batch_size))
        self.wait_s = wait_s
        self.stop_file = stop_file
        self.max_seconds = max_seconds
        self.stats = ConsumerStats()
        self.start_ts = time.time()

    def should_stop(self) -> bool:
        if self.max_seconds > 0 and (time.time() - self.start_ts) >= self.max_seconds:
            return True
        if self.stop_file and os.path.exists(self.stop_file):
            return True
        return False

    def _dead_letter(self, msg: QueueMessage, err: BaseException) -> None:
        job_id = str(msg.body.get("jobId") or "") or None
        dlq = self.policy.dead_letter
        if dlq is None:
            self.queue.retry_later(msg, self.policy.max_backoff_s)
            logger.error(
                "attempts exhausted, no dead-letter queue; leaving for redelivery | stage=%s | job=%s | attempts=%s | err=%r",
                self.name,
                job_id,
                msg.receive_count,
                err,
            )
            return
        dlq.send(msg.raw, group_id=job_id, dedup_id=f"{msg.message_id}:dead")
        self.queue.ack(msg)
        self.stats.dead_lettered += 1
        logger.error(
            "dead-lettered | stage=%s | job=%s | attempts=%s | err=%r",
            self.name,
            job_id,
            msg.receive_count,
            err,
        )

    def process(self, msg: QueueMessage) -> bool:
        self.stats.received += 1
        try:
            self.handler(msg.body)
        except Exception as e:
            if self.policy.exhausted(msg.receive_count):
                self._dead_letter(msg, e)
                return False
            delay = self.policy.delay_for(msg.receive_count)
            self.queue.retry_later(msg, delay)
            self.stats.retried += 1
            logger.warning(
                "handler failed, will retry | stage=%s | job=%s | attempt=%s/%s | backoff=%s | err=%r",
                self.name,
                msg.body.get("jobId"),
                msg.receive_count,
                self.policy.max_attempts,
                delay,
                e,
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            return False
        self.queue.ack(msg)
        self.stats.succeeded += 1
        return True

    def poll_once(self, wait_s: Optional[float] = None) -> int:
        """Receive and process one batch; returns how many messages were handled."""
        msgs = self.queue.receive(self.batch_size, self.wait_s if wait_s is None else wait_s)
        for msg in msgs:
            self.process(msg)
        return len(msgs)

    def drain(self, max_batches: int = 1000) -> int:
        """Process until the queue yields nothing (local runs and tests)."""
        total = 0
        for _ in range(max_batches):
            n = self.poll_once(wait_s=0)
            if not n:
                break
            total += n
        return total

    def run(self, stop_event: Optional[threading.Event] = None) -> None:
        stop_event = stop_event or threading.Event()
        logger.info("consumer start | stage=%s | queue=%s | max_attempts=%s", self.name, self.queue.name, self.policy.max_attempts)
        while not stop_event.is_set() and not self.should_stop():
            self.poll_once()
        s = self.stats
        logger.info(
            "consumer stop | stage=%s | received=%s | ok=%s | retried=%s | dead=%s",
            self.name,
            s.received,
            s.succeeded,
            s.retried,
            s.dead_lettered,
        )
