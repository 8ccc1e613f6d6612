from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from shelfscan.core.models import CompletionEvent, utc_now_iso
from shelfscan.delivery.registry import ConnectionRegistry
from shelfscan.delivery.sessions import SessionChannel, StaleSessionError
from shelfscan.pipeline.events import decode_event

logger = logging.getLogger(__name__)

DELIVERED = "delivered"
STALE = "stale"
UNDELIVERABLE = "undeliverable"


@dataclass(frozen=True)
class DeliveryOutcome:
    job_id: str
    status: str
    lookups: int
    session_handle: Optional[str] = None


class Notifier:
    """
    Delivers completion events to the subscribed client session.

    The registry entry is claimed (read and deleted in one step) before the
    push, so a duplicate completion event finds nothing to deliver. If the
    push fails for any reason other than a stale session, the entry is put
    back and the error re-raised so queue redelivery retries it.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        channel: SessionChannel,
        *,
        lookup_attempts: int = 5,
        lookup_backoff_s: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.registry = registry
        self.channel = channel
        self.lookup_attempts = max(1, int(lookup_attempts))
        self.lookup_backoff_s = lookup_backoff_s
        self._sleep = sleep

    def handle(self, body: Dict[str, Any]) -> None:
        self.handle_completion(decode_event(body))

    def handle_completion(self, event: CompletionEvent) -> DeliveryOutcome:
        record = None
        lookups = 0
        for attempt in range(1, self.lookup_attempts + 1):
            lookups = attempt
            record = self.registry.claim(event.job_id)
            if record is not None:
                break
            if attempt < self.lookup_attempts:
                delay = self.lookup_backoff_s * (2 ** (attempt - 1))
                logger.debug("no subscriber yet | job=%s | attempt=%s/%s | backoff=%s", event.job_id, attempt, self.lookup_attempts, delay)
                self._sleep(delay)

        if record is None:
            logger.warning(
                "undeliverable | job=%s | lookups=%s | results=%s",
                event.job_id,
                lookups,
                event.results_location,
            )
            return DeliveryOutcome(job_id=event.job_id, status=UNDELIVERABLE, lookups=lookups)

        try:
            self.channel.post(record.session_handle, event.client_push())
        except StaleSessionError:
            logger.info("session gone, dropping delivery | job=%s | handle=%s", event.job_id, record.session_handle)
            return DeliveryOutcome(job_id=event.job_id, status=STALE, lookups=lookups, session_handle=record.session_handle)
        except Exception:
            self.registry.put(record)
            logger.error("push failed, subscription restored | job=%s | handle=%s", event.job_id, record.session_handle)
            raise

        logger.info(
            "delivered | job=%s | handle=%s | validated=%s/%s",
            event.job_id,
            record.session_handle,
            event.validated_books,
            event.total_candidates,
        )
        return DeliveryOutcome(job_id=event.job_id, status=DELIVERED, lookups=lookups, session_handle=record.session_handle)

    def push_progress(self, job_id: str, stage: str, status: str) -> bool:
        """Best-effort stage update; never raises."""
        try:
            record = self.registry.get(job_id)
            if record is None:
                return False
            self.channel.post(
                record.session_handle,
                {"type": "processingStage", "jobId": job_id, "stage": stage, "status": status, "timestamp": utc_now_iso()},
            )
        except StaleSessionError:
            logger.debug("progress push to stale session | job=%s", job_id)
            return False
        except Exception as e:
            logger.debug("progress push failed | job=%s | stage=%s | err=%r", job_id, stage, e)
            return False
        return True
