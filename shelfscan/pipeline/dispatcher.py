from __future__ import annotations

import logging
from typing import Any, Dict, List
from urllib.parse import unquote_plus

from shelfscan.core.models import Job, StageMessage, new_job_id, utc_now_iso
from shelfscan.pipeline.queue import StageQueue

logger = logging.getLogger(__name__)

DISPATCH_STAGE = "dispatch"


def job_id_for_key(key: str) -> str:
    """Uploads land at `<jobId>/<file>`; a key with no directory gets a fresh id."""
    key = key.lstrip("/")
    if "/" in key:
        head = key.split("/", 1)[0].strip()
        if head:
            return head
    stem = key.rsplit(".", 1)[0]
    return new_job_id(stem)


class JobDispatcher:
    def __init__(self, ocr_queue: StageQueue) -> None:
        self.ocr_queue = ocr_queue

    def dispatch(self, bucket: str, key: str) -> StageMessage:
        job = Job(job_id=job_id_for_key(key), created_at=utc_now_iso())
        msg = job.first_message(bucket, key)
        self.ocr_queue.send(msg.to_dict(), group_id=job.job_id, dedup_id=msg.dedup_id(DISPATCH_STAGE))
        logger.info("job dispatched | job=%s | s3://%s/%s", job.job_id, bucket, key)
        return msg

    def handle_s3_event(self, event: Dict[str, Any]) -> List[StageMessage]:
        out: List[StageMessage] = []
        for record in event.get("Records") or []:
            if not str(record.get("eventName") or "").startswith("ObjectCreated"):
                continue
            s3 = record.get("s3") or {}
            bucket = (s3.get("bucket") or {}).get("name")
            key = (s3.get("object") or {}).get("key")
            if not bucket or not key:
                logger.warning("skipping malformed s3 record | record=%s", record)
                continue
            out.append(self.dispatch(bucket, unquote_plus(key)))
        return out
