from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from shelfscan.core.models import FLAG_OCR, PROGRESS_COMPLETED, PROGRESS_OCR, PROGRESS_STARTED, ProgressFn, StageMessage
from shelfscan.integrations.ocr import OcrLine, TextractOcr
from shelfscan.pipeline.queue import StageQueue
from shelfscan.pipeline.results import EXTRACTED_TEXT, ResultStore

logger = logging.getLogger(__name__)

OCR_STAGE = "ocr"


def join_lines(lines: List[OcrLine], min_confidence: float = 0.0) -> str:
    return "\n".join(line.text for line in lines if line.confidence >= min_confidence)


class OcrWorker:
    """Turns an uploaded image into raw line-segmented text for segmentation."""

    def __init__(
        self,
        ocr: TextractOcr,
        store: ResultStore,
        out_queue: StageQueue,
        *,
        min_line_confidence: float = 0.0,
        progress: Optional[ProgressFn] = None,
    ) -> None:
        self.ocr = ocr
        self.store = store
        self.out_queue = out_queue
        self.min_line_confidence = min_line_confidence
        self.progress = progress

    def forward(self, msg: StageMessage) -> None:
        self.out_queue.send(msg.to_dict(), group_id=msg.job_id, dedup_id=msg.dedup_id(OCR_STAGE))

    def handle(self, body: Dict[str, Any]) -> None:
        msg = StageMessage.from_dict(body)
        if msg.flag(FLAG_OCR):
            logger.info("already extracted, forwarding | job=%s", msg.job_id)
            self.forward(msg)
            return

        text = self.store.get_text(msg.job_id, EXTRACTED_TEXT)
        fresh = text is None
        if not fresh:
            logger.info("reusing stored text | job=%s", msg.job_id)
        else:
            bucket, key = msg.get("bucket"), msg.get("key")
            if not bucket or not key:
                raise ValueError(f"job {msg.job_id} has no image location")
            if self.progress:
                self.progress(msg.job_id, PROGRESS_OCR, PROGRESS_STARTED)
            lines = self.ocr.detect_lines(bucket, key)
            text = join_lines(lines, self.min_line_confidence)
            self.store.put_text(msg.job_id, EXTRACTED_TEXT, text)
            logger.info("stage done | stage=ocr | job=%s | lines=%s | chars=%s", msg.job_id, len(lines), len(text))

        self.forward(msg.advance(extractedText=text, **{FLAG_OCR: True}))
        if fresh and self.progress:
            self.progress(msg.job_id, PROGRESS_OCR, PROGRESS_COMPLETED)
