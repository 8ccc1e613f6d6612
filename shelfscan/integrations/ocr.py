from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OcrLine:
    text: str
    confidence: float  # 0-100, as reported by the OCR service


class TextractOcr:
    """Line-segmented text detection for an image already stored in S3."""

    def __init__(self, client) -> None:
        self.client = client

    def detect_lines(self, bucket: str, key: str) -> List[OcrLine]:
        resp = self.client.detect_document_text(Document={"S3Object": {"Bucket": bucket, "Name": key}})
        lines: List[OcrLine] = []
        for block in resp.get("Blocks") or []:
            if block.get("BlockType") != "LINE":
                continue
            text = (block.get("Text") or "").strip()
            if not text:
                continue
            lines.append(OcrLine(text=text, confidence=float(block.get("Confidence") or 0.0)))
        logger.debug("ocr | s3://%s/%s | lines=%s", bucket, key, len(lines))
        return lines
