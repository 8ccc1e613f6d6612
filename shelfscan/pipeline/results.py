from __future__ import annotations

import json
import logging
import os
from typing import Any, Optional

from botocore.exceptions import ClientError

from shelfscan.integrations.aws import error_code
from shelfscan.io.utils import write_text

logger = logging.getLogger(__name__)

EXTRACTED_TEXT = "extracted-text.txt"
CANDIDATES = "candidates.json"
FINAL_RESULTS = "final-results.json"

_MISSING_CODES = ("NoSuchKey", "404", "NotFound")


def result_key(job_id: str, name: str) -> str:
    return f"{job_id}/{name}"


class ResultStore:
    """Per-job stage outputs, keyed `<jobId>/<name>`. Writes overwrite (last writer wins)."""

    def put_text(self, job_id: str, name: str, text: str) -> str:
        raise NotImplementedError

    def get_text(self, job_id: str, name: str) -> Optional[str]:
        raise NotImplementedError

    def location(self, job_id: str, name: str) -> str:
        raise NotImplementedError

    def put_json(self, job_id: str, name: str, data: Any) -> str:
        return self.put_text(job_id, name, json.dumps(data, ensure_ascii=False, indent=2))

    def get_json(self, job_id: str, name: str) -> Optional[Any]:
        text = self.get_text(job_id, name)
        if text is None:
            return None
        try:
            return json.loads(text)
        except ValueError:
            logger.warning("stored output unreadable | job=%s | name=%s", job_id, name)
            return None


class LocalResultStore(ResultStore):
    def __init__(self, root: str) -> None:
        self.root = root

    def _path(self, job_id: str, name: str) -> str:
        return os.path.join(self.root, job_id, name)

    def put_text(self, job_id: str, name: str, text: str) -> str:
        path = self._path(job_id, name)
        write_text(text, path)
        return path

    def get_text(self, job_id: str, name: str) -> Optional[str]:
        path = self._path(job_id, name)
        if not os.path.exists(path):
            return None
        with open(path, "r", encoding="utf-8") as f:
            return f.read()

    def location(self, job_id: str, name: str) -> str:
        return self._path(job_id, name)


class S3ResultStore(ResultStore):
    def __init__(self, client, bucket: str) -> None:
        self.client = client
        self.bucket = bucket

    def put_text(self, job_id: str, name: str, text: str) -> str:
        key = result_key(job_id, name)
        content_type = "application/json" if name.endswith(".json") else "text/plain"
        self.client.put_object(Bucket=self.bucket, Key=key, Body=text.encode("utf-8"), ContentType=content_type)
        logger.debug("stored | s3://%s/%s | bytes=%s", self.bucket, key, len(text))
        return self.location(job_id, name)

    def get_text(self, job_id: str, name: str) -> Optional[str]:
        key = result_key(job_id, name)
        try:
            resp = self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            if error_code(e) in _MISSING_CODES:
                return None
            raise
        return resp["Body"].read().decode("utf-8")

    def location(self, job_id: str, name: str) -> str:
        return f"s3://{self.bucket}/{result_key(job_id, name)}"
