from __future__ import annotations

import json
import logging
import time

from botocore.exceptions import ClientError

from shelfscan.core.retry import with_retry
from shelfscan.integrations.aws import error_code

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "bedrock-2023-05-31"
_THROTTLE_CODES = ("ThrottlingException", "ServiceUnavailableException", "ModelNotReadyException")


class TextModel:
    """Opaque generative-text service: complete a prompt, return the raw reply text."""

    def complete(self, prompt: str) -> str:
        raise NotImplementedError


class _Throttled(RuntimeError):
    pass


class BedrockTextModel(TextModel):
    def __init__(
        self,
        client,
        model_id: str,
        *,
        max_tokens: int = 1000,
        throttle_retries: int = 2,
        sleep=time.sleep,
    ) -> None:
        self.client = client
        self.model_id = model_id
        self.max_tokens = max_tokens
        self.throttle_retries = throttle_retries
        self._sleep = sleep

    def _invoke(self, body: str) -> dict:
        try:
            resp = self.client.invoke_model(
                modelId=self.model_id,
                contentType="application/json",
                accept="application/json",
                body=body,
            )
        except ClientError as e:
            if error_code(e) in _THROTTLE_CODES:
                raise _Throttled(error_code(e)) from e
            raise
        raw = resp["body"].read()
        return json.loads(raw.decode("utf-8") if isinstance(raw, bytes) else raw)

    def complete(self, prompt: str) -> str:
        body = json.dumps(
            {
                "anthropic_version": ANTHROPIC_VERSION,
                "max_tokens": self.max_tokens,
                "temperature": 0.0,
                "messages": [{"role": "user", "content": prompt}],
            }
        )
        data = with_retry(lambda: self._invoke(body), retries=self.throttle_retries, backoff_s=1.0, retry_on=(_Throttled,), sleep=self._sleep)
        parts = [c.get("text") or "" for c in (data.get("content") or []) if isinstance(c, dict) and c.get("type", "text") == "text"]
        text = "".join(parts)
        logger.debug("model reply | model=%s | chars=%s | stop=%s", self.model_id, len(text), data.get("stop_reason"))
        return text
