from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from typing import Iterator

import requests

from shelfscan import __version__
from shelfscan.core.retry import sleep_jitter

logger = logging.getLogger(__name__)

USER_AGENT = f"shelfscan/{__version__}"
RETRYABLE_STATUS = (429, 500, 502, 503, 504)
PROVIDER_MAX_BACKOFF_S = 1.0
JITTER_S = 0.25


class ProviderError(RuntimeError):
    pass


class RateLimitError(ProviderError):
    def __init__(self, label: str, status_code: int, body_preview: str) -> None:
        super().__init__(f"{label} rate limited (status={status_code})")
        self.label = label
        self.status_code = status_code
        self.body_preview = body_preview


def _body_preview(resp: requests.Response, limit: int = 500) -> str:
    text = (resp.text or "").replace("\r", " ").replace("\n", " ").strip()
    if len(text) > limit:
        return text[:limit].rstrip() + "..."
    return text


class TokenBucket:
    def __init__(self, rate_per_sec: float, burst: int) -> None:
        self.rate = max(0.01, float(rate_per_sec))
        self.capacity = max(1, int(burst))
        self.tokens = float(self.capacity)
        self.lock = threading.Lock()
        self.last = time.monotonic()

    def take(self, n: float = 1.0) -> None:
        while True:
            with self.lock:
                now = time.monotonic()
                elapsed = now - self.last
                self.last = now
                self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
                if self.tokens >= n:
                    self.tokens -= n
                    return
                need = (n - self.tokens) / self.rate
            time.sleep(min(0.25, max(0.01, need)))


class ProviderLimiter:
    """Per-provider throttle: a token bucket for request rate plus a cap on in-flight calls."""

    def __init__(self, rate_per_sec: float, burst: int, max_concurrent: int) -> None:
        self.bucket = TokenBucket(rate_per_sec, burst)
        self.max_concurrent = max(1, int(max_concurrent))
        self._slots = threading.BoundedSemaphore(self.max_concurrent)

    @contextmanager
    def slot(self) -> Iterator[None]:
        with self._slots:
            self.bucket.take(1.0)
            yield


def attempt_timeout_s(budget_s: float, retries: int, max_backoff_s: float = PROVIDER_MAX_BACKOFF_S) -> float:
    """
    Per-attempt HTTP timeout that fits `retries + 1` attempts and the backoff
    sleeps between them (each at most `max_backoff_s` plus jitter) in `budget_s`.
    Zero when the budget cannot hold them.
    """
    retries = max(0, int(retries))
    sleeps = retries * (max_backoff_s + JITTER_S)
    return max(0.0, (budget_s - sleeps) / (retries + 1))


def make_session() -> requests.Session:
    s = requests.Session()
    s.headers.update({"Accept": "application/json", "User-Agent": USER_AGENT})
    return s


def get_json_with_retries(
    session: requests.Session,
    url: str,
    params: dict,
    timeout_s: float,
    retries: int = 1,
    *,
    label: str = "",
    max_backoff_s: float = 4.0,
) -> dict:
    """
    GET a JSON document with:
      - exponential backoff + jitter for 429/5xx/network errors
      - RateLimitError once 429 retries are used up
      - ProviderError for other failures (non-retryable 4xx, bad JSON)
    """
    label = label or url
    backoff = 0.5
    for attempt in range(1, retries + 2):
        try:
            logger.debug("request | label=%s | url=%s | params=%s | attempt=%s/%s", label, url, params, attempt, retries + 1)
            r = session.get(url, params=params, timeout=timeout_s)
        except requests.RequestException as e:
            if attempt <= retries:
                logger.warning("request error | label=%s | err=%r (retrying)", label, e)
                sleep_jitter(backoff, JITTER_S)
                backoff = min(max_backoff_s, backoff * 2)
                continue
            raise ProviderError(f"{label} request failed: {e}") from e

        if r.status_code in RETRYABLE_STATUS:
            if attempt <= retries:
                ra = r.headers.get("Retry-After")
                delay = min(max_backoff_s, float(ra)) if ra and ra.isdigit() else backoff
                logger.warning("retrying | label=%s | status=%s | backoff=%s", label, r.status_code, delay)
                sleep_jitter(delay, JITTER_S)
                backoff = min(max_backoff_s, backoff * 2)
                continue
            if r.status_code == 429:
                raise RateLimitError(label, r.status_code, _body_preview(r))

        if r.status_code >= 400:
            logger.error("http error | label=%s | status=%s | body=%s", label, r.status_code, _body_preview(r))
            raise ProviderError(f"{label} returned HTTP {r.status_code}")

        try:
            data = r.json() if r.content else {}
        except ValueError as e:
            raise ProviderError(f"{label} returned malformed JSON") from e
        if not isinstance(data, dict):
            raise ProviderError(f"{label} returned unexpected JSON type {type(data).__name__}")
        return data

    raise ProviderError(f"{label} retries exhausted")
