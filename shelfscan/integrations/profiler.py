from __future__ import annotations

import threading
from collections import defaultdict
from typing import Dict


class ProviderProfiler:
    """Counts calls, failures and latency per provider for one validation run."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts: Dict[str, int] = defaultdict(int)
        self._errors: Dict[str, int] = defaultdict(int)
        self._timeouts: Dict[str, int] = defaultdict(int)
        self._lat_sum: Dict[str, float] = defaultdict(float)

    def record(self, provider: str, elapsed_s: float, ok: bool) -> None:
        with self._lock:
            self._counts[provider] += 1
            self._lat_sum[provider] += float(elapsed_s)
            if not ok:
                self._errors[provider] += 1

    def record_timeout(self, provider: str) -> None:
        with self._lock:
            self._counts[provider] += 1
            self._timeouts[provider] += 1

    def summary(self) -> dict:
        with self._lock:
            out = {}
            for key in sorted(self._counts):
                count = self._counts[key]
                err = self._errors.get(key, 0)
                timeouts = self._timeouts.get(key, 0)
                finished = count - timeouts
                lat = self._lat_sum.get(key, 0.0)
                out[key] = {
                    "requests": count,
                    "errors": err,
                    "timeouts": timeouts,
                    "error_rate": ((err + timeouts) / count) if count else 0.0,
                    "avg_latency_s": (lat / finished) if finished else 0.0,
                }
            return out
