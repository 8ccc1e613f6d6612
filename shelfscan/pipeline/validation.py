from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Any, Dict, List, Optional, Sequence, Tuple

from shelfscan.core.matching import DEFAULT_SCORING, ScoringConfig, resolve_candidate
from shelfscan.core.models import (
    FLAG_SEGMENT,
    FLAG_VALIDATE,
    PROGRESS_COMPLETED,
    PROGRESS_STARTED,
    PROGRESS_VALIDATE,
    BookCandidate,
    CompletionEvent,
    FinalResults,
    ProgressFn,
    StageMessage,
    ValidatedBook,
    ValidationResult,
    utc_now_iso,
)
from shelfscan.integrations.http_client import ProviderLimiter
from shelfscan.integrations.profiler import ProviderProfiler
from shelfscan.integrations.providers import BookProvider
from shelfscan.pipeline.events import EventBus
from shelfscan.pipeline.results import FINAL_RESULTS, ResultStore

logger = logging.getLogger(__name__)

# (results, error, elapsed_s)
_CallOutcome = Tuple[List[ValidationResult], Optional[str], float]


class ValidationEngine:
    """
    Resolves candidates against the catalog providers.

    Candidates fan out over one pool. Each provider has its own pool, sized to
    its limiter's concurrency cap, so a provider that hangs only backs up its
    own calls. Each candidate waits at most `provider_timeout_s` for its
    provider calls; a provider that fails or has not answered by then
    contributes no result.
    """

    def __init__(
        self,
        providers: Sequence[BookProvider],
        *,
        limiters: Optional[Dict[str, ProviderLimiter]] = None,
        scoring: ScoringConfig = DEFAULT_SCORING,
        provider_timeout_s: float = 8.0,
        candidate_concurrency: int = 4,
    ) -> None:
        self.providers = list(providers)
        self.limiters = dict(limiters or {})
        self.scoring = scoring
        self.provider_timeout_s = float(provider_timeout_s)
        self.candidate_concurrency = max(1, int(candidate_concurrency))
        self._candidate_pool = ThreadPoolExecutor(max_workers=self.candidate_concurrency, thread_name_prefix="candidate")
        self._provider_pools = [
            ThreadPoolExecutor(max_workers=self._pool_size(p), thread_name_prefix=f"provider-{p.name}")
            for p in self.providers
        ]

    def _pool_size(self, provider: BookProvider) -> int:
        limiter = self.limiters.get(provider.name)
        if limiter is not None:
            return limiter.max_concurrent
        return self.candidate_concurrency

    def close(self) -> None:
        self._candidate_pool.shutdown(wait=False)
        for pool in self._provider_pools:
            pool.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> "ValidationEngine":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _call(self, provider: BookProvider, candidate: BookCandidate) -> _CallOutcome:
        t0 = time.monotonic()
        limiter = self.limiters.get(provider.name)
        try:
            if limiter is not None:
                with limiter.slot():
                    results = provider.search(candidate)
            else:
                results = provider.search(candidate)
        except Exception as e:
            logger.warning("provider failed | provider=%s | title=%r | err=%r", provider.name, candidate.title, e)
            return [], f"{provider.name}: {e}", time.monotonic() - t0
        return list(results), None, time.monotonic() - t0

    def validate_candidate(self, candidate: BookCandidate, profiler: Optional[ProviderProfiler] = None) -> ValidatedBook:
        profiler = profiler or ProviderProfiler()
        futures = {
            pool.submit(self._call, p, candidate): i for i, (p, pool) in enumerate(zip(self.providers, self._provider_pools))
        }
        done, not_done = wait(futures, timeout=self.provider_timeout_s)

        responses: List[List[ValidationResult]] = [[] for _ in self.providers]
        errors: List[str] = []
        for fut in not_done:
            fut.cancel()
            name = self.providers[futures[fut]].name
            profiler.record_timeout(name)
            errors.append(f"{name}: no answer within {self.provider_timeout_s:g}s")
            logger.warning("provider timed out | provider=%s | title=%r", name, candidate.title)
        for fut in done:
            idx = futures[fut]
            results, err, elapsed = fut.result()
            profiler.record(self.providers[idx].name, elapsed, err is None)
            responses[idx] = results
            if err:
                errors.append(err)

        book = resolve_candidate(candidate, responses, self.scoring, errors)
        logger.debug(
            "candidate resolved | title=%r | status=%s | score=%.3f | provider=%s",
            candidate.title,
            book.status,
            book.match_score,
            book.validation.provider,
        )
        return book

    def validate_all(self, candidates: Sequence[BookCandidate]) -> Tuple[Tuple[ValidatedBook, ...], dict]:
        profiler = ProviderProfiler()
        books = tuple(self._candidate_pool.map(lambda c: self.validate_candidate(c, profiler), candidates))
        return books, profiler.summary()


def _candidates(msg: StageMessage) -> List[BookCandidate]:
    out: List[BookCandidate] = []
    for raw in msg.get("candidates") or []:
        if not isinstance(raw, dict):
            continue
        try:
            out.append(BookCandidate.from_dict(raw))
        except (TypeError, ValueError) as e:
            logger.warning("skipping invalid candidate | job=%s | err=%s", msg.job_id, e)
    return out


class ValidationWorker:
    def __init__(
        self,
        engine: ValidationEngine,
        store: ResultStore,
        events: EventBus,
        *,
        progress: Optional[ProgressFn] = None,
    ) -> None:
        self.engine = engine
        self.store = store
        self.events = events
        self.progress = progress

    def _stored_results(self, job_id: str) -> Optional[FinalResults]:
        data = self.store.get_json(job_id, FINAL_RESULTS)
        if not isinstance(data, dict) or not data.get("jobId"):
            return None
        return FinalResults.from_dict(data)

    def handle(self, body: Dict[str, Any]) -> None:
        msg = StageMessage.from_dict(body)

        stored = self._stored_results(msg.job_id)
        if stored is not None:
            logger.info("results already stored, republishing | job=%s", msg.job_id)
            self.events.publish(CompletionEvent.from_results(stored, self.store.location(msg.job_id, FINAL_RESULTS)))
            return
        if msg.flag(FLAG_VALIDATE):
            logger.warning("flagged validated but no stored results, validating again | job=%s", msg.job_id)

        if not msg.flag(FLAG_SEGMENT):
            raise ValueError(f"job {msg.job_id} has not been segmented")

        if self.progress:
            self.progress(msg.job_id, PROGRESS_VALIDATE, PROGRESS_STARTED)
        cands = _candidates(msg)
        books, profile = self.engine.validate_all(cands)
        results = FinalResults(
            job_id=msg.job_id,
            timestamp=utc_now_iso(),
            books=books,
            degraded=msg.get("segmentationDegraded"),
        )
        location = self.store.put_json(msg.job_id, FINAL_RESULTS, results.to_dict())
        for name, p in profile.items():
            logger.info(
                "provider profile | job=%s | provider=%s | requests=%s | errors=%s | timeouts=%s | avg_latency_s=%.3f",
                msg.job_id,
                name,
                p["requests"],
                p["errors"],
                p["timeouts"],
                p["avg_latency_s"],
            )
        logger.info(
            "stage done | stage=validate | job=%s | validated=%s/%s",
            msg.job_id,
            results.validated_count,
            results.total_candidates,
        )
        self.events.publish(CompletionEvent.from_results(results, location))
        if self.progress:
            self.progress(msg.job_id, PROGRESS_VALIDATE, PROGRESS_COMPLETED)
