import threading

import pytest

from shelfscan.core.models import FLAG_VALIDATE, STATUS_UNVALIDATED, STATUS_VALIDATED, BookCandidate, ValidationResult
from shelfscan.integrations.http_client import ProviderError, ProviderLimiter
from shelfscan.integrations.providers import BookProvider
from shelfscan.pipeline.events import QueueEventBus
from shelfscan.pipeline.queue import InMemoryQueue
from shelfscan.pipeline.results import FINAL_RESULTS, LocalResultStore
from shelfscan.pipeline.validation import ValidationEngine, ValidationWorker


class FakeProvider(BookProvider):
    def __init__(self, name, catalog=None, fail_titles=(), block=None) -> None:
        super().__init__()
        self.name = name
        self.catalog = catalog or {}
        self.fail_titles = set(fail_titles)
        self.block = block
        self.calls = []

    def search(self, candidate):
        self.calls.append(candidate.title)
        if self.block is not None:
            self.block.wait(5)
        if candidate.title in self.fail_titles or "*" in self.fail_titles:
            raise ProviderError(f"{self.name} quota exceeded")
        return list(self.catalog.get(candidate.title, []))


def _hit(title, authors, isbn=None, provider="google_books"):
    return ValidationResult(validated=True, title=title, authors=tuple(authors), isbn=isbn, provider=provider)


TRANSFORMER = BookCandidate(title="TRANSFORMER", author="NICK LANE", subtitle=None, confidence=0.9)
HOBBIT = BookCandidate(title="The Hobbit", author="Tolkien", subtitle=None, confidence=0.6)


def test_provider_failure_is_treated_as_no_result() -> None:
    broken = FakeProvider("google_books", fail_titles=["*"])
    working = FakeProvider(
        "openlibrary",
        {"TRANSFORMER": [_hit("Transformer", ["Nick Lane"], "9781782834502", "openlibrary")]},
    )
    with ValidationEngine([broken, working], provider_timeout_s=2.0) as engine:
        books, profile = engine.validate_all([TRANSFORMER])

    assert books[0].status == STATUS_VALIDATED
    assert books[0].validation.provider == "openlibrary"
    assert profile["google_books"]["errors"] == 1
    assert profile["openlibrary"]["errors"] == 0


def test_all_providers_failing_leaves_candidate_unvalidated() -> None:
    providers = [FakeProvider("google_books", fail_titles=["*"]), FakeProvider("openlibrary", fail_titles=["*"])]
    with ValidationEngine(providers, provider_timeout_s=2.0) as engine:
        books, _ = engine.validate_all([TRANSFORMER])

    book = books[0]
    assert book.status == STATUS_UNVALIDATED
    assert book.candidate.title == "TRANSFORMER"
    assert book.candidate.confidence == pytest.approx(0.45)
    assert "quota" in (book.validation.error or "")


def test_failure_in_one_candidate_does_not_affect_siblings() -> None:
    provider = FakeProvider(
        "google_books",
        {"The Hobbit": [_hit("The Hobbit", ["J. R. R. Tolkien"], "9780306406157")]},
        fail_titles=["TRANSFORMER"],
    )
    with ValidationEngine([provider], provider_timeout_s=2.0, candidate_concurrency=2) as engine:
        books, _ = engine.validate_all([TRANSFORMER, HOBBIT])

    assert [b.candidate.title for b in books] == ["TRANSFORMER", "The Hobbit"]
    assert books[0].status == STATUS_UNVALIDATED
    assert books[1].status == STATUS_VALIDATED


def test_slow_provider_is_cut_off_by_timeout() -> None:
    release = threading.Event()
    slow = FakeProvider("google_books", {"TRANSFORMER": [_hit("Transformer", ["Nick Lane"])]}, block=release)
    fast = FakeProvider("openlibrary", {"TRANSFORMER": [_hit("Transformer", ["Nick Lane"], provider="openlibrary")]})
    try:
        with ValidationEngine([slow, fast], provider_timeout_s=0.2) as engine:
            books, profile = engine.validate_all([TRANSFORMER])
    finally:
        release.set()

    assert books[0].status == STATUS_VALIDATED
    assert books[0].validation.provider == "openlibrary"
    assert profile["google_books"]["timeouts"] == 1


def test_slow_provider_does_not_hold_up_other_candidates() -> None:
    release = threading.Event()
    titles = [f"Volume {i}" for i in range(12)]
    slow = FakeProvider("google_books", block=release)
    fast = FakeProvider("openlibrary", {t: [_hit(t, ["Ann Author"], provider="openlibrary")] for t in titles})
    limiters = {"google_books": ProviderLimiter(rate_per_sec=100.0, burst=10, max_concurrent=1)}
    cands = [BookCandidate(title=t, author="Ann Author", subtitle=None, confidence=0.8) for t in titles]
    try:
        with ValidationEngine([slow, fast], limiters=limiters, provider_timeout_s=0.3, candidate_concurrency=4) as engine:
            books, profile = engine.validate_all(cands)
    finally:
        release.set()

    assert [b.status for b in books] == [STATUS_VALIDATED] * 12
    assert {b.validation.provider for b in books} == {"openlibrary"}
    assert profile["openlibrary"]["timeouts"] == 0
    assert profile["google_books"]["timeouts"] == 12


def test_limiter_is_applied_per_provider() -> None:
    provider = FakeProvider("google_books", {"The Hobbit": [_hit("The Hobbit", ["Tolkien"])]})
    limiters = {"google_books": ProviderLimiter(rate_per_sec=100.0, burst=2, max_concurrent=1)}
    with ValidationEngine([provider], limiters=limiters, provider_timeout_s=2.0, candidate_concurrency=3) as engine:
        books, _ = engine.validate_all([HOBBIT, HOBBIT, HOBBIT])

    assert all(b.status == STATUS_VALIDATED for b in books)
    assert len(provider.calls) == 3


def _worker(tmp_path, providers):
    store = LocalResultStore(str(tmp_path))
    events = InMemoryQueue("complete")
    engine = ValidationEngine(providers, provider_timeout_s=2.0)
    return ValidationWorker(engine, store, QueueEventBus(events)), store, events, engine


def test_worker_stores_results_then_publishes(tmp_path) -> None:
    provider = FakeProvider("google_books", {"TRANSFORMER": [_hit("Transformer", ["Nick Lane"], "9781782834502")]})
    worker, store, events, engine = _worker(tmp_path, [provider])
    try:
        worker.handle({"jobId": "j1", "bedrockComplete": True, "candidates": [TRANSFORMER.to_dict()]})
    finally:
        engine.close()

    stored = store.get_json("j1", FINAL_RESULTS)
    assert stored["validatedCount"] == 1
    assert stored["books"][0]["validation"]["isbn"] == "9781782834502"

    event = events.bodies()[0]
    assert event["jobId"] == "j1"
    assert event["status"] == "complete"
    assert event["validatedBooks"] == 1
    assert event["resultsLocation"].endswith("final-results.json")


def test_zero_candidates_still_complete(tmp_path) -> None:
    worker, store, events, engine = _worker(tmp_path, [FakeProvider("google_books")])
    try:
        worker.handle({"jobId": "j2", "bedrockComplete": True, "candidates": [], "segmentationDegraded": "malformed JSON"})
    finally:
        engine.close()

    stored = store.get_json("j2", FINAL_RESULTS)
    assert stored["totalCandidates"] == 0
    assert stored["books"] == []
    assert stored["degraded"] == "malformed JSON"
    assert events.bodies()[0]["totalCandidates"] == 0


def test_redelivery_republishes_stored_results(tmp_path) -> None:
    provider = FakeProvider("google_books", {"TRANSFORMER": [_hit("Transformer", ["Nick Lane"])]})
    worker, _, events, engine = _worker(tmp_path, [provider])
    msg = {"jobId": "j3", "bedrockComplete": True, "candidates": [TRANSFORMER.to_dict()]}
    try:
        worker.handle(msg)
        worker.handle(msg)
    finally:
        engine.close()

    assert provider.calls == ["TRANSFORMER"]
    assert len(events) == 1


def test_unsegmented_message_is_rejected(tmp_path) -> None:
    worker, _, _, engine = _worker(tmp_path, [FakeProvider("google_books")])
    try:
        with pytest.raises(ValueError):
            worker.handle({"jobId": "j4", "extractedText": "HOBBIT"})
    finally:
        engine.close()


def test_outputs_carry_the_validated_flag_and_flagged_input_is_republished(tmp_path) -> None:
    provider = FakeProvider("google_books", {"TRANSFORMER": [_hit("Transformer", ["Nick Lane"])]})
    worker, store, events, engine = _worker(tmp_path, [provider])
    try:
        worker.handle({"jobId": "j5", "bedrockComplete": True, "candidates": [TRANSFORMER.to_dict()]})
        event = events.bodies()[0]
        worker.handle(event)
    finally:
        engine.close()

    assert store.get_json("j5", FINAL_RESULTS)[FLAG_VALIDATE] is True
    assert event[FLAG_VALIDATE] is True
    assert provider.calls == ["TRANSFORMER"]
    assert len(events) == 1


def test_flagged_input_without_stored_results_is_validated_again(tmp_path) -> None:
    provider = FakeProvider("google_books", {"TRANSFORMER": [_hit("Transformer", ["Nick Lane"])]})
    worker, store, events, engine = _worker(tmp_path, [provider])
    try:
        worker.handle({"jobId": "j6", "bedrockComplete": True, FLAG_VALIDATE: True, "candidates": [TRANSFORMER.to_dict()]})
    finally:
        engine.close()

    assert provider.calls == ["TRANSFORMER"]
    assert store.get_json("j6", FINAL_RESULTS)["validatedCount"] == 1
    assert events.bodies()[0]["jobId"] == "j6"


def test_worker_pushes_validation_progress(tmp_path) -> None:
    pushes = []
    store = LocalResultStore(str(tmp_path))
    events = InMemoryQueue("complete")
    with ValidationEngine([FakeProvider("google_books")], provider_timeout_s=2.0) as engine:
        worker = ValidationWorker(engine, store, QueueEventBus(events), progress=lambda *a: pushes.append(a))
        worker.handle({"jobId": "j7", "bedrockComplete": True, "candidates": []})

    assert pushes == [("j7", "validation", "started"), ("j7", "validation", "completed")]
