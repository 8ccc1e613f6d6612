import json

import pytest

from shelfscan.core.models import (
    CONN_CONNECTED,
    CONN_SUBSCRIBED,
    PROGRESS_COMPLETED,
    PROGRESS_SEGMENT,
    PROGRESS_STARTED,
    PROGRESS_VALIDATE,
    BookCandidate,
    CompletionEvent,
    FinalResults,
    ValidatedBook,
    ValidationResult,
)
from shelfscan.delivery.connections import ConnectionManager
from shelfscan.delivery.notifier import DELIVERED, STALE, UNDELIVERABLE, Notifier
from shelfscan.delivery.registry import InMemoryConnectionRegistry, temp_key
from shelfscan.delivery.sessions import InMemorySessionChannel


class FakeClock:
    def __init__(self) -> None:
        self.now = 1_700_000_000.0

    def __call__(self) -> float:
        return self.now


def _event(job_id="j1") -> CompletionEvent:
    book = ValidatedBook(
        candidate=BookCandidate(title="Transformer", author="Nick Lane", subtitle=None, confidence=1.0),
        validation=ValidationResult(validated=True, title="Transformer", authors=("Nick Lane",)),
        status="validated",
        match_score=1.0,
    )
    results = FinalResults(job_id=job_id, timestamp="2024-01-01T00:00:00Z", books=(book,))
    return CompletionEvent.from_results(results, f"s3://results/{job_id}/final-results.json")


def _ws(route, handle="conn-1", body=None):
    event = {"requestContext": {"connectionId": handle, "routeKey": route}}
    if body is not None:
        event["body"] = body
    return event


def test_registry_connect_subscribe_claim() -> None:
    reg = InMemoryConnectionRegistry(clock=FakeClock())
    rec = reg.connect("conn-1")
    assert rec.status == CONN_CONNECTED
    assert reg.get(temp_key("conn-1")) is not None

    reg.subscribe("j1", "conn-1")
    assert reg.get(temp_key("conn-1")) is None
    sub = reg.get("j1")
    assert sub.status == CONN_SUBSCRIBED
    assert sub.session_handle == "conn-1"

    assert reg.claim("j1") == sub
    assert reg.claim("j1") is None


def test_registry_entries_expire() -> None:
    clock = FakeClock()
    reg = InMemoryConnectionRegistry(ttl_s=3600, clock=clock)
    reg.subscribe("j1", "conn-1")
    clock.now += 3601
    assert reg.get("j1") is None
    assert reg.claim("j1") is None
    assert len(reg) == 0


def test_connection_manager_lifecycle() -> None:
    reg = InMemoryConnectionRegistry()
    mgr = ConnectionManager(reg)

    assert mgr.handle(_ws("$connect"))["statusCode"] == 200
    resp = mgr.handle(_ws("$default", body=json.dumps({"action": "subscribe", "jobId": "j1"})))
    assert resp["statusCode"] == 200
    assert json.loads(resp["body"]) == {
        "type": "subscribed",
        "jobId": "j1",
        "message": "Successfully subscribed to job notifications",
    }
    assert reg.get("j1").session_handle == "conn-1"

    assert mgr.handle(_ws("$disconnect"))["statusCode"] == 200
    assert reg.get("j1") is None


def test_connection_manager_rejects_malformed_messages() -> None:
    mgr = ConnectionManager(InMemoryConnectionRegistry())
    assert mgr.handle(_ws("$default", body="{not json"))["statusCode"] == 400
    assert mgr.handle(_ws("$default", body="[1, 2]"))["statusCode"] == 400
    assert mgr.handle(_ws("$default", body=json.dumps({"action": "subscribe"})))["statusCode"] == 400
    assert mgr.handle({"requestContext": {}})["statusCode"] == 400
    assert mgr.handle(_ws("$default", body=json.dumps({"action": "ping"})))["statusCode"] == 200


def test_connection_manager_accepts_event_type_contexts() -> None:
    reg = InMemoryConnectionRegistry()
    mgr = ConnectionManager(reg)
    mgr.handle({"requestContext": {"connectionId": "c9", "eventType": "CONNECT"}})
    assert reg.get(temp_key("c9")) is not None


def test_completion_is_delivered_once() -> None:
    reg = InMemoryConnectionRegistry()
    channel = InMemorySessionChannel()
    reg.subscribe("j1", "conn-1")
    notifier = Notifier(reg, channel, sleep=lambda s: None)

    outcome = notifier.handle_completion(_event())
    assert outcome.status == DELIVERED
    push = channel.pushes_for("conn-1")[0]
    assert push["type"] == "processingComplete"
    assert push["jobId"] == "j1"
    assert push["results"]["validatedBooks"] == 1

    again = notifier.handle_completion(_event())
    assert again.status == UNDELIVERABLE
    assert len(channel.sent) == 1


def test_missing_subscriber_is_abandoned_after_bounded_lookups(tmp_path) -> None:
    sleeps = []
    notifier = Notifier(
        InMemoryConnectionRegistry(),
        InMemorySessionChannel(),
        lookup_attempts=5,
        lookup_backoff_s=0.5,
        sleep=sleeps.append,
    )
    results_file = tmp_path / "final-results.json"
    results_file.write_text("{}", encoding="utf-8")

    outcome = notifier.handle_completion(_event())
    assert outcome.status == UNDELIVERABLE
    assert outcome.lookups == 5
    assert sleeps == [0.5, 1.0, 2.0, 4.0]
    assert results_file.exists()


def test_late_subscription_within_window_is_delivered() -> None:
    reg = InMemoryConnectionRegistry()
    channel = InMemorySessionChannel()

    def subscribe_during_backoff(seconds):
        if seconds >= 1.0:
            reg.subscribe("j1", "late-conn")

    notifier = Notifier(reg, channel, lookup_attempts=5, lookup_backoff_s=0.5, sleep=subscribe_during_backoff)
    outcome = notifier.handle_completion(_event())

    assert outcome.status == DELIVERED
    assert outcome.lookups == 3
    assert channel.pushes_for("late-conn")[0]["type"] == "processingComplete"


def test_stale_session_fails_soft_and_cleans_up() -> None:
    reg = InMemoryConnectionRegistry()
    channel = InMemorySessionChannel()
    channel.stale.add("conn-1")
    reg.subscribe("j1", "conn-1")

    outcome = Notifier(reg, channel, sleep=lambda s: None).handle_completion(_event())
    assert outcome.status == STALE
    assert reg.get("j1") is None


def test_transient_push_failure_restores_subscription() -> None:
    reg = InMemoryConnectionRegistry()
    channel = InMemorySessionChannel()
    reg.subscribe("j1", "conn-1")
    channel.fail_next("conn-1", ConnectionError("throttled"))
    notifier = Notifier(reg, channel, sleep=lambda s: None)

    with pytest.raises(ConnectionError):
        notifier.handle_completion(_event())
    assert reg.get("j1") is not None

    assert notifier.handle_completion(_event()).status == DELIVERED


def test_notifier_accepts_sns_envelope() -> None:
    reg = InMemoryConnectionRegistry()
    channel = InMemorySessionChannel()
    reg.subscribe("j1", "conn-1")
    body = {"Type": "Notification", "Message": json.dumps(_event().to_dict())}

    Notifier(reg, channel, sleep=lambda s: None).handle(body)
    assert channel.pushes_for("conn-1")[0]["jobId"] == "j1"


def test_progress_push_is_best_effort() -> None:
    reg = InMemoryConnectionRegistry()
    channel = InMemorySessionChannel()
    notifier = Notifier(reg, channel)

    assert notifier.push_progress("j1", PROGRESS_SEGMENT, PROGRESS_STARTED) is False

    reg.subscribe("j1", "conn-1")
    assert notifier.push_progress("j1", PROGRESS_SEGMENT, PROGRESS_STARTED) is True
    assert channel.pushes_for("conn-1")[0] == {
        "type": "processingStage",
        "jobId": "j1",
        "stage": "bedrock",
        "status": "started",
        "timestamp": channel.pushes_for("conn-1")[0]["timestamp"],
    }

    channel.fail_next("conn-1", RuntimeError("boom"))
    assert notifier.push_progress("j1", PROGRESS_VALIDATE, PROGRESS_COMPLETED) is False
    assert reg.get("j1") is not None
