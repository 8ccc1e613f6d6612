import json

import pytest

from shelfscan.core.models import FLAG_SEGMENT
from shelfscan.integrations.llm import TextModel
from shelfscan.pipeline.queue import InMemoryQueue
from shelfscan.pipeline.results import CANDIDATES, LocalResultStore
from shelfscan.pipeline.segmentation import (
    Degraded,
    Ok,
    Segmenter,
    SegmentationWorker,
    build_prompt,
    parse_candidates,
)


class ScriptedModel(TextModel):
    def __init__(self, *replies: str) -> None:
        self.replies = list(replies)
        self.prompts = []

    def complete(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if len(self.replies) > 1:
            return self.replies.pop(0)
        return self.replies[0]


def _reply(*cands) -> str:
    return json.dumps({"candidates": list(cands)})


DENNETT_REPLY = (
    "Here are the books I found:\n```json\n"
    + _reply({"title": "From Bacteria to Bach and Back", "author": "Daniel C. Dennett", "subtitle": None, "confidence": 0.92})
    + "\n```"
)


def test_single_spine_is_segmented() -> None:
    model = ScriptedModel(DENNETT_REPLY)
    outcome = Segmenter(model).segment("DANIEL C. DENNETT FROM BACTERIA TO BACH AND BACK")

    assert isinstance(outcome, Ok)
    assert len(outcome.candidates) == 1
    cand = outcome.candidates[0]
    assert cand.title == "From Bacteria to Bach and Back"
    assert cand.author == "Daniel C. Dennett"
    assert cand.confidence >= 0.85
    assert "DANIEL C. DENNETT FROM BACTERIA TO BACH AND BACK" in model.prompts[0]


def test_prompt_requires_json_only() -> None:
    prompt = build_prompt("THE HOBBIT\nTOLKIEN")
    assert "THE HOBBIT\nTOLKIEN" in prompt
    assert '"candidates"' in prompt
    assert "JSON only" in prompt


@pytest.mark.parametrize(
    "raw",
    [
        "",
        "I could not find any books.",
        '{"candidates": [ {"title": "x",, } ]}',
        '{"books": []}',
        '{"candidates": "none"}',
    ],
)
def test_malformed_replies_degrade(raw) -> None:
    outcome = parse_candidates(raw)
    assert isinstance(outcome, Degraded)
    assert outcome.reason
    assert outcome.candidates == ()


def test_example_object_before_reply_is_skipped() -> None:
    raw = (
        'Using the format {"title": "string", "confidence": 0.0} I found:\n'
        + _reply({"title": "Dune", "author": "Frank Herbert", "confidence": 0.9})
        + "\nLet me know if you need {more}."
    )
    outcome = parse_candidates(raw)

    assert isinstance(outcome, Ok)
    assert [c.title for c in outcome.candidates] == ["Dune"]


def test_unusable_candidates_are_dropped() -> None:
    raw = _reply(
        {"title": "Jane Eyre", "author": "Charlotte Brontë", "confidence": 0.8},
        {"title": "", "author": "Penguin", "confidence": 0.9},
        {"title": None, "author": "Melville", "confidence": 0.4},
        {"title": "1984", "author": "George Orwell", "confidence": 1.7},
        {"title": "Moby-Dick", "author": "Herman Melville", "confidence": "high"},
        {"title": "War and Peace", "author": "Leo Tolstoy"},
        "not an object",
    )
    outcome = parse_candidates(raw)
    assert isinstance(outcome, Ok)
    assert [c.title for c in outcome.candidates] == ["Jane Eyre"]


def test_blank_fields_become_none_and_duplicates_collapse() -> None:
    raw = _reply(
        {"title": "  The Great Gatsby ", "author": "F. Scott Fitzgerald", "subtitle": "  ", "confidence": 0.7},
        {"title": "THE GREAT GATSBY", "author": "f. scott fitzgerald", "subtitle": None, "confidence": 0.9},
        {"title": "The Hobbit", "author": "", "confidence": 0.6},
    )
    outcome = parse_candidates(raw)
    assert isinstance(outcome, Ok)
    assert len(outcome.candidates) == 2
    gatsby, hobbit = outcome.candidates
    assert gatsby.confidence == 0.9
    assert gatsby.subtitle is None
    assert hobbit.title == "The Hobbit"
    assert hobbit.author is None


def test_parsed_candidates_never_violate_bounds() -> None:
    replies = [
        _reply({"title": "A", "confidence": 0.0}, {"title": "B", "confidence": 1.0}),
        _reply({"title": " ", "confidence": 0.5}, {"title": "C", "confidence": -0.01}),
        _reply({"title": "D", "confidence": 0.5, "extra": [1, 2]}),
        DENNETT_REPLY,
    ]
    for raw in replies:
        outcome = parse_candidates(raw)
        for c in outcome.candidates:
            assert c.title.strip()
            assert 0.0 <= c.confidence <= 1.0


def test_malformed_reply_is_retried_once() -> None:
    model = ScriptedModel("not json at all", DENNETT_REPLY)
    outcome = Segmenter(model, malformed_retries=1).segment("DANIEL C. DENNETT")
    assert isinstance(outcome, Ok)
    assert len(model.prompts) == 2


def test_repeated_malformed_reply_degrades() -> None:
    model = ScriptedModel("still not json")
    outcome = Segmenter(model, malformed_retries=1).segment("DANIEL C. DENNETT")
    assert isinstance(outcome, Degraded)
    assert len(model.prompts) == 2


def test_blank_text_skips_model() -> None:
    model = ScriptedModel(DENNETT_REPLY)
    outcome = Segmenter(model).segment("  \n ")
    assert isinstance(outcome, Ok)
    assert outcome.candidates == ()
    assert model.prompts == []


def test_model_call_failure_propagates() -> None:
    class Boom(TextModel):
        def complete(self, prompt: str) -> str:
            raise RuntimeError("service unavailable")

    with pytest.raises(RuntimeError):
        Segmenter(Boom()).segment("TEXT")


def _worker(tmp_path, model):
    store = LocalResultStore(str(tmp_path))
    out = InMemoryQueue("validate")
    return SegmentationWorker(Segmenter(model), store, out), store, out


def test_worker_stores_and_forwards_candidates(tmp_path) -> None:
    model = ScriptedModel(DENNETT_REPLY)
    worker, store, out = _worker(tmp_path, model)
    worker.handle({"jobId": "j1", "extractedText": "DANIEL C. DENNETT FROM BACTERIA TO BACH AND BACK", "textractComplete": True})

    bodies = out.bodies()
    assert len(bodies) == 1
    body = bodies[0]
    assert body["jobId"] == "j1"
    assert body[FLAG_SEGMENT] is True
    assert body["textractComplete"] is True
    assert body["extractedText"].startswith("DANIEL")
    assert body["candidates"][0]["title"] == "From Bacteria to Bach and Back"
    assert store.get_json("j1", CANDIDATES)["candidates"][0]["author"] == "Daniel C. Dennett"


def test_worker_forwards_degraded_job(tmp_path) -> None:
    worker, store, out = _worker(tmp_path, ScriptedModel("garbage"))
    worker.handle({"jobId": "j2", "extractedText": "pc at P"})

    body = out.bodies()[0]
    assert body["candidates"] == []
    assert body[FLAG_SEGMENT] is True
    assert body["segmentationDegraded"]
    assert store.get_json("j2", CANDIDATES)["degraded"]


def test_redelivered_input_reuses_stored_output(tmp_path) -> None:
    model = ScriptedModel(DENNETT_REPLY)
    worker, _, out = _worker(tmp_path, model)
    msg = {"jobId": "j3", "extractedText": "DANIEL C. DENNETT"}
    worker.handle(msg)
    worker.handle(msg)

    assert len(model.prompts) == 1
    assert len(out) == 1


def test_already_segmented_message_is_forwarded_without_model(tmp_path) -> None:
    model = ScriptedModel(DENNETT_REPLY)
    worker, _, out = _worker(tmp_path, model)
    worker.handle({"jobId": "j4", "candidates": [], FLAG_SEGMENT: True})

    assert model.prompts == []
    assert out.bodies()[0]["jobId"] == "j4"


def test_missing_text_raises_for_redelivery(tmp_path) -> None:
    worker, _, _ = _worker(tmp_path, ScriptedModel(DENNETT_REPLY))
    with pytest.raises(ValueError):
        worker.handle({"jobId": "j5"})
