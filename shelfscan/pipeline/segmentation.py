from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, ValidationError

from shelfscan.core.models import (
    FLAG_SEGMENT,
    PROGRESS_COMPLETED,
    PROGRESS_SEGMENT,
    PROGRESS_STARTED,
    BookCandidate,
    ProgressFn,
    StageMessage,
)
from shelfscan.core.normalize import clean_text, fold
from shelfscan.integrations.llm import TextModel
from shelfscan.pipeline.queue import StageQueue
from shelfscan.pipeline.results import CANDIDATES, EXTRACTED_TEXT, ResultStore

logger = logging.getLogger(__name__)

SEGMENT_STAGE = "segment"

EXTRACTION_PROMPT = """You are an expert at reading OCR text taken from photographs of book spines and turning it into clean title/author records.

The text is a list of fragments. Fragments may be partial words, rotated, split across lines, duplicated, or unrelated noise. Identify the books you can support from adjacent fragments.

Rules:
1. Only emit a book when nearby fragments clearly support it.
2. Never invent a title, author or subtitle. Use null for anything that is not in the text.
3. Skip publisher names, imprint logos and single-character noise.
4. Merge fragments that clearly belong to the same book, and report a duplicated book once.
5. confidence (0.0 to 1.0) is how sure you are about grouping the fragments, not whether the book exists.
6. Reply with JSON only.

Example of messy input:

[
  "Harry",
  "POTTER AND THE",
  "Philosopher's Stone",
  "J. K.",
  "ROWLING",
  "Penguin",
  "THE GREAT GATSBY",
  "Fitzgerald",
  "SCOTT",
  "THE GREAT GATSBY",
  "George",
  "ORWELL 1984",
  "P",
  "Brontë",
  "JANE EYRE",
  "Charlotte",
  "pc",
  "at",
  "PRIDE AND",
  "PREJUDICE",
  "Jane",
  "Austen",
  "THE HOBBIT",
  "TOLKIEN",
  "milk",
  "TO KILL A",
  "Mockingbird",
  "Harper",
  "LEE",
  "MOBY-DICK",
  "Melville",
  "Herman",
  "WAR AND PEACE",
  "Tolstoy",
  "Leo"
]

It mixes author and title on one line (George ORWELL 1984), author and title split apart (JANE EYRE / Charlotte), publisher words (Penguin, milk), duplicates (THE GREAT GATSBY) and noise tokens (pc, P, at).

OCR text to work on:
{text}

Return JSON in exactly this shape and nothing else:
{{
  "candidates": [
    {{"title": "string", "author": "string or null", "subtitle": "string or null", "confidence": 0.0}}
  ]
}}
"""

_DECODER = json.JSONDecoder()


def build_prompt(text: str) -> str:
    return EXTRACTION_PROMPT.format(text=text)


class CandidateReply(BaseModel):
    model_config = ConfigDict(extra="ignore")

    title: Optional[str] = None
    author: Optional[str] = None
    subtitle: Optional[str] = None
    confidence: Optional[float] = None


class SegmentationReply(BaseModel):
    model_config = ConfigDict(extra="ignore")

    candidates: List[Any]


@dataclass(frozen=True)
class Ok:
    candidates: Tuple[BookCandidate, ...]

    @property
    def degraded(self) -> bool:
        return False


@dataclass(frozen=True)
class Degraded:
    reason: str

    @property
    def candidates(self) -> Tuple[BookCandidate, ...]:
        return ()

    @property
    def degraded(self) -> bool:
        return True


SegmentationOutcome = Union[Ok, Degraded]


def _opt(val: Optional[str]) -> Optional[str]:
    val = clean_text(val or "")
    return val or None


def _to_candidate(item: Any) -> Optional[BookCandidate]:
    try:
        reply = CandidateReply.model_validate(item)
    except ValidationError:
        return None
    title = clean_text(reply.title or "")
    if not title or reply.confidence is None:
        return None
    if not (0.0 <= reply.confidence <= 1.0):
        return None
    return BookCandidate(title=title, author=_opt(reply.author), subtitle=_opt(reply.subtitle), confidence=float(reply.confidence))


def _collapse(cands: List[BookCandidate]) -> Tuple[BookCandidate, ...]:
    best: Dict[Tuple[str, str], BookCandidate] = {}
    for c in cands:
        key = (fold(c.title), fold(c.author or ""))
        prev = best.get(key)
        if prev is None or c.confidence > prev.confidence:
            best[key] = c
    return tuple(best.values())


def _json_objects(raw: str) -> Iterator[Any]:
    """Each JSON object embedded in `raw`, left to right; nested objects are not yielded separately."""
    idx = raw.find("{")
    while idx != -1:
        try:
            obj, end = _DECODER.raw_decode(raw, idx)
        except ValueError:
            idx = raw.find("{", idx + 1)
            continue
        yield obj
        idx = raw.find("{", end)


def parse_candidates(raw: Optional[str]) -> SegmentationOutcome:
    """
    Parse a model reply into candidates.

    The reply may wrap its JSON in prose or echo an example object first; the
    first embedded object with a `candidates` list is used. Shape problems with
    the reply as a whole give Degraded(reason). Individual candidates that are
    unusable (no title, confidence missing or outside [0, 1], wrong types) are
    dropped and the rest kept.
    """
    if not raw or not raw.strip():
        return Degraded("empty model reply")
    if "{" not in raw:
        return Degraded("no JSON object in model reply")

    reply: Optional[SegmentationReply] = None
    errors = 0
    seen = False
    for data in _json_objects(raw):
        seen = True
        try:
            reply = SegmentationReply.model_validate(data)
            break
        except ValidationError as e:
            errors += e.error_count()
    if not seen:
        return Degraded("malformed JSON in model reply")
    if reply is None:
        return Degraded(f"model reply does not match schema ({errors} errors)")

    kept: List[BookCandidate] = []
    dropped = 0
    for item in reply.candidates:
        cand = _to_candidate(item)
        if cand is None:
            dropped += 1
            continue
        kept.append(cand)
    if dropped:
        logger.debug("dropped unusable candidates | dropped=%s | kept=%s", dropped, len(kept))
    return Ok(_collapse(kept))


class Segmenter:
    def __init__(self, model: TextModel, *, malformed_retries: int = 1) -> None:
        self.model = model
        self.malformed_retries = max(0, int(malformed_retries))

    def segment(self, text: str) -> SegmentationOutcome:
        if not (text or "").strip():
            return Ok(())
        prompt = build_prompt(text)
        outcome: SegmentationOutcome = Degraded("model not called")
        for attempt in range(1, self.malformed_retries + 2):
            outcome = parse_candidates(self.model.complete(prompt))
            if isinstance(outcome, Ok):
                return outcome
            logger.warning("malformed model output | attempt=%s/%s | reason=%s", attempt, self.malformed_retries + 1, outcome.reason)
        return outcome


class SegmentationWorker:
    def __init__(
        self,
        segmenter: Segmenter,
        store: ResultStore,
        out_queue: StageQueue,
        *,
        progress: Optional[ProgressFn] = None,
    ) -> None:
        self.segmenter = segmenter
        self.store = store
        self.out_queue = out_queue
        self.progress = progress

    def forward(self, msg: StageMessage) -> None:
        self.out_queue.send(msg.to_dict(), group_id=msg.job_id, dedup_id=msg.dedup_id(SEGMENT_STAGE))

    def _stored(self, job_id: str) -> Optional[Tuple[List[Dict[str, Any]], Optional[str]]]:
        data = self.store.get_json(job_id, CANDIDATES)
        if not isinstance(data, dict) or not isinstance(data.get("candidates"), list):
            return None
        return data["candidates"], data.get("degraded")

    def handle(self, body: Dict[str, Any]) -> None:
        msg = StageMessage.from_dict(body)
        if msg.flag(FLAG_SEGMENT):
            logger.info("already segmented, forwarding | job=%s", msg.job_id)
            self.forward(msg)
            return

        stored = self._stored(msg.job_id)
        fresh = stored is None
        if stored is not None:
            cands, reason = stored
            logger.info("reusing stored candidates | job=%s | candidates=%s", msg.job_id, len(cands))
        else:
            text = msg.get("extractedText")
            if text is None:
                text = self.store.get_text(msg.job_id, EXTRACTED_TEXT)
            if text is None:
                raise ValueError(f"job {msg.job_id} has no extracted text")
            if self.progress:
                self.progress(msg.job_id, PROGRESS_SEGMENT, PROGRESS_STARTED)
            outcome = self.segmenter.segment(text)
            cands = [c.to_dict() for c in outcome.candidates]
            reason = outcome.reason if isinstance(outcome, Degraded) else None
            record: Dict[str, Any] = {"candidates": cands}
            if reason:
                record["degraded"] = reason
            self.store.put_json(msg.job_id, CANDIDATES, record)
            logger.info("stage done | stage=segment | job=%s | candidates=%s | degraded=%s", msg.job_id, len(cands), bool(reason))

        fields: Dict[str, Any] = {"candidates": cands, FLAG_SEGMENT: True}
        if reason:
            fields["segmentationDegraded"] = reason
        self.forward(msg.advance(**fields))
        if fresh and self.progress:
            self.progress(msg.job_id, PROGRESS_SEGMENT, PROGRESS_COMPLETED)
