from __future__ import annotations

import re
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

# Stage flags carried on the wire (field names kept from the deployed message format).
FLAG_OCR = "textractComplete"
FLAG_SEGMENT = "bedrockComplete"
FLAG_VALIDATE = "validationComplete"

# Progress pushes name the stage by the service doing the work.
PROGRESS_OCR = "textract"
PROGRESS_SEGMENT = "bedrock"
PROGRESS_VALIDATE = "validation"
PROGRESS_STARTED = "started"
PROGRESS_COMPLETED = "completed"

# (job_id, stage, status)
ProgressFn = Callable[[str, str, str], None]

STATUS_VALIDATED = "validated"
STATUS_UNVALIDATED = "unvalidated"

CONN_CONNECTED = "connected"
CONN_SUBSCRIBED = "subscribed"

_AUTHOR_SPLIT = re.compile(r"\s*(?:&|;|\band\b)\s*", re.IGNORECASE)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def new_job_id(name: Optional[str] = None) -> str:
    """Mint a job id once, at ingestion. `<name>-<epoch millis>` or a uuid hex."""
    stem = re.sub(r"[^A-Za-z0-9_-]+", "-", (name or "").strip()).strip("-")
    if not stem:
        return uuid.uuid4().hex
    return f"{stem}-{int(time.time() * 1000)}"


def _opt_str(val: Any) -> Optional[str]:
    if val is None:
        return None
    s = str(val).strip()
    return s or None


@dataclass(frozen=True)
class Job:
    job_id: str
    created_at: str

    def first_message(self, bucket: str, key: str) -> "StageMessage":
        return StageMessage(job_id=self.job_id, payload={"bucket": bucket, "key": key, "timestamp": self.created_at})


@dataclass(frozen=True)
class BookCandidate:
    title: str
    author: Optional[str]
    subtitle: Optional[str]
    confidence: float

    def __post_init__(self) -> None:
        if not (self.title or "").strip():
            raise ValueError("candidate title must be non-empty")
        if not (0.0 <= float(self.confidence) <= 1.0):
            raise ValueError(f"candidate confidence out of range: {self.confidence}")

    def authors(self) -> List[str]:
        if not self.author:
            return []
        return [a.strip() for a in _AUTHOR_SPLIT.split(self.author) if a.strip()]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "author": self.author,
            "subtitle": self.subtitle,
            "confidence": self.confidence,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "BookCandidate":
        return cls(
            title=str(d.get("title") or "").strip(),
            author=_opt_str(d.get("author")),
            subtitle=_opt_str(d.get("subtitle")),
            confidence=float(d.get("confidence") or 0.0),
        )


@dataclass(frozen=True)
class ValidationResult:
    validated: bool
    title: Optional[str] = None
    authors: Tuple[str, ...] = ()
    isbn: Optional[str] = None
    publisher: Optional[str] = None
    published_date: Optional[str] = None
    thumbnail_url: Optional[str] = None
    info_url: Optional[str] = None
    provider: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"validated": self.validated}
        pairs = (
            ("title", self.title),
            ("authors", list(self.authors) if self.authors else None),
            ("isbn", self.isbn),
            ("publisher", self.publisher),
            ("publishedDate", self.published_date),
            ("thumbnailUrl", self.thumbnail_url),
            ("infoUrl", self.info_url),
            ("provider", self.provider),
            ("error", self.error),
        )
        for key, val in pairs:
            if val is not None:
                out[key] = val
        return out

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ValidationResult":
        return cls(
            validated=bool(d.get("validated")),
            title=_opt_str(d.get("title")),
            authors=tuple(str(a) for a in (d.get("authors") or []) if str(a).strip()),
            isbn=_opt_str(d.get("isbn")),
            publisher=_opt_str(d.get("publisher")),
            published_date=_opt_str(d.get("publishedDate")),
            thumbnail_url=_opt_str(d.get("thumbnailUrl") or d.get("thumbnail")),
            info_url=_opt_str(d.get("infoUrl")),
            provider=_opt_str(d.get("provider")),
            error=_opt_str(d.get("error")),
        )


@dataclass(frozen=True)
class ValidatedBook:
    candidate: BookCandidate
    validation: ValidationResult
    status: str
    match_score: float

    @property
    def confidence(self) -> float:
        return self.candidate.confidence

    def to_dict(self) -> Dict[str, Any]:
        out = self.candidate.to_dict()
        out["validation"] = self.validation.to_dict()
        out["status"] = self.status
        out["matchScore"] = round(self.match_score, 4)
        return out

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "ValidatedBook":
        return cls(
            candidate=BookCandidate.from_dict(d),
            validation=ValidationResult.from_dict(d.get("validation") or {}),
            status=str(d.get("status") or STATUS_UNVALIDATED),
            match_score=float(d.get("matchScore") or 0.0),
        )


@dataclass(frozen=True)
class FinalResults:
    job_id: str
    timestamp: str
    books: Tuple[ValidatedBook, ...]
    degraded: Optional[str] = None

    @property
    def total_candidates(self) -> int:
        return len(self.books)

    @property
    def validated_count(self) -> int:
        return sum(1 for b in self.books if b.status == STATUS_VALIDATED)

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "jobId": self.job_id,
            "timestamp": self.timestamp,
            "totalCandidates": self.total_candidates,
            "validatedCount": self.validated_count,
            "books": [b.to_dict() for b in self.books],
            FLAG_VALIDATE: True,
        }
        if self.degraded:
            out["degraded"] = self.degraded
        return out

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "FinalResults":
        return cls(
            job_id=str(d["jobId"]),
            timestamp=str(d.get("timestamp") or ""),
            books=tuple(ValidatedBook.from_dict(b) for b in (d.get("books") or [])),
            degraded=_opt_str(d.get("degraded")),
        )


@dataclass(frozen=True)
class CompletionEvent:
    job_id: str
    books: Tuple[ValidatedBook, ...]
    validated_books: int
    total_candidates: int
    results_location: str
    status: str = "complete"

    @classmethod
    def from_results(cls, results: FinalResults, location: str) -> "CompletionEvent":
        return cls(
            job_id=results.job_id,
            books=results.books,
            validated_books=results.validated_count,
            total_candidates=results.total_candidates,
            results_location=location,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "jobId": self.job_id,
            "status": self.status,
            "books": [b.to_dict() for b in self.books],
            "validatedBooks": self.validated_books,
            "totalCandidates": self.total_candidates,
            "resultsLocation": self.results_location,
            FLAG_VALIDATE: True,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "CompletionEvent":
        return cls(
            job_id=str(d["jobId"]),
            status=str(d.get("status") or "complete"),
            books=tuple(ValidatedBook.from_dict(b) for b in (d.get("books") or [])),
            validated_books=int(d.get("validatedBooks") or 0),
            total_candidates=int(d.get("totalCandidates") or 0),
            results_location=str(d.get("resultsLocation") or ""),
        )

    def client_push(self) -> Dict[str, Any]:
        return {
            "type": "processingComplete",
            "jobId": self.job_id,
            "status": self.status,
            "timestamp": utc_now_iso(),
            "results": {
                "totalCandidates": self.total_candidates,
                "validatedBooks": self.validated_books,
                "books": [b.to_dict() for b in self.books],
            },
        }


@dataclass(frozen=True)
class ConnectionRecord:
    job_id: str
    session_handle: str
    status: str
    expires_at: int

    def is_expired(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return now >= self.expires_at


@dataclass(frozen=True)
class StageMessage:
    """
    Envelope for every queue hop. The wire form is one flat JSON object;
    stages only ever add fields, and fields this code does not know about are
    carried through untouched.
    """

    job_id: str
    payload: Dict[str, Any] = field(default_factory=dict)

    def flag(self, name: str) -> bool:
        return bool(self.payload.get(name))

    def get(self, key: str, default: Any = None) -> Any:
        return self.payload.get(key, default)

    def advance(self, **fields: Any) -> "StageMessage":
        merged = dict(self.payload)
        merged.update(fields)
        return StageMessage(job_id=self.job_id, payload=merged)

    def candidates(self) -> List[BookCandidate]:
        out: List[BookCandidate] = []
        for raw in self.payload.get("candidates") or []:
            if isinstance(raw, dict):
                out.append(BookCandidate.from_dict(raw))
        return out

    def dedup_id(self, stage: str) -> str:
        return f"{self.job_id}:{stage}"

    def to_dict(self) -> Dict[str, Any]:
        out = dict(self.payload)
        out["jobId"] = self.job_id
        return out

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "StageMessage":
        job_id = str(d.get("jobId") or "").strip()
        if not job_id:
            raise ValueError("stage message has no jobId")
        payload = {k: v for k, v in d.items() if k != "jobId"}
        return cls(job_id=job_id, payload=payload)
