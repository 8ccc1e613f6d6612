from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, List, Sequence, Tuple

from shelfscan.core.models import STATUS_VALIDATED, FinalResults, ValidatedBook


@dataclass(frozen=True)
class GroundTruthBook:
    title: str
    authors: Tuple[str, ...] = ()

    @classmethod
    def from_dict(cls, d: dict) -> "GroundTruthBook":
        authors = d.get("authors")
        if authors is None and d.get("author"):
            authors = [d["author"]]
        return cls(
            title=str(d.get("title") or "").strip(),
            authors=tuple(str(a).strip() for a in (authors or []) if str(a).strip()),
        )


def load_ground_truth(data: Any) -> List[GroundTruthBook]:
    items = data.get("books") if isinstance(data, dict) else data
    if not isinstance(items, list):
        raise ValueError("ground truth must be a list of books or {\"books\": [...]}")
    return [GroundTruthBook.from_dict(b) for b in items if isinstance(b, dict) and b.get("title")]


def _contains_either(a: str, b: str) -> bool:
    a, b = a.lower(), b.lower()
    if not a or not b:
        return False
    return a in b or b in a


def _book_authors(book: ValidatedBook) -> List[str]:
    authors = list(book.candidate.authors())
    authors.extend(book.validation.authors)
    return authors


def matches_truth(book: ValidatedBook, truth: GroundTruthBook) -> bool:
    titles = [book.candidate.title]
    if book.validation.title:
        titles.append(book.validation.title)
    if any(_contains_either(t, truth.title) for t in titles):
        return True
    return any(_contains_either(ca, ta) for ta in truth.authors for ca in _book_authors(book))


def calculate_accuracy(books: Sequence[ValidatedBook], ground_truth: Sequence[GroundTruthBook]) -> float:
    """Share of ground-truth books matched (title or author containment) by at least one result."""
    if not ground_truth:
        return 0.0
    matched = sum(1 for t in ground_truth if any(matches_truth(b, t) for b in books))
    return matched / len(ground_truth)


def build_report_data(results: FinalResults, ground_truth: Iterable[GroundTruthBook]) -> dict:
    truth = list(ground_truth)
    books = list(results.books)
    return {
        "generated_at": datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%SZ"),
        "job_id": results.job_id,
        "total": len(books),
        "validated": sum(1 for b in books if b.status == STATUS_VALIDATED),
        "degraded": results.degraded,
        "accuracy": calculate_accuracy(books, truth),
        "truth": [(t.title, ", ".join(t.authors), any(matches_truth(b, t) for b in books)) for t in truth],
        "books": [
            (
                b.candidate.title,
                b.candidate.author or "",
                b.status,
                b.match_score,
                b.validation.isbn or "",
            )
            for b in books
        ],
    }


def render_markdown(data: dict) -> str:
    total = data["total"]
    ratio = (data["validated"] / total) if total else 0.0
    out = []
    out.append("# Shelf Scan Report")
    out.append("")
    out.append(f"Generated: {data['generated_at']}")
    out.append(f"Job: {data['job_id']}")
    out.append("")
    out.append(f"Accuracy: {data['accuracy'] * 100:.1f}%")
    out.append(f"Validated: {data['validated']}/{total} ({ratio * 100:.1f}%)")
    if data.get("degraded"):
        out.append(f"Segmentation degraded: {data['degraded']}")
    out.append("")
    out.append("## Ground Truth")
    out.append("| Title | Authors | Found |")
    out.append("| --- | --- | --- |")
    for title, authors, found in data["truth"]:
        out.append(f"| {title} | {authors} | {'yes' if found else 'no'} |")
    out.append("")
    out.append("## Results")
    out.append("| Title | Author | Status | Score | ISBN |")
    out.append("| --- | --- | --- | --- | --- |")
    for title, author, status, score, isbn in data["books"]:
        out.append(f"| {title} | {author} | {status} | {score:.2f} | {isbn} |")
    return "\n".join(out)
