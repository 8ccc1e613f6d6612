from __future__ import annotations

import re
from typing import Iterable, List, Optional

ISBN10_RE = re.compile(r"^\d{9}[\dX]$")
ISBN13_RE = re.compile(r"^\d{13}$")

_HTML_RE = re.compile(r"<[^>]+>")
_WS_RE = re.compile(r"\s+")
_WORD_RE = re.compile(r"\w+", re.UNICODE)


def normalize_isbn(x: str) -> str:
    return re.sub(r"[^0-9Xx]", "", (x or "").strip()).upper()


def _isbn13_check_digit(first12: str) -> int:
    s = sum(int(c) * (3 if i % 2 else 1) for i, c in enumerate(first12))
    return (10 - s % 10) % 10


def is_valid_isbn10(isbn10: str) -> bool:
    isbn10 = normalize_isbn(isbn10)
    if not ISBN10_RE.match(isbn10):
        return False
    total = sum(i * int(ch) for i, ch in enumerate(isbn10[:9], start=1))
    total += 10 * (10 if isbn10[9] == "X" else int(isbn10[9]))
    return total % 11 == 0


def is_valid_isbn13(isbn13: str) -> bool:
    isbn13 = normalize_isbn(isbn13)
    return bool(ISBN13_RE.match(isbn13)) and _isbn13_check_digit(isbn13[:12]) == int(isbn13[12])


def isbn10_to_isbn13(isbn10: str) -> str:
    if not is_valid_isbn10(isbn10):
        return ""
    core = "978" + normalize_isbn(isbn10)[:9]
    return f"{core}{_isbn13_check_digit(core)}"


def best_isbn(values: Iterable[str]) -> Optional[str]:
    """First valid ISBN-13 among `values`, else the first valid ISBN-10 converted to 13."""
    isbn10s: List[str] = []
    for v in values:
        n = normalize_isbn(v)
        if is_valid_isbn13(n):
            return n
        if is_valid_isbn10(n):
            isbn10s.append(n)
    for n in isbn10s:
        converted = isbn10_to_isbn13(n)
        if converted:
            return converted
    return None


def clean_text(text: str, max_len: int = 0) -> str:
    if not text:
        return ""
    t = _HTML_RE.sub(" ", str(text))
    t = _WS_RE.sub(" ", t).strip()
    if max_len and len(t) > max_len:
        return t[: max_len - 1].rstrip() + "…"
    return t


def fold(text: Optional[str]) -> str:
    """Case-folded, whitespace-collapsed form used for comparisons."""
    return _WS_RE.sub(" ", (text or "")).strip().casefold()


def words(text: Optional[str]) -> List[str]:
    return _WORD_RE.findall(fold(text))
