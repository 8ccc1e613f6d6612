from __future__ import annotations

import logging
import threading
from typing import Callable, List, Optional

import requests

from shelfscan.core.models import BookCandidate, ValidationResult
from shelfscan.core.normalize import best_isbn, clean_text
from shelfscan.integrations.http_client import PROVIDER_MAX_BACKOFF_S, get_json_with_retries, make_session

logger = logging.getLogger(__name__)

GOOGLE_BOOKS_URL = "https://www.googleapis.com/books/v1/volumes"
OPENLIBRARY_SEARCH_URL = "https://openlibrary.org/search.json"
OPENLIBRARY_BASE = "https://openlibrary.org"
OPENLIBRARY_COVER_URL = "https://covers.openlibrary.org/b/id/{cover_id}-M.jpg"


class BookProvider:
    """An external bibliographic catalog queried with a candidate's title and primary author."""

    name = "provider"

    def __init__(
        self,
        *,
        timeout_s: float = 8.0,
        retries: int = 1,
        max_results: int = 5,
        session_factory: Optional[Callable[[], requests.Session]] = None,
    ) -> None:
        self.timeout_s = timeout_s
        self.retries = retries
        self.max_results = max(1, int(max_results))
        self._session_factory = session_factory or make_session
        self._local = threading.local()

    def session(self) -> requests.Session:
        sess = getattr(self._local, "session", None)
        if sess is None:
            sess = self._session_factory()
            self._local.session = sess
        return sess

    def search(self, candidate: BookCandidate) -> List[ValidationResult]:
        raise NotImplementedError


def _primary_author(candidate: BookCandidate) -> str:
    authors = candidate.authors()
    return authors[0] if authors else ""


class GoogleBooksProvider(BookProvider):
    name = "google_books"

    def __init__(self, api_key: Optional[str] = None, **kwargs) -> None:
        super().__init__(**kwargs)
        self.api_key = api_key

    def build_params(self, candidate: BookCandidate) -> dict:
        q_parts = [f'intitle:"{candidate.title}"']
        author = _primary_author(candidate)
        if author:
            q_parts.append(f'inauthor:"{author}"')
        params = {
            "q": " ".join(q_parts),
            "maxResults": str(self.max_results),
            "printType": "books",
        }
        if self.api_key:
            params["key"] = self.api_key
        return params

    def search(self, candidate: BookCandidate) -> List[ValidationResult]:
        data = get_json_with_retries(
            self.session(),
            GOOGLE_BOOKS_URL,
            self.build_params(candidate),
            self.timeout_s,
            self.retries,
            label="GoogleBooks",
            max_backoff_s=PROVIDER_MAX_BACKOFF_S,
        )
        return [self.parse_item(item) for item in (data.get("items") or [])[: self.max_results] if isinstance(item, dict)]

    def parse_item(self, item: dict) -> ValidationResult:
        info = item.get("volumeInfo") or {}
        identifiers = [
            str(i.get("identifier") or "")
            for i in (info.get("industryIdentifiers") or [])
            if isinstance(i, dict)
        ]
        image_links = info.get("imageLinks") or {}
        thumbnail = None
        if isinstance(image_links, dict):
            thumbnail = image_links.get("thumbnail") or image_links.get("smallThumbnail") or None
        title = clean_text(info.get("title") or "")
        return ValidationResult(
            validated=True,
            title=title or None,
            authors=tuple(clean_text(a) for a in (info.get("authors") or []) if str(a).strip()),
            isbn=best_isbn(identifiers),
            publisher=clean_text(info.get("publisher") or "") or None,
            published_date=clean_text(info.get("publishedDate") or "") or None,
            thumbnail_url=thumbnail,
            info_url=info.get("infoLink") or info.get("canonicalVolumeLink") or None,
            provider=self.name,
        )


class OpenLibraryProvider(BookProvider):
    name = "openlibrary"

    def build_params(self, candidate: BookCandidate) -> dict:
        params = {
            "title": candidate.title,
            "limit": str(self.max_results),
            "fields": "key,title,author_name,isbn,publisher,first_publish_year,cover_i",
        }
        author = _primary_author(candidate)
        if author:
            params["author"] = author
        return params

    def search(self, candidate: BookCandidate) -> List[ValidationResult]:
        data = get_json_with_retries(
            self.session(),
            OPENLIBRARY_SEARCH_URL,
            self.build_params(candidate),
            self.timeout_s,
            self.retries,
            label="OpenLibrarySearch",
            max_backoff_s=PROVIDER_MAX_BACKOFF_S,
        )
        return [self.parse_doc(doc) for doc in (data.get("docs") or [])[: self.max_results] if isinstance(doc, dict)]

    def parse_doc(self, doc: dict) -> ValidationResult:
        publishers = doc.get("publisher") or []
        publisher = clean_text(publishers[0]) if isinstance(publishers, list) and publishers else ""
        cover_id = doc.get("cover_i")
        key = doc.get("key") or ""
        year = doc.get("first_publish_year")
        return ValidationResult(
            validated=True,
            title=clean_text(doc.get("title") or "") or None,
            authors=tuple(clean_text(a) for a in (doc.get("author_name") or []) if str(a).strip()),
            isbn=best_isbn(str(i) for i in (doc.get("isbn") or [])),
            publisher=publisher or None,
            published_date=str(year) if year else None,
            thumbnail_url=OPENLIBRARY_COVER_URL.format(cover_id=cover_id) if cover_id else None,
            info_url=f"{OPENLIBRARY_BASE}{key}" if key else None,
            provider=self.name,
        )
