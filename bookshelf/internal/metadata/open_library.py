"""
Open Library provider: the secondary catalog, and the work-detail service
used to recover descriptions.

Search docs are loosely typed (author name lists, cover ids, untyped ISBN
lists, subjects) so the raw models accept whatever shape the API sends and
the mapping step decides what to keep.
"""
import asyncio
from typing import Any, Optional, Union

from aiohttp import ClientError, ClientSession, ClientTimeout
from pydantic import BaseModel, Field, ValidationError, field_validator

from bookshelf.internal.env_settings import ProviderSettings
from bookshelf.internal.metadata.covers import open_library_cover_url
from bookshelf.internal.metadata.http import SleepFunc, get_json, get_json_with_retry
from bookshelf.internal.models import BookRecord, FetchResult, ProviderEnum, ProviderQuery
from bookshelf.internal.normalize import UNKNOWN_AUTHOR, clean_isbn, to_marc_language
from bookshelf.util.exceptions import (
    ProviderTransientError,
    handle_external_api_error,
    handle_validation_error,
)
from bookshelf.util.log import logger

MAX_SUBJECTS = 20
MAX_SEARCH_LIMIT = 100


def _as_strings(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return [v for v in value if isinstance(v, str) and v.strip()]
    return []


def _strip_key(key: str | None) -> str:
    """'/works/OL45883W' -> 'OL45883W'"""
    if not key:
        return ""
    return key.rstrip("/").split("/")[-1]


class OpenLibraryText(BaseModel):
    """Open Library wraps long text as {"type": "/type/text", "value": ...}."""
    type: Optional[str] = None
    value: str = ""


TextField = Union[str, OpenLibraryText, list[str], None]


def text_value(value: TextField) -> str:
    if isinstance(value, OpenLibraryText):
        return value.value.strip()
    if isinstance(value, list):
        return " ".join(v.strip() for v in value if v).strip()
    return (value or "").strip()


class OpenLibraryDoc(BaseModel):
    """One document of an Open Library search response."""
    key: Optional[str] = None
    title: Optional[str] = None
    author_name: list[str] = Field(default_factory=list)
    isbn: list[str] = Field(default_factory=list)
    cover_i: Optional[int] = None
    cover_edition_key: Optional[str] = None
    edition_key: list[str] = Field(default_factory=list)
    first_publish_year: Optional[int] = None
    publish_year: list[int] = Field(default_factory=list)
    first_sentence: TextField = None
    language: list[str] = Field(default_factory=list)
    publisher: list[str] = Field(default_factory=list)
    subject: list[str] = Field(default_factory=list)
    number_of_pages_median: Optional[int] = None

    @field_validator("author_name", "isbn", "edition_key", "language", "publisher", "subject", mode="before")
    @classmethod
    def _string_list(cls, value: Any) -> list[str]:
        return _as_strings(value)

    @field_validator("publish_year", mode="before")
    @classmethod
    def _year_list(cls, value: Any) -> list[int]:
        if not isinstance(value, list):
            return []
        return [v for v in value if isinstance(v, int)]

    @field_validator("cover_i", "first_publish_year", "number_of_pages_median", mode="before")
    @classmethod
    def _optional_int(cls, value: Any) -> Optional[int]:
        return value if isinstance(value, int) and not isinstance(value, bool) else None


class OpenLibrarySearchResponse(BaseModel):
    docs: list[OpenLibraryDoc] = Field(default_factory=list)
    numFound: int = 0


class OpenLibraryWorkRef(BaseModel):
    key: str = ""


class OpenLibraryWork(BaseModel):
    """A work or edition record; editions link to their work through ``works``."""
    key: Optional[str] = None
    title: Optional[str] = None
    description: TextField = None
    first_sentence: TextField = None
    works: list[OpenLibraryWorkRef] = Field(default_factory=list)
    covers: list[int] = Field(default_factory=list)

    @field_validator("covers", mode="before")
    @classmethod
    def _covers(cls, value: Any) -> list[int]:
        if not isinstance(value, list):
            return []
        # -1 marks a deleted cover
        return [v for v in value if isinstance(v, int) and v > 0]

    def best_description(self) -> str:
        return text_value(self.description) or text_value(self.first_sentence)


def pick_isbn(isbns: list[str]) -> str:
    """Untyped ISBN list: prefer a 13-digit value, then a 10-digit one."""
    cleaned = [clean_isbn(i) for i in isbns if clean_isbn(i)]
    for length in (13, 10):
        for isbn in cleaned:
            if len(isbn) == length:
                return isbn
    return cleaned[0] if cleaned else ""


class OpenLibraryProvider:
    """Provider for the Open Library search, edition and work APIs."""

    name = ProviderEnum.open_library
    service = "Open Library"

    base_url: str
    covers_url: str
    timeout: ClientTimeout
    headers: dict[str, str]
    retry_attempts: int
    retry_base_delay: float
    _sleep: SleepFunc

    def __init__(self, settings: ProviderSettings, sleep: SleepFunc = asyncio.sleep):
        self.base_url = settings.open_library_base_url.rstrip("/")
        self.covers_url = settings.open_library_covers_url
        self.timeout = ClientTimeout(total=settings.request_timeout)
        self.headers = {"User-Agent": settings.user_agent}
        self.retry_attempts = settings.work_retry_attempts
        self.retry_base_delay = settings.work_retry_base_delay
        self._sleep = sleep

    def build_params(self, query: ProviderQuery) -> dict[str, str | int]:
        params: dict[str, str | int] = {
            "limit": min(query.max_results * 5, MAX_SEARCH_LIMIT),
        }
        if query.author:
            params["author"] = query.author
        if query.title:
            params["title"] = query.title
        if query.isbn:
            params["isbn"] = query.isbn
        if query.subject:
            params["subject"] = query.subject
        if query.text and not (query.author or query.title or query.isbn):
            params["q"] = query.text
        language = to_marc_language(query.language) if query.language else None
        if language:
            params["language"] = language
        return params

    def to_record(self, doc: OpenLibraryDoc) -> BookRecord:
        authors = doc.author_name
        author = authors[0] if authors else UNKNOWN_AUTHOR
        work_key = _strip_key(doc.key)
        isbn = pick_isbn(doc.isbn)
        olid = doc.cover_edition_key or (doc.edition_key[0] if doc.edition_key else "")

        cover_url = ""
        fallback_urls: dict[str, str] = {}
        if doc.cover_i:
            cover_url = open_library_cover_url(self.covers_url, "id", doc.cover_i)
        else:
            if isbn:
                fallback_urls["isbn"] = open_library_cover_url(self.covers_url, "isbn", isbn)
            if olid:
                fallback_urls["olid"] = open_library_cover_url(self.covers_url, "olid", olid)

        if doc.first_publish_year:
            published = doc.first_publish_year
        elif doc.publish_year:
            published = min(doc.publish_year)
        else:
            published = None

        if work_key:
            record_id = f"OL-{work_key}"
        else:
            fallback = olid or (doc.title or "unknown").replace(" ", "")
            record_id = f"OL-{fallback}"

        return BookRecord(
            id=record_id,
            title=doc.title or "",
            primary_author=author,
            authors=authors,
            published_date=published,
            # first_sentence is a short placeholder the enricher may replace
            description=text_value(doc.first_sentence),
            cover_url=cover_url,
            isbn=isbn,
            language=doc.language[0] if doc.language else None,
            publisher=doc.publisher[0] if doc.publisher else "",
            categories=doc.subject[:MAX_SUBJECTS],
            page_count=doc.number_of_pages_median or 0,
            cover_fallback_urls=fallback_urls,
            work_key=work_key if work_key.endswith("W") else "",
            source=self.name,
        )

    async def search(
        self,
        client_session: ClientSession,
        params: dict[str, str | int],
    ) -> OpenLibrarySearchResponse:
        data = await get_json(
            client_session,
            f"{self.base_url}/search.json",
            self.service,
            self.timeout,
            params=params,
            headers=self.headers,
        )
        return OpenLibrarySearchResponse.model_validate(data)

    async def fetch(
        self,
        client_session: ClientSession,
        query: ProviderQuery,
    ) -> FetchResult:
        """Run one search and map it; provider failures become ``ok=False``."""
        if query.is_empty():
            return FetchResult(records=[], ok=True)

        try:
            response = await self.search(client_session, self.build_params(query))
        except ProviderTransientError as e:
            handle_external_api_error(e, self.service, "search", status=e.status)
            return FetchResult.failed(rate_limited=e.rate_limited)
        except (ClientError, TimeoutError) as e:
            handle_external_api_error(e, self.service, "HTTP request")
            return FetchResult.failed()
        except ValidationError as e:
            handle_validation_error(e, "Open Library search response")
            return FetchResult.failed()
        except ValueError as e:
            handle_external_api_error(e, self.service, "parse response")
            return FetchResult.failed()

        records = [self.to_record(doc) for doc in response.docs]
        logger.debug(
            "Open Library search complete",
            results=len(records),
            num_found=response.numFound,
        )
        return FetchResult(records=records, ok=True)

    async def _get_work(self, client_session: ClientSession, path: str) -> OpenLibraryWork:
        # Detail lookups only; the search chain falls back instead of retrying
        data = await get_json_with_retry(
            client_session,
            f"{self.base_url}{path}",
            self.service,
            self.timeout,
            attempts=self.retry_attempts,
            base_delay=self.retry_base_delay,
            headers=self.headers,
            sleep=self._sleep,
        )
        return OpenLibraryWork.model_validate(data)

    async def get_edition_by_isbn(
        self, client_session: ClientSession, isbn: str
    ) -> OpenLibraryWork:
        return await self._get_work(client_session, f"/isbn/{clean_isbn(isbn)}.json")

    async def get_work(self, client_session: ClientSession, work_key: str) -> OpenLibraryWork:
        return await self._get_work(client_session, f"/works/{_strip_key(work_key)}.json")

    async def find_work_key(
        self, client_session: ClientSession, title: str, author: str
    ) -> str:
        """Best-matching work id for a title+author pair, or empty string."""
        response = await self.search(
            client_session, {"title": title, "author": author, "limit": 1}
        )
        if not response.docs:
            return ""
        return _strip_key(response.docs[0].key)
