"""
Google Books API provider: the primary, rich-metadata source.
"""
import hashlib
from typing import Dict, List, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout
from pydantic import BaseModel, Field, ValidationError

from bookshelf.internal.env_settings import ProviderSettings
from bookshelf.internal.metadata.covers import open_library_cover_url
from bookshelf.internal.metadata.http import get_json
from bookshelf.internal.models import BookRecord, FetchResult, ProviderEnum, ProviderQuery
from bookshelf.internal.normalize import UNKNOWN_AUTHOR, clean_isbn, ensure_https
from bookshelf.util.exceptions import (
    ProviderTransientError,
    handle_external_api_error,
    handle_validation_error,
)
from bookshelf.util.log import logger


class GoogleBooksIdentifier(BaseModel):
    type: str = ""
    identifier: str = ""


class GoogleBooksVolumeInfo(BaseModel):
    """Google Books API volume info response model."""
    title: Optional[str] = None
    subtitle: Optional[str] = None
    authors: List[str] = Field(default_factory=list)
    description: Optional[str] = None
    categories: List[str] = Field(default_factory=list)
    imageLinks: Optional[Dict[str, str]] = None
    publishedDate: Optional[str] = None
    publisher: Optional[str] = None
    language: Optional[str] = None
    pageCount: Optional[int] = None
    industryIdentifiers: Optional[List[GoogleBooksIdentifier]] = None


class GoogleBooksItem(BaseModel):
    """Google Books API item response model."""
    id: Optional[str] = None
    volumeInfo: GoogleBooksVolumeInfo = Field(default_factory=GoogleBooksVolumeInfo)


class GoogleBooksResponse(BaseModel):
    """Google Books API search response model."""
    items: List[GoogleBooksItem] = Field(default_factory=list)
    totalItems: int = 0


def _fallback_id(title: str, author: str) -> str:
    hash_input = f"{title.lower().strip()}:{author.lower().strip()}"
    return hashlib.sha256(hash_input.encode()).hexdigest()[:11]


class GoogleBooksProvider:
    """Provider for the Google Books volumes search API."""

    name = ProviderEnum.google_books
    service = "Google Books"

    base_url: str
    api_key: str
    covers_url: str
    timeout: ClientTimeout

    def __init__(self, settings: ProviderSettings):
        self.base_url = settings.google_books_base_url
        self.api_key = settings.google_books_api_key
        self.covers_url = settings.open_library_covers_url
        self.timeout = ClientTimeout(total=settings.request_timeout)

    def build_query(self, query: ProviderQuery) -> str:
        """Translate a provider query into Google's ``q`` syntax."""
        if query.text:
            terms = [query.text]
        else:
            terms = []
            if query.title:
                terms.append(f"intitle:{query.title}")
            if query.author:
                terms.append(f'inauthor:"{query.author}"')
            if query.isbn:
                terms.append(f"isbn:{query.isbn}")
        if query.subject:
            terms.append(f'subject:"{query.subject}"')
        return " ".join(terms)

    def _extract_isbn(self, volume_info: GoogleBooksVolumeInfo) -> str:
        """Extract ISBN from industry identifiers."""
        if not volume_info.industryIdentifiers:
            return ""

        # Prefer ISBN_13, fall back to ISBN_10
        for wanted in ("ISBN_13", "ISBN_10"):
            for identifier in volume_info.industryIdentifiers:
                if identifier.type == wanted and identifier.identifier:
                    return identifier.identifier

        return ""

    def _get_best_cover(self, image_links: Optional[Dict[str, str]]) -> str:
        """Get the best available cover image."""
        if not image_links:
            return ""

        for size in ["extraLarge", "large", "medium", "small", "thumbnail", "smallThumbnail"]:
            if image_links.get(size):
                return ensure_https(image_links[size])

        for url in image_links.values():
            if url:
                return ensure_https(url)

        return ""

    def to_record(self, item: GoogleBooksItem) -> BookRecord:
        volume_info = item.volumeInfo
        authors = [a for a in volume_info.authors if a and a.strip()]
        author = authors[0] if authors else UNKNOWN_AUTHOR
        title = volume_info.title or ""
        isbn = self._extract_isbn(volume_info)
        cover_url = self._get_best_cover(volume_info.imageLinks)

        fallback_urls: dict[str, str] = {}
        if not cover_url and isbn:
            fallback_urls["isbn"] = open_library_cover_url(self.covers_url, "isbn", clean_isbn(isbn))

        volume_id = item.id or _fallback_id(title, author)
        return BookRecord(
            id=f"GB-{volume_id}",
            title=title,
            primary_author=author,
            authors=authors,
            published_date=volume_info.publishedDate,
            description=volume_info.description or "",
            cover_url=cover_url,
            isbn=isbn,
            language=volume_info.language,
            publisher=volume_info.publisher or "",
            categories=volume_info.categories,
            page_count=volume_info.pageCount or 0,
            cover_fallback_urls=fallback_urls,
            source=self.name,
        )

    async def search_books(
        self,
        client_session: ClientSession,
        query: ProviderQuery,
    ) -> GoogleBooksResponse:
        """Search Google Books API. Raises on any provider failure."""
        params: dict[str, str | int] = {
            "q": self.build_query(query),
            "maxResults": query.max_results,
            "printType": "books",
            "orderBy": "relevance",
        }
        if query.language:
            params["langRestrict"] = query.language
        if self.api_key:
            params["key"] = self.api_key

        data = await get_json(
            client_session, self.base_url, self.service, self.timeout, params=params
        )
        return GoogleBooksResponse.model_validate(data)

    async def fetch(
        self,
        client_session: ClientSession,
        query: ProviderQuery,
    ) -> FetchResult:
        """Run one search and map it; provider failures become ``ok=False``."""
        if query.is_empty():
            return FetchResult(records=[], ok=True)

        try:
            response = await self.search_books(client_session, query)
        except ProviderTransientError as e:
            if e.rate_limited:
                logger.warning(
                    "Google Books rate limited, falling back",
                    status=e.status,
                    query=query.text or query.title or query.author,
                )
            else:
                handle_external_api_error(e, self.service, "search", status=e.status)
            return FetchResult.failed(rate_limited=e.rate_limited)
        except (ClientError, TimeoutError) as e:
            handle_external_api_error(e, self.service, "HTTP request")
            return FetchResult.failed()
        except ValidationError as e:
            handle_validation_error(e, "Google Books response")
            return FetchResult.failed()
        except ValueError as e:
            handle_external_api_error(e, self.service, "parse response")
            return FetchResult.failed()

        records = [self.to_record(item) for item in response.items]
        logger.debug(
            "Google Books search complete",
            results=len(records),
            total_items=response.totalItems,
        )
        return FetchResult(records=records, ok=True)
