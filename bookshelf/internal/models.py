from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from bookshelf.internal.normalize import (
    DEFAULT_LANGUAGE,
    UNKNOWN_AUTHOR,
    UNKNOWN_DATE,
    UNKNOWN_TITLE,
    ensure_https,
    normalize_language,
    normalize_published_date,
)


class ProviderEnum(StrEnum):
    google_books = "google_books"
    open_library = "open_library"
    open_library_covers = "open_library_covers"


class QueryKind(StrEnum):
    search = "search"
    author = "author"
    recommendations = "recommendations"


class BookRecord(BaseModel):
    """
    Canonical, provider-agnostic book metadata.

    Every adapter maps its raw payload into this shape and nothing else
    crosses component boundaries. Validators keep the invariants (ISO or
    "Unknown Date" dates, lowercase non-empty language, https covers) no
    matter which provider built the record.
    """

    model_config = ConfigDict(  # pyright: ignore[reportUnannotatedClassAttribute]
        alias_generator=to_camel,
        populate_by_name=True,
    )

    id: str
    title: str = UNKNOWN_TITLE
    primary_author: str = UNKNOWN_AUTHOR
    authors: list[str] = Field(default_factory=list)
    published_date: str = UNKNOWN_DATE
    description: str = ""
    cover_url: str = ""
    isbn: str = ""
    language: str = DEFAULT_LANGUAGE
    publisher: str = ""
    categories: list[str] = Field(default_factory=list)
    page_count: int = 0
    cover_fallback_urls: dict[str, str] = Field(default_factory=dict)
    work_key: str = ""
    """Open Library work id (OL...W) when known"""
    source: ProviderEnum | None = None

    @field_validator("title", mode="before")
    @classmethod
    def _title(cls, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            return UNKNOWN_TITLE
        return value.strip()

    @field_validator("primary_author", mode="before")
    @classmethod
    def _primary_author(cls, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            return UNKNOWN_AUTHOR
        return value.strip()

    @field_validator("published_date", mode="before")
    @classmethod
    def _published_date(cls, value: Any) -> str:
        return normalize_published_date(value)

    @field_validator("language", mode="before")
    @classmethod
    def _language(cls, value: Any) -> str:
        return normalize_language(value if isinstance(value, str) else None)

    @field_validator("cover_url", mode="before")
    @classmethod
    def _cover_url(cls, value: Any) -> str:
        return ensure_https(value if isinstance(value, str) else None)

    @field_validator("cover_fallback_urls", mode="before")
    @classmethod
    def _cover_fallback_urls(cls, value: Any) -> dict[str, str]:
        if not isinstance(value, dict):
            return {}
        return {
            str(strategy): ensure_https(url)
            for strategy, url in value.items()
            if isinstance(url, str) and url
        }

    @field_validator("description", "publisher", "isbn", mode="before")
    @classmethod
    def _optional_text(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value)

    @field_validator("page_count", mode="before")
    @classmethod
    def _page_count(cls, value: Any) -> int:
        try:
            return max(int(value or 0), 0)
        except (TypeError, ValueError):
            return 0

    @model_validator(mode="after")
    def _backfill_authors(self) -> "BookRecord":
        self.authors = [a for a in self.authors if a and a.strip()]
        if not self.authors:
            self.authors = [self.primary_author]
        return self

    def needs_cover(self) -> bool:
        return not self.cover_url.strip()

    def needs_description(self, placeholder_length: int) -> bool:
        return len(self.description.strip()) < placeholder_length


class FetchResult(BaseModel):
    """
    Outcome of one provider call.

    ``ok=False`` means the provider itself failed and is never the same as
    ``ok=True`` with no records.
    """

    records: list[BookRecord] = Field(default_factory=list)
    ok: bool = True
    rate_limited: bool = False

    @property
    def has_results(self) -> bool:
        return self.ok and len(self.records) > 0

    @classmethod
    def failed(cls, rate_limited: bool = False) -> "FetchResult":
        return cls(records=[], ok=False, rate_limited=rate_limited)


class ProviderQuery(BaseModel):
    """What a single provider call is asked for, before provider-specific encoding."""

    model_config = ConfigDict(frozen=True)  # pyright: ignore[reportUnannotatedClassAttribute]

    text: str = ""
    title: str = ""
    author: str = ""
    isbn: str = ""
    subject: str = ""
    language: str | None = DEFAULT_LANGUAGE
    max_results: int = 10

    def is_empty(self) -> bool:
        return not (self.text or self.title or self.author or self.isbn or self.subject)
