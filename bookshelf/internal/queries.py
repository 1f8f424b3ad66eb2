"""
Logical queries accepted by the aggregator and the cache keys derived from them.

Keys are pure functions of a query's semantic identity: case and surrounding
whitespace never matter, and list parameters are sorted so permuted inputs
land on the same entry.
"""
from pydantic import BaseModel, ConfigDict

from bookshelf.internal.models import ProviderQuery
from bookshelf.internal.normalize import DEFAULT_LANGUAGE, clean_isbn, normalize_language
from bookshelf.util.exceptions import ClientQueryError


def _clean(value: str | None) -> str:
    return (value or "").lower().strip()


def get_author_books_cache_key(author_name: str) -> str:
    return f"author-books:{_clean(author_name)}"


def get_book_search_cache_key(query: str) -> str:
    return f"book-search:{_clean(query)}"


def _unique_sorted(values: list[str]) -> list[str]:
    """Case-insensitively de-duplicated, sorted; the first spelling seen is kept."""
    seen: dict[str, str] = {}
    for value in values:
        cleaned = " ".join((value or "").split())
        if cleaned and cleaned.lower() not in seen:
            seen[cleaned.lower()] = cleaned
    return [seen[key] for key in sorted(seen)]


def get_recommendations_cache_key(
    authors: list[str], genres: list[str], languages: list[str]
) -> str:
    return RecommendationQuery.build(authors, genres, languages).cache_key()


class SearchQuery(BaseModel):
    """A free-text or structured search as callers express it."""

    model_config = ConfigDict(frozen=True)  # pyright: ignore[reportUnannotatedClassAttribute]

    text: str = ""
    author: str = ""
    title: str = ""
    isbn: str = ""
    language: str = DEFAULT_LANGUAGE
    max_results: int = 10

    @classmethod
    def build(
        cls,
        text: str | None = None,
        author: str | None = None,
        title: str | None = None,
        isbn: str | None = None,
        language: str | None = None,
        max_results: int = 10,
    ) -> "SearchQuery":
        """
        Validate raw caller input.

        Raises:
            ClientQueryError: when none of text, author, title or isbn is given.
        """
        query = cls(
            text=(text or "").strip(),
            author=(author or "").strip(),
            title=(title or "").strip(),
            isbn=clean_isbn(isbn),
            language=normalize_language(language),
            max_results=max_results,
        )
        if not (query.text or query.author or query.title or query.isbn):
            raise ClientQueryError("Provide q, title, author, isbn, or a combination.")
        return query

    def cache_key(self) -> str:
        parts = [_clean(self.text)]
        if self.author:
            parts.append(f"author={_clean(self.author)}")
        if self.title:
            parts.append(f"title={_clean(self.title)}")
        if self.isbn:
            parts.append(f"isbn={self.isbn}")
        parts.append(f"lang={self.language}")
        parts.append(f"n={self.max_results}")
        return get_book_search_cache_key("|".join(parts))

    def to_provider_query(self) -> ProviderQuery:
        return ProviderQuery(
            text=self.text,
            author=self.author,
            title=self.title,
            isbn=self.isbn,
            language=self.language,
            max_results=self.max_results,
        )


class RecommendationQuery(BaseModel):
    """
    Cleaned recommendation inputs. Everything the aggregator does with a
    recommendation request is derived from these lists, which are also
    exactly what the cache key encodes.
    """

    model_config = ConfigDict(frozen=True)  # pyright: ignore[reportUnannotatedClassAttribute]

    authors: list[str]
    genres: list[str]
    languages: list[str]

    @classmethod
    def build(
        cls,
        authors: list[str],
        genres: list[str],
        languages: list[str],
    ) -> "RecommendationQuery":
        languages = _unique_sorted(
            [normalize_language(lang) for lang in languages if lang and lang.strip()]
        )
        return cls(
            authors=_unique_sorted(authors),
            genres=_unique_sorted(genres),
            languages=languages or [DEFAULT_LANGUAGE],
        )

    @property
    def language(self) -> str:
        """Language the merged result is filtered to."""
        return self.languages[0]

    def cache_key(self) -> str:
        def joined(values: list[str]) -> str:
            return ",".join(v.lower() for v in values)

        return (
            f"recommendations:{joined(self.authors)}:{joined(self.genres)}"
            f":{joined(self.languages)}"
        )
