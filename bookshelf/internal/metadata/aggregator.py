"""
Fallback orchestration: cache in front, providers tried in priority order,
then deduplication and enrichment before the batch is cached.
"""
import asyncio
from typing import Awaitable, Callable, Protocol, Sequence

from aiohttp import ClientSession

from bookshelf.internal.env_settings import Settings
from bookshelf.internal.metadata.covers import OpenLibraryCoversProvider
from bookshelf.internal.metadata.dedup import deduplicate
from bookshelf.internal.metadata.enricher import MetadataEnricher
from bookshelf.internal.metadata.google_books import GoogleBooksProvider
from bookshelf.internal.metadata.open_library import OpenLibraryProvider
from bookshelf.internal.models import (
    BookRecord,
    FetchResult,
    ProviderQuery,
    QueryKind,
)
from bookshelf.internal.queries import (
    RecommendationQuery,
    SearchQuery,
    get_author_books_cache_key,
)
from bookshelf.util.cache import TTLCache
from bookshelf.util.exceptions import ClientQueryError
from bookshelf.util.log import logger

AUTHOR_BOOKS_MAX_RESULTS = 25
RECOMMENDATION_MAX_AUTHORS = 3
RECOMMENDATION_MAX_GENRES = 2
RECOMMENDATION_MAX_QUERIES = 5
RECOMMENDATION_RESULTS_PER_QUERY = 10


class MetadataProvider(Protocol):
    name: str

    async def fetch(
        self, client_session: ClientSession, query: ProviderQuery
    ) -> FetchResult: ...


class FallbackRun:
    """Per-logical-query state shared by all of its provider calls."""

    rate_limited: set[str]
    consulted: list[str]

    def __init__(self):
        self.rate_limited = set()
        self.consulted = []


def copy_records(records: Sequence[BookRecord]) -> list[BookRecord]:
    return [record.model_copy(deep=True) for record in records]


class MetadataAggregator:
    cache: TTLCache[list[BookRecord]]
    providers: list[MetadataProvider]
    enricher: MetadataEnricher | None
    settings: Settings
    _in_flight: dict[str, asyncio.Task[list[BookRecord]]]

    def __init__(
        self,
        cache: TTLCache[list[BookRecord]],
        providers: Sequence[MetadataProvider],
        enricher: MetadataEnricher | None,
        settings: Settings,
    ):
        """
        Args:
            cache: Response cache owned by the application lifecycle.
            providers: Fallback chain, highest priority first.
            enricher: Fills missing descriptions/covers; None disables enrichment.
            settings: Application settings (TTLs, result bounds, enrichment flags).
        """
        self.cache = cache
        self.providers = list(providers)
        self.enricher = enricher
        self.settings = settings
        self._in_flight = {}

    async def search(
        self,
        client_session: ClientSession,
        query: SearchQuery,
    ) -> list[BookRecord]:
        """Free-text or structured search. Never raises for outages or no results."""
        query = query.model_copy(
            update={"max_results": self.settings.clamp_max_results(query.max_results)}
        )

        async def produce() -> list[BookRecord]:
            records = await self.run_chain(
                client_session, query.to_provider_query(), FallbackRun()
            )
            return await self._finish(
                client_session,
                records,
                QueryKind.search,
                language=query.language,
                max_results=query.max_results,
            )

        return await self._cached(
            query.cache_key(), self.settings.cache.search_ttl, produce
        )

    async def author_books(
        self,
        client_session: ClientSession,
        author_name: str,
        refresh: bool = False,
    ) -> list[BookRecord]:
        """Bibliography of one author (English, up to 25 records)."""
        if not author_name or not author_name.strip():
            raise ClientQueryError("Author parameter is required")

        cache_key = get_author_books_cache_key(author_name)
        if refresh:
            logger.info("Refreshing author listing", author=author_name)
            self.cache.invalidate(cache_key)

        query = SearchQuery.build(author=author_name, max_results=AUTHOR_BOOKS_MAX_RESULTS)

        async def produce() -> list[BookRecord]:
            records = await self.run_chain(
                client_session, query.to_provider_query(), FallbackRun()
            )
            return await self._finish(
                client_session,
                records,
                QueryKind.author,
                language=query.language,
                max_results=query.max_results,
            )

        return await self._cached(cache_key, self.settings.cache.author_ttl, produce)

    async def recommendations(
        self,
        client_session: ClientSession,
        authors: list[str],
        genres: list[str],
        languages: list[str],
    ) -> list[BookRecord]:
        """
        Books related to a reader's authors and genres.

        Up to 3 authors x 2 genres (at most 5 provider queries) are combined
        into one batch. Rate limiting seen on one sub-query keeps that
        provider out of the remaining sub-queries.
        """
        request = RecommendationQuery.build(authors, genres, languages)
        if not request.authors:
            raise ClientQueryError("At least one author is required for recommendations")

        language = request.language
        cache_key = request.cache_key()

        queries: list[ProviderQuery] = []
        for author in request.authors[:RECOMMENDATION_MAX_AUTHORS]:
            for genre in request.genres[:RECOMMENDATION_MAX_GENRES] or [""]:
                queries.append(
                    ProviderQuery(
                        author=author,
                        subject=genre,
                        language=language,
                        max_results=RECOMMENDATION_RESULTS_PER_QUERY,
                    )
                )
        queries = queries[:RECOMMENDATION_MAX_QUERIES]

        async def produce() -> list[BookRecord]:
            run = FallbackRun()
            combined: list[BookRecord] = []
            for provider_query in queries:
                combined.extend(await self.run_chain(client_session, provider_query, run))
            return await self._finish(
                client_session,
                combined,
                QueryKind.recommendations,
                language=language,
            )

        return await self._cached(
            cache_key, self.settings.cache.recommendation_ttl, produce
        )

    def clear_author(self, author_name: str) -> bool:
        return self.cache.invalidate(get_author_books_cache_key(author_name))

    async def run_chain(
        self,
        client_session: ClientSession,
        query: ProviderQuery,
        run: FallbackRun,
    ) -> list[BookRecord]:
        """
        Consult providers in priority order until one returns records.

        Returns the concatenation of everything the consulted providers
        returned. Providers marked rate limited earlier in ``run`` are skipped.
        """
        collected: list[BookRecord] = []
        for provider in self.providers:
            if provider.name in run.rate_limited:
                logger.info("Skipping rate-limited provider", provider=provider.name)
                continue

            result = await provider.fetch(client_session, query)
            run.consulted.append(provider.name)
            collected.extend(result.records)
            if result.rate_limited:
                run.rate_limited.add(provider.name)

            if result.has_results:
                logger.info(
                    "Provider returned results",
                    provider=provider.name,
                    results=len(result.records),
                )
                break

            logger.info(
                "Falling back to next provider",
                provider=provider.name,
                outcome="empty" if result.ok else "failed",
                rate_limited=result.rate_limited,
            )
        return collected

    def _enrichment_enabled(self, kind: QueryKind) -> bool:
        settings = self.settings.enrichment
        if self.enricher is None or not settings.enabled:
            return False
        match kind:
            case QueryKind.search:
                return settings.enrich_search
            case QueryKind.author:
                return settings.enrich_author_books
            case QueryKind.recommendations:
                return settings.enrich_recommendations
            case _:
                return False

    async def _finish(
        self,
        client_session: ClientSession,
        records: list[BookRecord],
        kind: QueryKind,
        language: str | None = None,
        max_results: int | None = None,
    ) -> list[BookRecord]:
        unique = deduplicate(
            records,
            language=language,
            exclude_special_editions=self.settings.enrichment.exclude_special_editions,
        )
        if max_results is not None:
            unique = unique[:max_results]
        if unique and self.enricher is not None and self._enrichment_enabled(kind):
            unique = await self.enricher.enrich(client_session, unique)
        return unique

    async def _cached(
        self,
        cache_key: str,
        ttl: float,
        produce: Callable[[], Awaitable[list[BookRecord]]],
    ) -> list[BookRecord]:
        cached = self.cache.get(cache_key)
        if cached is not None:
            logger.debug("Cache hit", cache_key=cache_key)
            return copy_records(cached)

        task = self._in_flight.get(cache_key)
        if task is None:
            logger.debug("Cache miss", cache_key=cache_key)
            task = asyncio.ensure_future(self._produce_and_store(cache_key, ttl, produce))
            self._in_flight[cache_key] = task

            def _release(done: asyncio.Task[list[BookRecord]], key: str = cache_key):
                if self._in_flight.get(key) is done:
                    del self._in_flight[key]

            task.add_done_callback(_release)
        else:
            logger.debug("Joining in-flight fetch", cache_key=cache_key)

        # Shielded so one cancelled caller does not cancel the shared fetch
        records = await asyncio.shield(task)
        return copy_records(records)

    async def _produce_and_store(
        self,
        cache_key: str,
        ttl: float,
        produce: Callable[[], Awaitable[list[BookRecord]]],
    ) -> list[BookRecord]:
        records = await produce()
        if not records:
            ttl = min(ttl, self.settings.cache.empty_result_ttl)
        self.cache.set(cache_key, copy_records(records), ttl)
        logger.info("Cached aggregated result", cache_key=cache_key, results=len(records), ttl=ttl)
        return records


def create_aggregator(
    settings: Settings,
    cache: TTLCache[list[BookRecord]] | None = None,
) -> MetadataAggregator:
    """Wire the default chain: Google Books, then Open Library."""

    if cache is None:
        cache = TTLCache(
            default_ttl=settings.cache.search_ttl,
            maxsize=settings.cache.maxsize,
        )
    open_library = OpenLibraryProvider(settings.providers)
    enricher = MetadataEnricher(
        open_library=open_library,
        covers=OpenLibraryCoversProvider(settings.providers),
        settings=settings.enrichment,
    )
    return MetadataAggregator(
        cache=cache,
        providers=[GoogleBooksProvider(settings.providers), open_library],
        enricher=enricher,
        settings=settings,
    )
