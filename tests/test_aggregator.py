"""
Fallback orchestration: provider order, caching, coalescing and the
rate-limit skip shared across recommendation sub-queries.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from bookshelf.internal.metadata.aggregator import FallbackRun, MetadataAggregator
from bookshelf.internal.models import FetchResult, ProviderQuery
from bookshelf.internal.queries import SearchQuery, get_author_books_cache_key
from bookshelf.util.cache import TTLCache
from bookshelf.util.exceptions import ClientQueryError


@pytest.fixture
def cache(fake_clock) -> TTLCache:
    return TTLCache(default_ttl=300, clock=fake_clock)


@pytest.fixture
def make_aggregator(cache, settings):
    def _make(*providers, enricher=None) -> MetadataAggregator:
        return MetadataAggregator(
            cache=cache,
            providers=list(providers),
            enricher=enricher,
            settings=settings,
        )

    return _make


class TestFallbackChain:
    async def test_empty_primary_falls_back_to_secondary(
        self, make_aggregator, fake_provider, make_record, cache
    ):
        primary = fake_provider("google_books", FetchResult(records=[], ok=True))
        secondary = fake_provider("open_library", FetchResult(records=[make_record("OL-1")]))
        aggregator = make_aggregator(primary, secondary)
        query = SearchQuery.build(text="dune")

        result = await aggregator.search(None, query)

        assert [r.id for r in result] == ["OL-1"]
        assert len(primary.calls) == 1
        assert len(secondary.calls) == 1
        assert [r.id for r in cache.get(query.cache_key())] == ["OL-1"]

    async def test_primary_results_stop_the_chain(self, make_aggregator, fake_provider, make_record):
        primary = fake_provider("google_books", FetchResult(records=[make_record("GB-1")]))
        secondary = fake_provider("open_library", FetchResult(records=[make_record("OL-1")]))
        aggregator = make_aggregator(primary, secondary)

        result = await aggregator.search(None, SearchQuery.build(text="dune"))

        assert [r.id for r in result] == ["GB-1"]
        assert secondary.calls == []

    async def test_failed_primary_falls_back(self, make_aggregator, fake_provider, make_record):
        primary = fake_provider("google_books", FetchResult.failed())
        secondary = fake_provider("open_library", FetchResult(records=[make_record("OL-1")]))
        aggregator = make_aggregator(primary, secondary)

        result = await aggregator.search(None, SearchQuery.build(text="dune"))

        assert [r.id for r in result] == ["OL-1"]

    async def test_total_outage_returns_empty(self, make_aggregator, fake_provider):
        primary = fake_provider("google_books", FetchResult.failed())
        secondary = fake_provider("open_library", FetchResult.failed())
        aggregator = make_aggregator(primary, secondary)

        assert await aggregator.search(None, SearchQuery.build(text="dune")) == []

    async def test_chain_records_consulted_providers(self, make_aggregator, fake_provider):
        primary = fake_provider("google_books", FetchResult.failed(rate_limited=True))
        secondary = fake_provider("open_library", FetchResult())
        aggregator = make_aggregator(primary, secondary)
        run = FallbackRun()

        await aggregator.run_chain(None, ProviderQuery(text="dune"), run)

        assert run.consulted == ["google_books", "open_library"]
        assert run.rate_limited == {"google_books"}

    async def test_max_results_clamped_and_applied(self, make_aggregator, fake_provider, make_record):
        records = [make_record(f"GB-{n}", title=f"Book {n}") for n in range(60)]
        primary = fake_provider("google_books", FetchResult(records=records))
        aggregator = make_aggregator(primary)

        result = await aggregator.search(None, SearchQuery.build(text="book", max_results=100))

        assert primary.calls[0].max_results == 40
        assert len(result) == 40

    async def test_other_languages_filtered(self, make_aggregator, fake_provider, make_record):
        primary = fake_provider(
            "google_books",
            FetchResult(records=[make_record("GB-1", language="fr"), make_record("GB-2", title="Dune Messiah")]),
        )
        aggregator = make_aggregator(primary)

        result = await aggregator.search(None, SearchQuery.build(text="dune", language="en"))

        assert [r.id for r in result] == ["GB-2"]


class TestCaching:
    async def test_second_call_served_from_cache(self, make_aggregator, fake_provider, make_record):
        primary = fake_provider("google_books", FetchResult(records=[make_record("GB-1")]))
        aggregator = make_aggregator(primary)
        query = SearchQuery.build(text="dune")

        await aggregator.search(None, query)
        await aggregator.search(None, SearchQuery.build(text="  DUNE "))

        assert len(primary.calls) == 1

    async def test_expired_entry_is_refetched(
        self, make_aggregator, fake_provider, make_record, fake_clock
    ):
        primary = fake_provider("google_books", FetchResult(records=[make_record("GB-1")]))
        aggregator = make_aggregator(primary)
        query = SearchQuery.build(text="dune")

        await aggregator.search(None, query)
        fake_clock.advance(301)
        await aggregator.search(None, query)

        assert len(primary.calls) == 2

    async def test_empty_results_cached_briefly(
        self, make_aggregator, fake_provider, fake_clock
    ):
        primary = fake_provider("google_books", FetchResult())
        aggregator = make_aggregator(primary)
        query = SearchQuery.build(text="nothing here")

        await aggregator.search(None, query)
        fake_clock.advance(60)
        await aggregator.search(None, query)
        assert len(primary.calls) == 1

        fake_clock.advance(61)
        await aggregator.search(None, query)
        assert len(primary.calls) == 2

    async def test_callers_cannot_mutate_cached_records(
        self, make_aggregator, fake_provider, make_record
    ):
        primary = fake_provider("google_books", FetchResult(records=[make_record("GB-1")]))
        aggregator = make_aggregator(primary)
        query = SearchQuery.build(text="dune")

        first = await aggregator.search(None, query)
        first[0].title = "Mutated"
        first.clear()
        second = await aggregator.search(None, query)

        assert [r.title for r in second] == ["Dune"]

    async def test_concurrent_identical_queries_share_one_fetch(
        self, make_aggregator, fake_provider, make_record
    ):
        primary = fake_provider(
            "google_books", FetchResult(records=[make_record("GB-1")]), delay=0.01
        )
        aggregator = make_aggregator(primary)
        query = SearchQuery.build(text="dune")

        first, second = await asyncio.gather(
            aggregator.search(None, query),
            aggregator.search(None, query),
        )

        assert len(primary.calls) == 1
        assert first == second
        assert first[0] is not second[0]
        assert aggregator._in_flight == {}


class TestAuthorBooks:
    async def test_author_query(self, make_aggregator, fake_provider, make_record, cache):
        primary = fake_provider("google_books", FetchResult(records=[make_record("GB-1")]))
        aggregator = make_aggregator(primary)

        result = await aggregator.author_books(None, "Frank Herbert")

        assert [r.id for r in result] == ["GB-1"]
        assert primary.calls[0].author == "Frank Herbert"
        assert primary.calls[0].max_results == 25
        assert cache.has(get_author_books_cache_key("frank herbert"))

    async def test_refresh_bypasses_cache(self, make_aggregator, fake_provider, make_record):
        primary = fake_provider("google_books", FetchResult(records=[make_record("GB-1")]))
        aggregator = make_aggregator(primary)

        await aggregator.author_books(None, "Frank Herbert")
        await aggregator.author_books(None, "frank herbert")
        assert len(primary.calls) == 1

        await aggregator.author_books(None, "Frank Herbert", refresh=True)
        assert len(primary.calls) == 2

    async def test_clear_author(self, make_aggregator, fake_provider, make_record):
        primary = fake_provider("google_books", FetchResult(records=[make_record("GB-1")]))
        aggregator = make_aggregator(primary)

        await aggregator.author_books(None, "Frank Herbert")

        assert aggregator.clear_author("FRANK HERBERT") is True
        assert aggregator.clear_author("Frank Herbert") is False

    @pytest.mark.parametrize("name", ["", "   "])
    async def test_blank_author_rejected(self, make_aggregator, fake_provider, name):
        primary = fake_provider("google_books")
        aggregator = make_aggregator(primary)

        with pytest.raises(ClientQueryError):
            await aggregator.author_books(None, name)
        assert primary.calls == []


class TestRecommendations:
    async def test_rate_limited_provider_skipped_for_remaining_subqueries(
        self, make_aggregator, fake_provider, make_record
    ):
        primary = fake_provider("google_books", FetchResult.failed(rate_limited=True))
        secondary = fake_provider(
            "open_library",
            FetchResult(records=[make_record("OL-1", title="The Dispossessed", author="A")]),
            FetchResult(records=[make_record("OL-2", title="Foundation", author="B")]),
        )
        aggregator = make_aggregator(primary, secondary)

        result = await aggregator.recommendations(None, ["B", "A"], [], [])

        assert len(primary.calls) == 1
        assert len(secondary.calls) == 2
        assert [r.id for r in result] == ["OL-1", "OL-2"]

    async def test_sub_queries_bounded(self, make_aggregator, fake_provider):
        primary = fake_provider("google_books")
        aggregator = make_aggregator(primary)

        await aggregator.recommendations(
            None,
            ["A", "B", "C", "D"],
            ["fantasy", "horror", "mystery"],
            ["en"],
        )

        assert len(primary.calls) == 5
        assert {q.author for q in primary.calls} <= {"A", "B", "C"}
        assert {q.subject for q in primary.calls} <= {"fantasy", "horror"}
        assert all(q.max_results == 10 for q in primary.calls)

    async def test_permuted_inputs_share_cache_entry(self, make_aggregator, fake_provider, make_record):
        primary = fake_provider("google_books", FetchResult(records=[make_record("GB-1")]))
        aggregator = make_aggregator(primary)

        await aggregator.recommendations(None, ["A", "B"], ["fantasy"], ["en"])
        calls = len(primary.calls)
        await aggregator.recommendations(None, ["b", "a"], ["Fantasy"], ["EN"])

        assert len(primary.calls) == calls

    async def test_permuted_languages_give_the_same_result(
        self, make_aggregator, fake_provider, make_record, cache
    ):
        primary = fake_provider(
            "google_books",
            FetchResult(
                records=[
                    make_record("GB-EN", language="en"),
                    make_record("GB-FR", title="Dune (édition française)", language="fr"),
                ]
            ),
        )
        aggregator = make_aggregator(primary)

        first = await aggregator.recommendations(None, ["Frank Herbert"], [], ["fr", "en"])
        cached = await aggregator.recommendations(None, ["Frank Herbert"], [], ["en", "fr"])
        cache.flush()
        fresh = await aggregator.recommendations(None, ["Frank Herbert"], [], ["en", "fr"])

        assert [r.id for r in first] == [r.id for r in cached] == [r.id for r in fresh]
        assert {q.language for q in primary.calls} == {"en"}

    async def test_authors_deduplicated_ignoring_case(self, make_aggregator, fake_provider):
        primary = fake_provider("google_books")
        aggregator = make_aggregator(primary)

        await aggregator.recommendations(
            None, ["Frank Herbert", "frank  herbert", "FRANK HERBERT"], [], []
        )

        assert len(primary.calls) == 1

    async def test_default_language_shares_cache_entry(
        self, make_aggregator, fake_provider, make_record
    ):
        primary = fake_provider("google_books", FetchResult(records=[make_record("GB-1")]))
        aggregator = make_aggregator(primary)

        await aggregator.recommendations(None, ["Frank Herbert"], [], [])
        await aggregator.recommendations(None, ["Frank Herbert"], [], ["EN"])

        assert len(primary.calls) == 1

    async def test_no_authors_rejected(self, make_aggregator, fake_provider):
        aggregator = make_aggregator(fake_provider("google_books"))
        with pytest.raises(ClientQueryError):
            await aggregator.recommendations(None, ["  "], ["fantasy"], [])


class TestEnrichmentToggles:
    @pytest.fixture
    def enricher(self):
        enricher = MagicMock()
        enricher.enrich = AsyncMock(side_effect=lambda client_session, records: records)
        return enricher

    async def test_search_results_enriched(
        self, make_aggregator, fake_provider, make_record, enricher
    ):
        primary = fake_provider("google_books", FetchResult(records=[make_record("GB-1")]))
        aggregator = make_aggregator(primary, enricher=enricher)

        await aggregator.search(None, SearchQuery.build(text="dune"))

        enricher.enrich.assert_awaited_once()

    async def test_recommendations_not_enriched_by_default(
        self, make_aggregator, fake_provider, make_record, enricher
    ):
        primary = fake_provider("google_books", FetchResult(records=[make_record("GB-1")]))
        aggregator = make_aggregator(primary, enricher=enricher)

        await aggregator.recommendations(None, ["Frank Herbert"], [], [])

        enricher.enrich.assert_not_awaited()

    async def test_empty_results_never_enriched(self, make_aggregator, fake_provider, enricher):
        aggregator = make_aggregator(fake_provider("google_books"), enricher=enricher)

        await aggregator.search(None, SearchQuery.build(text="dune"))

        enricher.enrich.assert_not_awaited()
