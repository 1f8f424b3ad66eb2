"""
Best-effort enrichment of records that are still missing a description or a
cover after the primary/secondary merge.

Calls go out strictly one at a time with a fixed pause between them to stay
under the Open Library rate limits.
"""
import asyncio
from typing import Awaitable, Callable

from aiohttp import ClientError, ClientSession
from pydantic import ValidationError

from bookshelf.internal.env_settings import EnrichmentSettings
from bookshelf.internal.metadata.covers import OpenLibraryCoversProvider
from bookshelf.internal.metadata.http import SleepFunc
from bookshelf.internal.metadata.open_library import OpenLibraryProvider
from bookshelf.internal.models import BookRecord
from bookshelf.internal.normalize import UNKNOWN_AUTHOR, UNKNOWN_TITLE, ensure_https
from bookshelf.util.exceptions import ProviderTransientError, handle_external_api_error
from bookshelf.util.log import logger

_ENRICHMENT_ERRORS = (ClientError, TimeoutError, ProviderTransientError, ValidationError, ValueError)


class Pacer:
    """Enforces ``delay`` seconds between successive network calls."""

    delay: float
    calls: int
    _sleep: SleepFunc

    def __init__(self, delay: float, sleep: SleepFunc = asyncio.sleep):
        self.delay = delay
        self.calls = 0
        self._sleep = sleep

    async def wait(self):
        if self.calls > 0 and self.delay > 0:
            await self._sleep(self.delay)
        self.calls += 1


class MetadataEnricher:
    open_library: OpenLibraryProvider
    covers: OpenLibraryCoversProvider
    settings: EnrichmentSettings
    _sleep: SleepFunc

    def __init__(
        self,
        open_library: OpenLibraryProvider,
        covers: OpenLibraryCoversProvider,
        settings: EnrichmentSettings,
        sleep: SleepFunc = asyncio.sleep,
    ):
        self.open_library = open_library
        self.covers = covers
        self.settings = settings
        self._sleep = sleep

    def needs_enrichment(self, record: BookRecord) -> bool:
        return record.needs_cover() or record.needs_description(
            self.settings.short_description_length
        )

    async def enrich(
        self,
        client_session: ClientSession,
        records: list[BookRecord],
    ) -> list[BookRecord]:
        """
        Return a new list where up to ``max_records`` incomplete records are
        replaced by enriched copies. The input list and its records are left
        untouched, and nothing here ever fails the batch.
        """
        enriched = list(records)
        targets = [i for i, record in enumerate(records) if self.needs_enrichment(record)]
        targets = targets[: self.settings.max_records]
        if not targets:
            return enriched

        logger.info(
            "Enriching records",
            candidates=len(targets),
            batch_size=len(records),
        )
        pacer = Pacer(self.settings.pacing_delay, self._sleep)
        for index in targets:
            enriched[index] = await self.enrich_record(client_session, records[index], pacer)
        return enriched

    async def enrich_record(
        self,
        client_session: ClientSession,
        record: BookRecord,
        pacer: Pacer | None = None,
    ) -> BookRecord:
        pacer = pacer or Pacer(self.settings.pacing_delay, self._sleep)
        updates: dict[str, str] = {}

        if record.needs_description(self.settings.short_description_length):
            description = await self.fetch_description(client_session, record, pacer)
            if description and len(description) > len(record.description.strip()):
                updates["description"] = description
                logger.debug(
                    "Improved description",
                    record_id=record.id,
                    length=len(description),
                )

        if record.needs_cover():
            cover_url = await self.fetch_cover(client_session, record, pacer)
            if cover_url:
                updates["cover_url"] = ensure_https(cover_url)
                logger.debug("Found cover", record_id=record.id, cover_url=cover_url)

        if not updates:
            logger.debug("Nothing to improve", record_id=record.id)
        return record.model_copy(update=updates, deep=True)

    async def _attempt[T](
        self,
        pacer: Pacer,
        operation: str,
        record: BookRecord,
        call: Callable[[], Awaitable[T]],
    ) -> T | None:
        await pacer.wait()
        try:
            return await call()
        except ProviderTransientError as e:
            # A 404 just means the catalog has no entry for this identifier
            if e.status == 404:
                logger.debug(f"{operation}: not found", record_id=record.id)
            else:
                handle_external_api_error(e, "Open Library", operation, record_id=record.id)
        except _ENRICHMENT_ERRORS as e:
            handle_external_api_error(e, "Open Library", operation, record_id=record.id)
        return None

    async def fetch_description(
        self,
        client_session: ClientSession,
        record: BookRecord,
        pacer: Pacer,
    ) -> str:
        """ISBN edition first, then the known work, then a title+author lookup."""
        ol = self.open_library
        current = len(record.description.strip())
        tried_works: set[str] = set()

        if record.isbn:
            edition = await self._attempt(
                pacer, "fetch edition", record,
                lambda: ol.get_edition_by_isbn(client_session, record.isbn),
            )
            if edition is not None:
                description = edition.best_description()
                if len(description) > current:
                    return description
                if edition.works:
                    work_key = edition.works[0].key
                    tried_works.add(work_key.rstrip("/").split("/")[-1])
                    work = await self._attempt(
                        pacer, "fetch work", record,
                        lambda: ol.get_work(client_session, work_key),
                    )
                    if work is not None and len(work.best_description()) > current:
                        return work.best_description()

        if record.work_key and record.work_key not in tried_works:
            tried_works.add(record.work_key)
            work = await self._attempt(
                pacer, "fetch work", record,
                lambda: ol.get_work(client_session, record.work_key),
            )
            if work is not None and len(work.best_description()) > current:
                return work.best_description()

        if record.title != UNKNOWN_TITLE and record.primary_author != UNKNOWN_AUTHOR:
            work_key = await self._attempt(
                pacer, "find work", record,
                lambda: ol.find_work_key(client_session, record.title, record.primary_author),
            )
            if work_key and work_key not in tried_works:
                work = await self._attempt(
                    pacer, "fetch work", record,
                    lambda: ol.get_work(client_session, work_key),
                )
                if work is not None:
                    return work.best_description()

        return ""

    async def fetch_cover(
        self,
        client_session: ClientSession,
        record: BookRecord,
        pacer: Pacer,
    ) -> str:
        """Probe fallback URLs, then ISBN- and OLID-derived cover URLs."""
        candidates = self.covers.candidate_urls(
            isbn=record.isbn,
            fallback_urls=record.cover_fallback_urls,
        )
        for url in candidates:
            await pacer.wait()
            if await self.covers.cover_exists(client_session, url):
                return url
        return ""
