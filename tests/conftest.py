"""
Pytest configuration and fixtures for the bookshelf test suite.
"""
import asyncio
from typing import AsyncGenerator, Callable, Generator

import pytest
from aiohttp import ClientSession
from aioresponses import aioresponses

from bookshelf.internal.env_settings import EnrichmentSettings, ProviderSettings, Settings
from bookshelf.internal.models import BookRecord, FetchResult, ProviderQuery


class FakeClock:
    """Manually advanced monotonic clock for TTL tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeProvider:
    """
    Scripted provider: returns ``results`` in order, repeating the last one.
    Every query it receives is recorded in ``calls``.
    """

    def __init__(self, name: str, *results: FetchResult, delay: float = 0):
        self.name = name
        self.results = list(results) or [FetchResult()]
        self.delay = delay
        self.calls: list[ProviderQuery] = []

    async def fetch(self, client_session, query: ProviderQuery) -> FetchResult:
        self.calls.append(query)
        if self.delay:
            await asyncio.sleep(self.delay)
        if len(self.results) > 1:
            return self.results.pop(0)
        return self.results[0]


# Async HTTP mocking fixtures
@pytest.fixture(scope="function")
def aioresponses_mocker() -> Generator[aioresponses, None, None]:
    """Provide aioresponses context manager for manual HTTP mocking."""
    with aioresponses() as mocked:
        yield mocked


@pytest.fixture(scope="function")
async def mock_client_session(aioresponses_mocker) -> AsyncGenerator[ClientSession, None]:
    """Provide a real ClientSession whose requests are answered by aioresponses."""
    async with ClientSession() as session:
        yield session


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sleep_recorder() -> tuple[list[float], Callable]:
    """No-op replacement for asyncio.sleep that records requested delays."""
    delays: list[float] = []

    async def sleep(delay: float):
        delays.append(delay)

    return delays, sleep


@pytest.fixture
def provider_settings() -> ProviderSettings:
    return ProviderSettings()


@pytest.fixture
def settings() -> Settings:
    return Settings(enrichment=EnrichmentSettings(pacing_delay=0))


@pytest.fixture
def make_record() -> Callable[..., BookRecord]:
    def _make(
        id: str,
        title: str = "Dune",
        author: str = "Frank Herbert",
        **fields,
    ) -> BookRecord:
        return BookRecord(id=id, title=title, primary_author=author, **fields)

    return _make


@pytest.fixture
def fake_provider() -> type[FakeProvider]:
    return FakeProvider
